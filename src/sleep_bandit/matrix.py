"""Dense matrix/vector primitives for the posterior engine.

Matrices are row-major ``list[list[float]]``. Inputs are assumed well formed;
dimension mismatches are programming errors and fail fast. Empty inputs
short-circuit to empty outputs.
"""

from __future__ import annotations

import math
import random

Matrix = list[list[float]]
Vector = list[float]

# Abramowitz & Stegun 7.1.26
_AS_P = 0.3275911
_AS_A1 = 0.254829592
_AS_A2 = -0.284496736
_AS_A3 = 1.421413741
_AS_A4 = -1.453152027
_AS_A5 = 1.061405429

_CHOLESKY_FLOOR = 1e-10


def zeros(rows: int, cols: int) -> Matrix:
    return [[0.0] * cols for _ in range(rows)]


def identity(n: int) -> Matrix:
    m = zeros(n, n)
    for i in range(n):
        m[i][i] = 1.0
    return m


def transpose(a: Matrix) -> Matrix:
    if not a:
        return []
    rows, cols = len(a), len(a[0])
    return [[a[i][j] for i in range(rows)] for j in range(cols)]


def matmul(a: Matrix, b: Matrix) -> Matrix:
    if not a or not b:
        return []
    inner = len(a[0])
    if inner != len(b):
        raise ValueError(f"matmul shape mismatch: {len(a)}x{inner} @ {len(b)}x{len(b[0])}")
    cols = len(b[0])
    out = zeros(len(a), cols)
    for i, row in enumerate(a):
        out_row = out[i]
        for k in range(inner):
            aik = row[k]
            if aik == 0.0:
                continue
            b_row = b[k]
            for j in range(cols):
                out_row[j] += aik * b_row[j]
    return out


def matvec(a: Matrix, v: Vector) -> Vector:
    if not a:
        return []
    if len(a[0]) != len(v):
        raise ValueError(f"matvec shape mismatch: {len(a)}x{len(a[0])} @ {len(v)}")
    return [sum(aij * vj for aij, vj in zip(row, v)) for row in a]


def add_matrices(a: Matrix, b: Matrix) -> Matrix:
    if len(a) != len(b) or any(len(ra) != len(rb) for ra, rb in zip(a, b)):
        raise ValueError("add_matrices shape mismatch")
    return [[x + y for x, y in zip(ra, rb)] for ra, rb in zip(a, b)]


def scale_matrix(a: Matrix, s: float) -> Matrix:
    return [[v * s for v in row] for row in a]


def cholesky(a: Matrix) -> Matrix:
    """Lower-triangular L with A = L·Lᵗ.

    Diagonal terms are floored at 1e-10 before the square root so that an
    ill-conditioned or rank-deficient covariance still yields a usable factor.
    """
    n = len(a)
    lower = zeros(n, n)
    for i in range(n):
        for j in range(i + 1):
            s = a[i][j]
            for k in range(j):
                s -= lower[i][k] * lower[j][k]
            if i == j:
                lower[i][j] = math.sqrt(max(s, _CHOLESKY_FLOOR))
            else:
                lower[i][j] = s / lower[j][j]
    return lower


def inverse(a: Matrix) -> Matrix:
    """Inverse via LU decomposition with partial pivoting."""
    n = len(a)
    if n == 0:
        return []
    if any(len(row) != n for row in a):
        raise ValueError("inverse requires a square matrix")

    lower = zeros(n, n)
    upper = [list(map(float, row)) for row in a]
    perm = identity(n)

    for k in range(n):
        pivot_row = k
        pivot_val = abs(upper[k][k])
        for i in range(k + 1, n):
            if abs(upper[i][k]) > pivot_val:
                pivot_val = abs(upper[i][k])
                pivot_row = i
        if pivot_row != k:
            upper[k], upper[pivot_row] = upper[pivot_row], upper[k]
            perm[k], perm[pivot_row] = perm[pivot_row], perm[k]
            lower[k], lower[pivot_row] = lower[pivot_row], lower[k]

        lower[k][k] = 1.0
        for i in range(k + 1, n):
            factor = upper[i][k] / upper[k][k]
            lower[i][k] = factor
            for j in range(k, n):
                upper[i][j] -= factor * upper[k][j]

    inv = zeros(n, n)
    for col in range(n):
        # Forward substitution: L·y = P[:, col]
        y = [0.0] * n
        for i in range(n):
            s = perm[i][col]
            for j in range(i):
                s -= lower[i][j] * y[j]
            y[i] = s
        # Back substitution: U·x = y
        for i in range(n - 1, -1, -1):
            s = y[i]
            for j in range(i + 1, n):
                s -= upper[i][j] * inv[j][col]
            inv[i][col] = s / upper[i][i]
    return inv


def randn(rng: random.Random | None = None) -> float:
    """Standard normal draw via the Box–Muller transform."""
    source = rng if rng is not None else random
    u = 0.0
    while u == 0.0:
        u = source.random()
    v = 0.0
    while v == 0.0:
        v = source.random()
    return math.sqrt(-2.0 * math.log(u)) * math.cos(2.0 * math.pi * v)


def normal_cdf(x: float) -> float:
    sign = -1.0 if x < 0 else 1.0
    ax = abs(x) / math.sqrt(2.0)
    t = 1.0 / (1.0 + _AS_P * ax)
    poly = ((((_AS_A5 * t + _AS_A4) * t + _AS_A3) * t + _AS_A2) * t + _AS_A1) * t
    y = 1.0 - poly * math.exp(-ax * ax)
    return 0.5 * (1.0 + sign * y)


def normal_pdf(x: float) -> float:
    return math.exp(-0.5 * x * x) / math.sqrt(2.0 * math.pi)
