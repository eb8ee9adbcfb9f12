"""Bayesian linear regression over intervention effects.

Model: score − baseline = Σ_i β_i·x_i + ε, x_i ∈ {0, 1}, β_i ~ N(0, τ²),
ε ~ N(0, σ²). One conjugate update from the full observation history on
every call; callers memoize.
"""

from __future__ import annotations

import logging
import math
import random
from collections.abc import Sequence
from dataclasses import dataclass

from .matrix import (
    add_matrices,
    cholesky,
    identity,
    inverse,
    matmul,
    matvec,
    normal_cdf,
    normal_pdf,
    randn,
    scale_matrix,
    transpose,
)
from .models import AppState, Group, Intervention, Observation, StatisticalConfig

logger = logging.getLogger(__name__)

_SIMPSON_INTERVALS = 200
_U_BOUND = 6.0


@dataclass(frozen=True)
class Posterior:
    """Derived belief over intervention effects. Never persisted."""

    mean: list[float]
    std: list[float]
    cov: list[list[float]]
    precision: list[list[float]]

    @classmethod
    def empty(cls) -> Posterior:
        return cls(mean=[], std=[], cov=[], precision=[])


@dataclass(frozen=True)
class DenseObservation:
    interventions: list[bool]
    score: float


def densify_observations(observations: Sequence[Observation], k: int) -> list[DenseObservation]:
    """Sparse active-index sets → dense 0/1 rows of length k.

    An observation referencing an index outside [0, k) produces a row longer
    than k, which compute_posterior then rejects.
    """
    rows: list[DenseObservation] = []
    for obs in observations:
        width = max([k, *(idx + 1 for idx in obs.active_interventions)])
        flags = [False] * width
        for idx in obs.active_interventions:
            flags[idx] = True
        rows.append(DenseObservation(interventions=flags, score=obs.score))
    return rows


def compute_posterior(
    names: Sequence[str],
    observations: Sequence[DenseObservation],
    config: StatisticalConfig,
) -> Posterior:
    k = len(names)
    if k == 0:
        return Posterior.empty()

    tau_sq = config.tau * config.tau
    sigma_sq = config.sigma * config.sigma

    valid = [obs for obs in observations if len(obs.interventions) == k]
    rejected = len(observations) - len(valid)
    if rejected:
        logger.warning(
            "Excluded %d observation(s) whose activation vector does not match %d interventions",
            rejected,
            k,
            extra={"bandit_rejected_observations": rejected},
        )

    prior_precision = scale_matrix(identity(k), 1.0 / tau_sq)
    if not valid:
        return Posterior(
            mean=[0.0] * k,
            std=[config.tau] * k,
            cov=scale_matrix(identity(k), tau_sq),
            precision=prior_precision,
        )

    x = [[1.0 if flag else 0.0 for flag in obs.interventions] for obs in valid]
    y = [obs.score - config.baseline for obs in valid]

    xt = transpose(x)
    xtx = matmul(xt, x)
    xty = matvec(xt, y)

    precision = add_matrices(prior_precision, scale_matrix(xtx, 1.0 / sigma_sq))
    cov = inverse(precision)
    mean = matvec(cov, [v / sigma_sq for v in xty])
    std = [math.sqrt(max(cov[i][i], 0.0)) for i in range(k)]
    return Posterior(mean=mean, std=std, cov=cov, precision=precision)


def posterior_for_state(state: AppState) -> Posterior:
    """The single point where sparse observations meet the dense model."""
    k = len(state.interventions)
    dense = densify_observations(state.observations, k)
    return compute_posterior(state.intervention_names, dense, state.config)


def sample_from_posterior(
    mean: Sequence[float],
    cov: Sequence[Sequence[float]],
    rng: random.Random | None = None,
) -> list[float]:
    """Correlated multivariate-normal draw: mean + L·z."""
    k = len(mean)
    if k == 0:
        return []
    lower = cholesky([list(row) for row in cov])
    z = [randn(rng) for _ in range(k)]
    return [m + s for m, s in zip(mean, matvec(lower, z))]


def prob_positive(mean: float, std: float) -> float:
    if std == 0:
        return 1.0 if mean > 0 else 0.0
    return normal_cdf(mean / std)


def _cdf_below(x: float, mean: float, std: float) -> float:
    """P(N(mean, std²) < x) with a step function for std == 0."""
    if std == 0:
        return 1.0 if x > mean else 0.0
    return normal_cdf((x - mean) / std)


def group_activation_probability(j: int, means: Sequence[float], stds: Sequence[float]) -> float:
    """P(member j has the highest sample in its group and that sample is > 0).

    Substituting u = (x − μ_j)/σ_j gives the 1-D integral
        ∫ φ(u) · Π_{k≠j} Φ((μ_j + σ_j·u − μ_k)/σ_k) du,  u ∈ [max(−6, −μ_j/σ_j), 6]
    evaluated with Simpson's rule. Members are treated as independent.
    """
    mu_j = means[j]
    sig_j = stds[j]

    if sig_j == 0:
        if mu_j <= 0:
            return 0.0
        p = 1.0
        for k in range(len(means)):
            if k != j:
                p *= _cdf_below(mu_j, means[k], stds[k])
        return p

    lower = max(-_U_BOUND, -mu_j / sig_j)
    upper = _U_BOUND
    if lower >= upper:
        return 0.0

    def integrand(u: float) -> float:
        x = mu_j + sig_j * u
        product = 1.0
        for k in range(len(means)):
            if k == j:
                continue
            product *= _cdf_below(x, means[k], stds[k])
        return normal_pdf(u) * product

    h = (upper - lower) / _SIMPSON_INTERVALS
    total = integrand(lower) + integrand(upper)
    for i in range(1, _SIMPSON_INTERVALS):
        total += (2 if i % 2 == 0 else 4) * integrand(lower + i * h)
    return total * h / 3.0


def expected_improvement(
    interventions: Sequence[Intervention],
    posterior: Posterior,
    groups: Sequence[Group],
) -> float:
    """Expected score gain from tonight's Thompson-sampled policy."""
    k = len(interventions)
    if k == 0:
        return 0.0

    active_groups = [g for g in groups if not g.archived]
    grouped = {idx for g in active_groups for idx in g.intervention_indices}

    total = 0.0
    for i, intervention in enumerate(interventions):
        if intervention.disabled or i in grouped:
            continue
        total += posterior.mean[i] * prob_positive(posterior.mean[i], posterior.std[i])

    for group in active_groups:
        enabled = [idx for idx in group.intervention_indices if idx < k and not interventions[idx].disabled]
        if not enabled:
            continue
        if len(enabled) == 1:
            i = enabled[0]
            total += posterior.mean[i] * prob_positive(posterior.mean[i], posterior.std[i])
            continue
        means = [posterior.mean[i] for i in enabled]
        stds = [posterior.std[i] for i in enabled]
        for j in range(len(enabled)):
            total += means[j] * group_activation_probability(j, means, stds)

    return total


def _ci95(mu: float, sigma: float) -> list[float]:
    delta = 1.96 * sigma
    return [round(mu - delta, 3), round(mu + delta, 3)]


def summarize_posterior(names: Sequence[str], posterior: Posterior) -> list[dict]:
    return [
        {
            "index": i,
            "name": name,
            "mean": round(posterior.mean[i], 4),
            "std": round(posterior.std[i], 4),
            "ci95": _ci95(posterior.mean[i], posterior.std[i]),
            "prob_positive": round(prob_positive(posterior.mean[i], posterior.std[i]), 4),
        }
        for i, name in enumerate(names)
    ]


def build_update_report(
    interventions: Sequence[Intervention],
    old: Posterior,
    new: Posterior,
    active: Sequence[bool],
    score: float,
    date: str,
    tau: float,
    preview: bool = False,
) -> dict:
    """Before/after comparison of each intervention's belief for one night."""
    items = []
    for i, intervention in enumerate(interventions):
        old_mean = old.mean[i] if i < len(old.mean) else 0.0
        new_mean = new.mean[i] if i < len(new.mean) else 0.0
        old_std = old.std[i] if i < len(old.std) else tau
        new_std = new.std[i] if i < len(new.std) else tau
        items.append(
            {
                "name": intervention.name,
                "was_active": bool(active[i]) if i < len(active) else False,
                "old_mean": old_mean,
                "new_mean": new_mean,
                "old_std": old_std,
                "new_std": new_std,
                "old_prob": prob_positive(old_mean, old_std),
                "new_prob": prob_positive(new_mean, new_std),
            }
        )
    return {
        "is_preview": preview,
        "score": score,
        "date": date,
        "interventions": items,
    }


def cooccurrence_counts(k: int, observations: Sequence[Observation]) -> list[list[int]]:
    """counts[i][j]: nights where i and j were both active; diagonal = nights used."""
    counts = [[0] * k for _ in range(k)]
    for obs in observations:
        active = [idx for idx in obs.active_interventions if idx < k]
        for a, i in enumerate(active):
            counts[i][i] += 1
            for j in active[a + 1:]:
                counts[i][j] += 1
                counts[j][i] += 1
    return counts
