"""Nightly Thompson-sampling roll with group exclusivity."""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence

from .errors import NoEnabledInterventionsError
from .models import AppState, Group, Intervention
from .posterior import Posterior, sample_from_posterior

logger = logging.getLogger(__name__)


def select_active_interventions(
    samples: Sequence[float],
    interventions: Sequence[Intervention],
    groups: Sequence[Group],
) -> list[bool]:
    """Decide tonight's active set from one posterior sample.

    An intervention is active iff its sample is positive and it is enabled.
    Within each group only the best-sampled enabled member may stay active,
    and only if its sample is positive. Ties go to the first member in index
    order.
    """
    n = min(len(samples), len(interventions))
    active = [samples[i] > 0 and not interventions[i].disabled for i in range(n)]

    for group in groups:
        if group.archived:
            continue
        best_idx = -1
        best_sample = float("-inf")
        for idx in sorted(group.intervention_indices):
            if idx < n and not interventions[idx].disabled and samples[idx] > best_sample:
                best_sample = samples[idx]
                best_idx = idx

        for idx in group.intervention_indices:
            if idx < n:
                active[idx] = False

        if best_idx != -1 and best_sample > 0:
            active[best_idx] = True

    return active


def roll_tonight(
    state: AppState,
    posterior: Posterior,
    rng: random.Random | None = None,
) -> tuple[list[float], list[bool]]:
    """Draw one Thompson sample and select tonight's interventions.

    Raises NoEnabledInterventionsError when nothing can be rolled.
    """
    if state.enabled_count() == 0:
        raise NoEnabledInterventionsError()

    samples = sample_from_posterior(posterior.mean, posterior.cov, rng)
    active = select_active_interventions(samples, state.interventions, state.active_groups())
    logger.info(
        "Rolled %d of %d interventions",
        sum(active),
        len(active),
        extra={"bandit_active_count": sum(active)},
    )
    return samples, active
