import threading
from typing import TYPE_CHECKING, List, Optional, Protocol

import numpy as np

from .core.frozen import FrozenTrial
from .distributions import (
    BaseDistribution,
    CategoricalDistribution,
    DiscreteUniformDistribution,
    IntUniformDistribution,
    LogUniformDistribution,
    UniformDistribution,
)

if TYPE_CHECKING:
    from .core.study import Study


class BaseSampler(Protocol):
    """
    Interface for sampling strategies.

    A sampler produces one parameter value at a time, in the internal
    representation of ``distribution``. Adaptive samplers may look at
    ``history``; the caller converts and persists the result.
    """

    def sample(
        self,
        study: "Study",
        trial: FrozenTrial,
        param_name: str,
        distribution: BaseDistribution,
        history: List[FrozenTrial],
    ) -> float:
        """
        Args:
            study: The study the trial belongs to.
            trial: A snapshot of the trial requesting the value.
            param_name: The name of the parameter being suggested.
            distribution: The value space of the parameter.
            history: All trials of the study ordered by trial id, including
                running and failed ones.

        Returns:
            The sampled value in its internal representation.
        """
        ...


class RandomSampler:
    """
    A simple sampler that suggests hyperparameters completely at random.

    This sampler is useful for establishing a baseline or for the initial
    startup phase of an optimization process. Its random state belongs to
    the instance, so two samplers built with the same seed yield the same
    sequence of values for the same sequence of calls.

    Args:
        seed: Seed for the sampler's ``numpy.random.RandomState``.
    """
    def __init__(self, seed: Optional[int] = None):
        self._seed = seed
        self._rng = np.random.RandomState(seed)
        self._lock = threading.Lock()

    def reseed_rng(self, seed: Optional[int] = None) -> None:
        """Resets the random state, to ``seed`` or to fresh entropy."""
        with self._lock:
            self._rng = np.random.RandomState(seed)

    def sample(
        self,
        study: "Study",
        trial: FrozenTrial,
        param_name: str,
        distribution: BaseDistribution,
        history: List[FrozenTrial],
    ) -> float:
        # The history is not used by this sampler.
        with self._lock:
            return self._sample_independent(distribution)

    def _sample_independent(self, distribution: BaseDistribution) -> float:
        rng = self._rng

        if isinstance(distribution, UniformDistribution):
            if distribution.single():
                return float(distribution.low)
            return float(rng.uniform(distribution.low, distribution.high))

        if isinstance(distribution, LogUniformDistribution):
            log_low = np.log(distribution.low)
            log_high = np.log(distribution.high)
            return float(np.exp(rng.uniform(log_low, log_high)))

        if isinstance(distribution, DiscreteUniformDistribution):
            # Snapped onto the grid when converted to the external value.
            value = rng.uniform(distribution.low, distribution.high)
            return distribution.to_internal_repr(distribution.to_external_repr(value))

        if isinstance(distribution, IntUniformDistribution):
            # Each integer covers a unit-wide interval.
            value = rng.uniform(distribution.low - 0.5, distribution.high + 0.5)
            return distribution.to_internal_repr(distribution.to_external_repr(value))

        if isinstance(distribution, CategoricalDistribution):
            return float(rng.randint(len(distribution.choices)))

        raise ValueError(f"Unknown distribution: {distribution!r}")
