"""
Parameter value spaces.

Every suggested value travels through samplers and storage in an internal
float representation paired with its distribution. The distribution converts
between that representation and the value handed to the objective function.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, Tuple, Union

import numpy as np

CategoricalChoiceType = Union[None, bool, int, float, str]


@dataclass(frozen=True)
class UniformDistribution:
    """A continuous distribution over ``[low, high]``."""
    low: float
    high: float

    def __post_init__(self):
        object.__setattr__(self, "low", float(self.low))
        object.__setattr__(self, "high", float(self.high))
        if self.low > self.high:
            raise ValueError(
                f"The `low` value must be smaller than or equal to the `high` value "
                f"(low={self.low}, high={self.high})."
            )

    def to_external_repr(self, internal: float) -> float:
        return float(internal)

    def to_internal_repr(self, external: Any) -> float:
        return float(external)

    def single(self) -> bool:
        return self.low == self.high

    def contains(self, internal: float) -> bool:
        if self.single():
            return internal == self.low
        return self.low <= internal <= self.high


@dataclass(frozen=True)
class LogUniformDistribution:
    """
    A continuous distribution over ``[low, high]`` whose logarithm is uniform.

    Samplers draw in ``[ln(low), ln(high)]`` and exponentiate; the external
    value is clipped back into the bounds to absorb rounding at the edges.
    """
    low: float
    high: float

    def __post_init__(self):
        object.__setattr__(self, "low", float(self.low))
        object.__setattr__(self, "high", float(self.high))
        if self.low > self.high:
            raise ValueError(
                f"The `low` value must be smaller than or equal to the `high` value "
                f"(low={self.low}, high={self.high})."
            )
        if self.low <= 0.0:
            raise ValueError(f"The `low` value must be larger than 0 for a log distribution (low={self.low}).")

    def to_external_repr(self, internal: float) -> float:
        return float(min(max(internal, self.low), self.high))

    def to_internal_repr(self, external: Any) -> float:
        return float(external)

    def single(self) -> bool:
        return self.low == self.high

    def contains(self, internal: float) -> bool:
        return self.low <= internal <= self.high


@dataclass(frozen=True)
class DiscreteUniformDistribution:
    """A grid ``low, low + q, low + 2q, ...`` bounded above by ``high``."""
    low: float
    high: float
    q: float

    def __post_init__(self):
        object.__setattr__(self, "low", float(self.low))
        object.__setattr__(self, "high", float(self.high))
        object.__setattr__(self, "q", float(self.q))
        if self.low > self.high:
            raise ValueError(
                f"The `low` value must be smaller than or equal to the `high` value "
                f"(low={self.low}, high={self.high})."
            )
        if self.q <= 0:
            raise ValueError(f"The `q` value must be larger than 0 (q={self.q}).")

    def to_external_repr(self, internal: float) -> float:
        value = self.low + np.round((internal - self.low) / self.q) * self.q
        return float(min(max(value, self.low), self._grid_high()))

    def _grid_high(self) -> float:
        # The largest grid point not above `high`.
        n_steps = np.floor(np.round((self.high - self.low) / self.q, 8))
        return min(self.low + n_steps * self.q, self.high)

    def to_internal_repr(self, external: Any) -> float:
        return float(external)

    def single(self) -> bool:
        if self.low == self.high:
            return True
        return (self.high - self.low) < self.q

    def contains(self, internal: float) -> bool:
        return self.low <= internal <= self.high


@dataclass(frozen=True)
class IntUniformDistribution:
    """Integers in ``[low, high]``, both ends inclusive."""
    low: int
    high: int

    def __post_init__(self):
        object.__setattr__(self, "low", int(self.low))
        object.__setattr__(self, "high", int(self.high))
        if self.low > self.high:
            raise ValueError(
                f"The `low` value must be smaller than or equal to the `high` value "
                f"(low={self.low}, high={self.high})."
            )

    def to_external_repr(self, internal: float) -> int:
        value = int(np.round(internal))
        return min(max(value, int(self.low)), int(self.high))

    def to_internal_repr(self, external: Any) -> float:
        return float(external)

    def single(self) -> bool:
        return self.low == self.high

    def contains(self, internal: float) -> bool:
        return self.low <= internal <= self.high


@dataclass(frozen=True)
class CategoricalDistribution:
    """
    A finite set of choices.

    The internal representation is the index of the chosen element, so
    samplers only ever deal with numbers.
    """
    choices: Tuple[CategoricalChoiceType, ...]

    def __post_init__(self):
        # numpy scalars become their builtin counterparts so the distribution
        # serializes to JSON.
        object.__setattr__(
            self, "choices", tuple(c.item() if isinstance(c, np.generic) else c for c in self.choices)
        )
        if len(self.choices) == 0:
            raise ValueError("The `choices` must contain one or more elements.")
        for choice in self.choices:
            if choice is not None and not isinstance(choice, (bool, int, float, str)):
                raise ValueError(
                    f"Choices for a categorical distribution should be a tuple of None, bool, "
                    f"int, float and str, but got {choice!r}."
                )

    def to_external_repr(self, internal: float) -> CategoricalChoiceType:
        return self.choices[int(internal)]

    def to_internal_repr(self, external: Any) -> float:
        try:
            return float(self.choices.index(external))
        except ValueError as e:
            raise ValueError(f"{external!r} is not a valid choice of {self.choices!r}.") from e

    def single(self) -> bool:
        return len(self.choices) == 1

    def contains(self, internal: float) -> bool:
        index = int(internal)
        return 0 <= index < len(self.choices) and index == internal


BaseDistribution = Union[
    UniformDistribution,
    LogUniformDistribution,
    DiscreteUniformDistribution,
    IntUniformDistribution,
    CategoricalDistribution,
]

DISTRIBUTION_CLASSES = (
    UniformDistribution,
    LogUniformDistribution,
    DiscreteUniformDistribution,
    IntUniformDistribution,
    CategoricalDistribution,
)


def distribution_to_json(distribution: BaseDistribution) -> str:
    """
    Serializes a distribution as ``{"name": <class name>, "attributes": {...}}``.
    """
    attributes: Dict[str, Any] = asdict(distribution)
    if isinstance(distribution, CategoricalDistribution):
        attributes["choices"] = list(distribution.choices)
    return json.dumps({"name": distribution.__class__.__name__, "attributes": attributes})


def json_to_distribution(json_str: str) -> BaseDistribution:
    loaded = json.loads(json_str)
    for cls in DISTRIBUTION_CLASSES:
        if loaded["name"] == cls.__name__:
            attributes = loaded["attributes"]
            if cls is CategoricalDistribution:
                return CategoricalDistribution(choices=tuple(attributes["choices"]))
            return cls(**attributes)
    raise ValueError(f"Unknown distribution class: {loaded['name']}")

