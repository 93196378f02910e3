"""Closed set of resolution outcomes and the parser that produces them."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

from .errors import InvariantViolation, ValidationError
from .models import ContractState, OutcomeType

BINARY_OUTCOMES = ("YES", "NO", "MKT", "CANCEL")


@dataclass(frozen=True, slots=True)
class YesOutcome:
    resolution: ClassVar[str] = "YES"


@dataclass(frozen=True, slots=True)
class NoOutcome:
    resolution: ClassVar[str] = "NO"


@dataclass(frozen=True, slots=True)
class CancelOutcome:
    resolution: ClassVar[str] = "CANCEL"


@dataclass(frozen=True, slots=True)
class MarketOutcome:
    """Binary market resolved to a probability in [0, 1]."""

    probability: float
    resolution: ClassVar[str] = "MKT"


@dataclass(frozen=True, slots=True)
class AnswerOutcome:
    """Free-response market resolved to a single answer."""

    answer_id: str

    @property
    def resolution(self) -> str:
        return self.answer_id


@dataclass(frozen=True, slots=True)
class WeightedMarketOutcome:
    """Free-response market split across answers by relative weight."""

    weights: Mapping[str, float] = field(default_factory=dict)
    resolution: ClassVar[str] = "MKT"

    def normalized_weights(self) -> dict[str, float]:
        total = sum(self.weights.values())
        if total <= 0:
            raise InvariantViolation("Resolution weights must sum to a positive value")
        return {answer: weight / total for answer, weight in self.weights.items()}


Outcome = Union[
    YesOutcome,
    NoOutcome,
    CancelOutcome,
    MarketOutcome,
    AnswerOutcome,
    WeightedMarketOutcome,
]


def parse_outcome(
    outcome_type: str,
    outcome: Any,
    probability_int: float | None = None,
    resolutions: Mapping[str, Any] | None = None,
    answers: Sequence[str] | None = None,
) -> Outcome:
    """Validate a resolution request and turn it into an ``Outcome``.

    ``probability_int`` is the 0-100 probability used by binary ``MKT``
    resolutions. ``resolutions`` maps answer ids to weights for a
    free-response ``MKT`` resolution.
    """

    if outcome_type == OutcomeType.BINARY.value:
        if outcome not in BINARY_OUTCOMES:
            raise ValidationError("Invalid outcome")
        if probability_int is not None and not _is_valid_probability(probability_int):
            raise ValidationError("Invalid probability")
        if outcome == "YES":
            return YesOutcome()
        if outcome == "NO":
            return NoOutcome()
        if outcome == "CANCEL":
            return CancelOutcome()
        if probability_int is None:
            raise ValidationError("Invalid probability")
        return MarketOutcome(probability=float(probability_int) / 100)

    if outcome_type == OutcomeType.FREE_RESPONSE.value:
        if outcome == "CANCEL":
            return CancelOutcome()
        if outcome == "MKT":
            if not resolutions:
                raise ValidationError("Invalid outcome")
            return WeightedMarketOutcome(weights=_parse_weights(resolutions, answers))
        if not isinstance(outcome, str) or not outcome:
            raise ValidationError("Invalid outcome")
        if answers is not None:
            if outcome not in answers:
                raise ValidationError("Invalid outcome")
        elif not _is_numeric(outcome):
            raise ValidationError("Invalid outcome")
        return AnswerOutcome(answer_id=outcome)

    raise InvariantViolation("Invalid contract outcomeType")


def restore_outcome(contract: ContractState) -> Outcome:
    """Rebuild the outcome of an already resolved contract from its stored fields."""

    resolution = contract.resolution
    if resolution is None:
        raise InvariantViolation(f"Contract {contract.id} has no resolution")
    if resolution == "CANCEL":
        return CancelOutcome()
    if contract.outcome_type == OutcomeType.BINARY.value:
        if resolution == "YES":
            return YesOutcome()
        if resolution == "NO":
            return NoOutcome()
        if resolution == "MKT":
            if contract.resolution_probability is None:
                raise InvariantViolation(f"Contract {contract.id} is missing its resolution probability")
            return MarketOutcome(probability=contract.resolution_probability)
        raise InvariantViolation(f"Contract {contract.id} has unknown resolution {resolution}")
    if contract.outcome_type == OutcomeType.FREE_RESPONSE.value:
        if resolution == "MKT":
            if not contract.resolutions:
                raise InvariantViolation(f"Contract {contract.id} is missing its resolution weights")
            return WeightedMarketOutcome(weights=dict(contract.resolutions))
        return AnswerOutcome(answer_id=resolution)
    raise InvariantViolation("Invalid contract outcomeType")


def resolution_fields(outcome: Outcome) -> dict[str, Any]:
    """Fields written onto a contract when it is resolved to ``outcome``."""

    probability = outcome.probability if isinstance(outcome, MarketOutcome) else None
    weights = dict(outcome.weights) if isinstance(outcome, WeightedMarketOutcome) else None
    return {
        "resolution": outcome.resolution,
        "resolution_probability": probability,
        "resolutions": weights,
    }


def _is_valid_probability(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and 0 <= value <= 100


def _is_numeric(value: str) -> bool:
    try:
        return math.isfinite(float(value))
    except ValueError:
        return False


def _parse_weights(
    resolutions: Mapping[str, Any], answers: Sequence[str] | None
) -> dict[str, float]:
    weights: dict[str, float] = {}
    for answer, weight in resolutions.items():
        if answers is not None and answer not in answers:
            raise ValidationError("Invalid resolutions")
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise ValidationError("Invalid resolutions")
        if not math.isfinite(weight) or weight < 0:
            raise ValidationError("Invalid resolutions")
        weights[str(answer)] = float(weight)
    if sum(weights.values()) <= 0:
        raise ValidationError("Invalid resolutions")
    return weights


__all__ = [
    "AnswerOutcome",
    "BINARY_OUTCOMES",
    "CancelOutcome",
    "MarketOutcome",
    "NoOutcome",
    "Outcome",
    "WeightedMarketOutcome",
    "YesOutcome",
    "parse_outcome",
    "resolution_fields",
    "restore_outcome",
]
