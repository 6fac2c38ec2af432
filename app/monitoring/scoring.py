"""
Change scoring policy used by the diff engine.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from app.monitoring.normalization import as_number


@dataclass(frozen=True)
class FieldScore:
    score: float
    percentage: float | None = None


class ChangeScoringPolicy:
    """
    Scores field-level and entity-level changes.

    Numeric field: ``weight * (1 + min(|delta| / |old|, max_relative_delta))``.
    A move away from zero counts as the maximum relative delta.
    Non-numeric field or a null transition: ``weight``.
    New and deleted entities: ``entity_event_score``.
    """

    def __init__(
        self,
        *,
        field_weights: Mapping[str, float],
        numeric_fields: Iterable[str] = (),
        default_weight: float = 0.2,
        max_relative_delta: float = 1.0,
        entity_event_score: float = 1.0,
    ) -> None:
        self._field_weights = {key.lower(): float(value) for key, value in field_weights.items()}
        self._numeric_fields = frozenset(name.lower() for name in numeric_fields)
        self._default_weight = default_weight
        self._max_relative_delta = max_relative_delta
        self._entity_event_score = entity_event_score

    @property
    def entity_event_score(self) -> float:
        return self._entity_event_score

    def weight_for(self, field_name: str) -> float:
        return self._field_weights.get(field_name.lower(), self._default_weight)

    def score_field(self, field_name: str, old_value: object, new_value: object) -> FieldScore:
        weight = self.weight_for(field_name)
        old_number = as_number(old_value)
        new_number = as_number(new_value)
        if old_number is None or new_number is None:
            return FieldScore(score=round(weight, 4))

        delta = abs(new_number - old_number)
        if old_number == 0:
            relative = self._max_relative_delta if delta else 0.0
            percentage = None
        else:
            relative = min(delta / abs(old_number), self._max_relative_delta)
            percentage = round((new_number - old_number) / abs(old_number) * 100.0, 2)

        return FieldScore(score=round(weight * (1.0 + relative), 4), percentage=percentage)

    def is_numeric(self, field_name: str) -> bool:
        return field_name.lower() in self._numeric_fields
