"""
Extractor contract shared by all listing extraction strategies.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from app.domain.monitoring import ScanTarget


class ExtractorStrategy:
    PRIMARY = "primary"
    FALLBACK = "fallback"
    STEALTH = "stealth"

    ALL = (PRIMARY, FALLBACK, STEALTH)


@dataclass(frozen=True)
class ExtractedEntity:
    entity_id: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExtractionResult:
    """
    Entities found for one target. A page target yields many, an entity target one.
    """

    entities: tuple[ExtractedEntity, ...]
    confidence: float
    strategy: str

    @property
    def is_empty(self) -> bool:
        return not self.entities

    def field_completeness(self, expected_fields: Iterable[str]) -> float:
        return field_completeness([entity.fields for entity in self.entities], expected_fields)


def field_completeness(rows: list[dict[str, Any]], expected_fields: Iterable[str]) -> float:
    """
    Mean fraction of expected fields that carry a non-empty value.
    """

    expected = tuple(expected_fields)
    if not rows:
        return 0.0
    if not expected:
        return 1.0
    total = 0.0
    for row in rows:
        present = sum(1 for name in expected if row.get(name) not in (None, "", [], {}))
        total += present / len(expected)
    return round(total / len(rows), 4)


class Extractor(ABC):
    """
    One extraction strategy.

    Implementations raise ``ExtractionTransientError`` for failures worth a
    retry and ``ExtractionPermanentError`` when the target is gone.
    """

    def __init__(self, *, strategy: str) -> None:
        self.strategy = strategy

    @abstractmethod
    def extract(self, target: ScanTarget) -> ExtractionResult:
        """
        Extract all entities addressed by ``target``.
        """

    def close(self) -> None:
        return None
