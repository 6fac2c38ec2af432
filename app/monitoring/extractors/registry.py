"""
Extractor registry: strategy name -> configured extractor instance.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from app.config import ExtractorSettings
from app.monitoring.extractors.base import Extractor, ExtractorStrategy
from app.monitoring.extractors.http_listing import HttpListingExtractor, load_site_config

logger = logging.getLogger(__name__)


class ExtractorRegistry:
    """
    Holds one extractor per strategy and builds them from type names.

    Types are either a registered built-in name or ``module.path:ClassName``.
    """

    def __init__(self, registrations: Mapping[str, type[Extractor]] | None = None) -> None:
        builtins: dict[str, type[Extractor]] = {"http_listing": HttpListingExtractor}
        if registrations:
            builtins.update({key.strip().lower(): value for key, value in registrations.items()})
        self._types = builtins
        self._extractors: dict[str, Extractor] = {}

    def register_type(self, *, extractor_type: str, extractor_class: type[Extractor]) -> None:
        self._types[extractor_type.strip().lower()] = extractor_class

    def register(self, strategy: str, extractor: Extractor) -> None:
        self._extractors[strategy.strip().lower()] = extractor

    def get(self, strategy: str) -> Extractor | None:
        return self._extractors.get(strategy.strip().lower())

    def strategies(self) -> list[str]:
        return list(self._extractors)

    def ordered(self, order: Iterable[str]) -> list[Extractor]:
        """
        Extractors in the given strategy order; unregistered strategies are skipped.
        """

        resolved: list[Extractor] = []
        for strategy in order:
            extractor = self.get(strategy)
            if extractor is not None and extractor not in resolved:
                resolved.append(extractor)
        return resolved

    def create(self, extractor_type: str, *, strategy: str, **kwargs: Any) -> Extractor:
        extractor_class = self._resolve_class(extractor_type)
        return extractor_class(strategy=strategy, **kwargs)

    def close_all(self) -> None:
        for strategy, extractor in self._extractors.items():
            try:
                extractor.close()
            except Exception:
                logger.exception("Failed to close extractor for strategy=%s", strategy)

    def _resolve_class(self, extractor_type: str) -> type[Extractor]:
        normalized = extractor_type.strip()
        if ":" in normalized:
            return self._load_dynamic_class(normalized)

        resolved = self._types.get(normalized.lower())
        if resolved is None:
            allowed = ", ".join(sorted(self._types))
            raise ValueError(f"Unknown extractor type '{extractor_type}'. Allowed types: {allowed}.")
        return resolved

    @staticmethod
    def _load_dynamic_class(path: str) -> type[Extractor]:
        module_path, class_name = path.split(":", 1)
        module = importlib.import_module(module_path)
        loaded = getattr(module, class_name, None)
        if loaded is None:
            raise ValueError(f"Unable to resolve extractor class '{path}'.")
        if not isinstance(loaded, type) or not issubclass(loaded, Extractor):
            raise ValueError(f"Class '{path}' must inherit from Extractor.")
        return loaded


def build_extractor_registry(
    settings: ExtractorSettings,
    *,
    timeout_seconds: float,
) -> ExtractorRegistry:
    """
    Instantiate one extractor per configured strategy.

    Built-in HTTP extractors share the site config; dynamically loaded classes
    only receive ``strategy``.
    """

    registry = ExtractorRegistry()
    site_config = None
    for strategy, extractor_type in settings.strategy_types().items():
        if strategy not in ExtractorStrategy.ALL:
            continue
        if extractor_type.strip().lower() == "http_listing":
            if site_config is None:
                site_config = load_site_config(settings.site_config_path)
            extractor = registry.create(
                extractor_type,
                strategy=strategy,
                site_config=site_config,
                user_agent=settings.user_agent,
                timeout_seconds=timeout_seconds,
            )
        else:
            extractor = registry.create(extractor_type, strategy=strategy)
        registry.register(strategy, extractor)
    return registry
