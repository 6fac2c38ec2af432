from app.monitoring.extractors.base import (
    ExtractedEntity,
    ExtractionResult,
    Extractor,
    ExtractorStrategy,
    field_completeness,
)
from app.monitoring.extractors.http_listing import (
    HttpListingExtractor,
    ListingSiteConfig,
    load_site_config,
)
from app.monitoring.extractors.registry import ExtractorRegistry, build_extractor_registry

__all__ = [
    "ExtractedEntity",
    "ExtractionResult",
    "Extractor",
    "ExtractorRegistry",
    "ExtractorStrategy",
    "HttpListingExtractor",
    "ListingSiteConfig",
    "build_extractor_registry",
    "field_completeness",
    "load_site_config",
]
