"""
requests + BeautifulSoup extractor for marketplace search and detail pages.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup, Tag

from app.domain.monitoring import ScanTarget, TargetKind
from app.monitoring.errors import ExtractionPermanentError, ExtractionTransientError
from app.monitoring.extractors.base import (
    ExtractedEntity,
    ExtractionResult,
    Extractor,
    ExtractorStrategy,
    field_completeness,
)
from app.monitoring.logging_utils import log_event
from app.monitoring.normalization import parse_age_months, parse_money

logger = logging.getLogger(__name__)

DEFAULT_SITE_CONFIG_PATH = Path(__file__).with_name("site_config.json")

PERMANENT_STATUS_CODES = {404, 410}
TRANSIENT_STATUS_CODES = {403, 408, 425, 429, 500, 502, 503, 504}
MAX_LISTINGS_PER_PAGE = 500

# Headers a desktop browser would send; used by the stealth strategy.
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}


@dataclass(frozen=True)
class ListingSiteConfig:
    """
    URL templates and CSS selectors for one marketplace.
    """

    name: str
    base_url: str
    page_url_template: str
    entity_url_template: str
    listing_selectors: list[str]
    fields: dict[str, list[str]]
    detail_fields: dict[str, list[str]] = field(default_factory=dict)
    entity_id_attribute: str | None = None
    entity_link_selector: str | None = None
    entity_id_pattern: str | None = None
    money_fields: tuple[str, ...] = ()
    required_fields: tuple[str, ...] = ("title", "price", "url")
    headers: dict[str, str] = field(default_factory=dict)

    def page_url(self, page: str) -> str:
        return self.page_url_template.format(base_url=self.base_url.rstrip("/"), page=page)

    def entity_url(self, entity_id: str) -> str:
        return self.entity_url_template.format(
            base_url=self.base_url.rstrip("/"),
            entity_id=entity_id,
        )


def _normalize_selectors(raw: Any) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        return {}
    normalized: dict[str, list[str]] = {}
    for key, value in raw.items():
        if isinstance(value, str):
            selectors = [value.strip()] if value.strip() else []
        elif isinstance(value, list):
            selectors = [str(item).strip() for item in value if str(item).strip()]
        else:
            continue
        if selectors:
            normalized[str(key).strip().lower()] = selectors
    return normalized


def load_site_config(config_path: str | Path | None = None) -> ListingSiteConfig:
    """
    Load a site configuration from JSON. Defaults to the bundled config.
    """

    path = Path(config_path) if config_path else DEFAULT_SITE_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Site config file not found: {path}")

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("Invalid site config: top level must be an object.")

    base_url = str(raw.get("base_url", "")).strip()
    if not base_url:
        raise ValueError("Invalid site config: 'base_url' is required.")

    fields = _normalize_selectors(raw.get("fields"))
    if not fields:
        raise ValueError("Invalid site config: 'fields' must map field names to selectors.")

    listing_selectors = raw.get("listing_selectors") or []
    if isinstance(listing_selectors, str):
        listing_selectors = [listing_selectors]

    return ListingSiteConfig(
        name=str(raw.get("name") or base_url).strip(),
        base_url=base_url,
        page_url_template=str(raw.get("page_url_template") or "{base_url}/search?page={page}"),
        entity_url_template=str(raw.get("entity_url_template") or "{base_url}/{entity_id}"),
        listing_selectors=[str(item) for item in listing_selectors if str(item).strip()],
        fields=fields,
        detail_fields=_normalize_selectors(raw.get("detail_fields")) or fields,
        entity_id_attribute=raw.get("entity_id_attribute") or None,
        entity_link_selector=raw.get("entity_link_selector") or None,
        entity_id_pattern=raw.get("entity_id_pattern") or None,
        money_fields=tuple(str(item).lower() for item in raw.get("money_fields", [])),
        required_fields=tuple(
            str(item).lower() for item in raw.get("required_fields", ("title", "price", "url"))
        ),
        headers={str(k): str(v) for k, v in (raw.get("headers") or {}).items()},
    )


class HttpListingExtractor(Extractor):
    """
    Fetches a search results page or a listing detail page and parses it.
    """

    def __init__(
        self,
        *,
        strategy: str = ExtractorStrategy.PRIMARY,
        site_config: ListingSiteConfig | None = None,
        session: requests.Session | None = None,
        user_agent: str | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        super().__init__(strategy=strategy)
        self.site_config = site_config or load_site_config()
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds

        headers: dict[str, str] = {}
        if strategy == ExtractorStrategy.STEALTH:
            headers.update(BROWSER_HEADERS)
        elif user_agent:
            headers["User-Agent"] = user_agent
        headers.update(self.site_config.headers)
        self.request_headers = headers
        self._id_pattern = (
            re.compile(self.site_config.entity_id_pattern)
            if self.site_config.entity_id_pattern
            else None
        )

    def extract(self, target: ScanTarget) -> ExtractionResult:
        if target.kind == TargetKind.PAGE:
            url = target.url or self.site_config.page_url(target.value)
        else:
            url = target.url or self.site_config.entity_url(target.value)

        response = self._fetch(url)
        soup = BeautifulSoup(response.text, "html.parser")

        if target.kind == TargetKind.PAGE:
            entities = self._parse_listing_page(soup, page_url=url)
        else:
            entities = self._parse_detail_page(soup, entity_id=target.value, page_url=url)

        confidence = field_completeness(
            [entity.fields for entity in entities],
            self.site_config.required_fields,
        )
        log_event(
            logger,
            logging.DEBUG,
            "page_extracted",
            strategy=self.strategy,
            target=f"{target.kind}:{target.value}",
            entities=len(entities),
            confidence=confidence,
        )
        return ExtractionResult(entities=tuple(entities), confidence=confidence, strategy=self.strategy)

    def close(self) -> None:
        self.session.close()

    def _fetch(self, url: str) -> requests.Response:
        try:
            response = self.session.get(
                url,
                headers=self.request_headers,
                timeout=self.timeout_seconds,
                allow_redirects=True,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise ExtractionTransientError(f"Request to {url} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise ExtractionPermanentError(f"Request to {url} is invalid: {exc}") from exc

        status_code = response.status_code
        if status_code in PERMANENT_STATUS_CODES:
            raise ExtractionPermanentError(f"Target gone status={status_code} url={url}")
        if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
            raise ExtractionTransientError(f"Retryable status={status_code} url={url}")
        if status_code >= 400:
            raise ExtractionPermanentError(f"Rejected status={status_code} url={url}")
        return response

    def _parse_listing_page(self, soup: BeautifulSoup, *, page_url: str) -> list[ExtractedEntity]:
        cards: list[Tag] = []
        for selector in self.site_config.listing_selectors:
            cards.extend(soup.select(selector))

        entities: list[ExtractedEntity] = []
        seen: set[str] = set()
        for card in cards[:MAX_LISTINGS_PER_PAGE]:
            entity_id, href = self._identify(card)
            if not entity_id or entity_id in seen:
                continue
            seen.add(entity_id)
            fields = self._extract_fields(card, self.site_config.fields)
            if href:
                fields["url"] = urljoin(page_url, href)
            entities.append(ExtractedEntity(entity_id=entity_id, fields=fields))
        return entities

    def _parse_detail_page(
        self,
        soup: BeautifulSoup,
        *,
        entity_id: str,
        page_url: str,
    ) -> list[ExtractedEntity]:
        fields = self._extract_fields(soup, self.site_config.detail_fields)
        if not fields:
            return []
        fields["url"] = page_url
        return [ExtractedEntity(entity_id=entity_id, fields=fields)]

    def _identify(self, card: Tag) -> tuple[str | None, str | None]:
        href: str | None = None
        link = None
        if self.site_config.entity_link_selector:
            link = card.select_one(self.site_config.entity_link_selector)
        if link is not None and link.get("href"):
            href = str(link.get("href"))

        attribute = self.site_config.entity_id_attribute
        if attribute and card.get(attribute):
            return str(card.get(attribute)).strip(), href

        if href and self._id_pattern is not None:
            match = self._id_pattern.search(href)
            if match:
                return match.group(1), href
        return None, href

    def _extract_fields(self, root: Tag, selectors: dict[str, list[str]]) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for field_name, candidates in selectors.items():
            text = self._first_text(root, candidates)
            if text is None:
                continue
            fields[field_name] = self._coerce(field_name, text)
        return fields

    def _coerce(self, field_name: str, text: str) -> Any:
        if field_name == "age_months":
            return parse_age_months(text)
        if field_name in self.site_config.money_fields:
            parsed = parse_money(text)
            return text if parsed is None else parsed
        return text

    @staticmethod
    def _first_text(root: Tag, selectors: list[str]) -> str | None:
        for selector in selectors:
            node = root.select_one(selector)
            if node is None:
                continue
            text = re.sub(r"\s+", " ", node.get_text(" ", strip=True)).strip()
            if text:
                return text
        return None
