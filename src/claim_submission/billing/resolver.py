"""Two-tier billing code resolution: primary store, then static catalog."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal, InvalidOperation
from typing import Literal, Protocol

import requests
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..errors import CatalogUnavailable, MetadataNotFound
from .catalog import StaticCatalog
from .models import BillingCode, Money

logger = logging.getLogger(__name__)


class MetadataStore(Protocol):
    """Read contract of the primary metadata store."""

    def fetch(self, codes: frozenset[str]) -> dict[str, BillingCode]:
        """Return metadata for the codes it knows.

        Raises:
            CatalogUnavailable: if the store cannot be reached.
        """
        ...


class Resolution(BaseModel):
    """Typed result of a resolution pass, complete or not."""

    model_config = ConfigDict(frozen=True)

    codes: dict[str, BillingCode] = Field(default_factory=dict)
    missing: frozenset[str] = Field(default_factory=frozenset)
    primary_unreachable: bool = False
    sources: dict[str, Literal["cache", "primary", "static"]] = Field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.missing


class MetadataResolver:
    """Resolve billing codes, falling back to the bundled catalog."""

    def __init__(
        self,
        primary: MetadataStore | None = None,
        fallback: StaticCatalog | None = None,
        cache: bool = True,
    ) -> None:
        self._primary = primary
        self._fallback = fallback or StaticCatalog.default()
        self._cache_enabled = cache
        # Entries are never replaced once set; concurrent misses may fetch twice.
        self._cache: dict[str, BillingCode] = {}

    def resolve(self, codes: Iterable[str]) -> dict[str, BillingCode]:
        """Resolve every code or raise.

        Raises:
            MetadataNotFound: listing every code neither tier could resolve.
        """
        resolution = self.resolve_detailed(codes)
        if not resolution.complete:
            raise MetadataNotFound(resolution.missing, resolution.primary_unreachable)
        return dict(resolution.codes)

    def resolve_detailed(self, codes: Iterable[str]) -> Resolution:
        wanted = frozenset(codes)
        found: dict[str, BillingCode] = {}
        sources: dict[str, str] = {}

        if self._cache_enabled:
            for code in wanted:
                cached = self._cache.get(code)
                if cached is not None:
                    found[code] = cached
                    sources[code] = "cache"

        pending = wanted - found.keys()
        primary_unreachable = False
        if pending and self._primary is not None:
            try:
                fetched = self._primary.fetch(pending)
            except CatalogUnavailable as exc:
                primary_unreachable = True
                logger.warning(
                    "Primary metadata store unreachable, using static catalog for %d code(s): %s",
                    len(pending), exc,
                )
            else:
                for code, billing_code in fetched.items():
                    if code not in pending:
                        continue
                    found[code] = billing_code
                    sources[code] = "primary"
                    if self._cache_enabled:
                        self._cache.setdefault(code, billing_code)

        pending = wanted - found.keys()
        if pending:
            for code, billing_code in self._fallback.lookup(pending).items():
                found[code] = billing_code
                sources[code] = "static"

        missing = wanted - found.keys()
        if missing:
            logger.info("Unresolved billing code(s): %s", ", ".join(sorted(missing)))
        return Resolution(
            codes=found,
            missing=missing,
            primary_unreachable=primary_unreachable,
            sources=sources,
        )

    def clear_cache(self) -> None:
        self._cache.clear()


class HTTPMetadataStore:
    """Primary metadata store reached over HTTP.

    ``GET {base_url}/billing-codes?code=23,36`` must answer with a JSON list
    (or ``{"items": [...]}``) of records shaped like::

        {"code": "23", "description": "...", "category": "...",
         "price": {"value": "39.10", "currency": "AUD"}}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def fetch(self, codes: frozenset[str]) -> dict[str, BillingCode]:
        if not codes:
            return {}
        url = f"{self.base_url}/billing-codes"
        try:
            response = self._session.get(
                url,
                params={"code": ",".join(sorted(codes))},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise CatalogUnavailable(f"GET {url} failed: {exc}") from exc

        if response.status_code == 404:
            return {}
        if response.status_code >= 400:
            raise CatalogUnavailable(f"GET {url} returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise CatalogUnavailable(f"GET {url} returned a non-JSON body") from exc

        records = body.get("items", []) if isinstance(body, dict) else body
        if not isinstance(records, list):
            raise CatalogUnavailable(f"GET {url} returned an unexpected payload shape")
        return {code.code: code for code in (_parse_record(r) for r in records)}


def _parse_record(record: object) -> BillingCode:
    if not isinstance(record, dict):
        raise CatalogUnavailable(f"Malformed billing code record: {record!r}")
    price = record.get("price") or {}
    try:
        return BillingCode(
            code=str(record["code"]),
            description=record.get("description", ""),
            unit_price=Money(value=Decimal(str(price["value"])), currency=price["currency"]),
            category=record.get("category", ""),
            source="primary",
        )
    except (KeyError, TypeError, InvalidOperation, PydanticValidationError) as exc:
        raise CatalogUnavailable(f"Malformed billing code record: {record!r}") from exc
