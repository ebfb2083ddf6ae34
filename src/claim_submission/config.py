"""Environment-derived settings.

Only the API entry point calls ``Settings.from_env()``; every component
below it receives its configuration explicitly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

DEFAULT_FHIR_BASE_URL = "http://localhost:8080/fhir"
DEFAULT_TIMEOUT_SECONDS = 20.0
DEFAULT_MAX_REDIRECTS = 3
DEFAULT_CATALOG_TIMEOUT_SECONDS = 5.0


def _getenv_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    return default if value is None or value.strip() == "" else value.strip()


def _getenv_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _getenv_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    fhir_base_url: str = DEFAULT_FHIR_BASE_URL
    fhir_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    fhir_max_redirects: int = DEFAULT_MAX_REDIRECTS
    catalog_base_url: str | None = None
    catalog_timeout_seconds: float = DEFAULT_CATALOG_TIMEOUT_SECONDS
    catalog_cache: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        catalog_url = _getenv_str("CLAIMS_CATALOG_BASE_URL", "")
        return cls(
            fhir_base_url=_getenv_str("CLAIMS_FHIR_BASE_URL", DEFAULT_FHIR_BASE_URL),
            fhir_timeout_seconds=_getenv_float("CLAIMS_FHIR_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
            fhir_max_redirects=_getenv_int("CLAIMS_FHIR_MAX_REDIRECTS", DEFAULT_MAX_REDIRECTS),
            catalog_base_url=catalog_url or None,
            catalog_timeout_seconds=_getenv_float(
                "CLAIMS_CATALOG_TIMEOUT_SECONDS", DEFAULT_CATALOG_TIMEOUT_SECONDS
            ),
            catalog_cache=_getenv_bool("CLAIMS_CATALOG_CACHE", True),
            log_level=_getenv_str("CLAIMS_LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    )
