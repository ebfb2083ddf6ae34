"""Exception taxonomy for claim assembly.

Remote submission results are not exceptions; see ``fhir.outcomes``.
"""

from __future__ import annotations

from collections.abc import Iterable


class ClaimError(Exception):
    """Base class for every locally raised claim error."""


class ClaimValidationError(ClaimError, ValueError):
    """Raised when caller input is malformed or internally inconsistent."""

    def __init__(self, message: str, errors: Iterable[str] | None = None) -> None:
        self.errors = list(errors or [])
        if self.errors:
            bullet_list = "\n  - ".join(self.errors)
            message = f"{message} ({len(self.errors)} error(s)):\n  - {bullet_list}"
        super().__init__(message)


class MetadataNotFound(ClaimError):
    """Raised when one or more billing codes resolve nowhere."""

    def __init__(self, missing_codes: Iterable[str], primary_unreachable: bool = False) -> None:
        self.missing_codes = frozenset(missing_codes)
        self.primary_unreachable = primary_unreachable
        codes = ", ".join(sorted(self.missing_codes))
        super().__init__(f"Unresolvable billing code(s): {codes}")


class CatalogUnavailable(ClaimError):
    """Raised by a metadata store when it cannot be reached.

    The resolver treats this as a reason to fall back, never as a miss.
    """


class ReferenceIntegrityError(ClaimError):
    """Raised when an assembled document holds a dangling or forward reference."""


class PersistenceError(ClaimError):
    """Raised by a claim record store when a write fails."""
