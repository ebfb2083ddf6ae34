"""Bundled static billing catalog.

A small Medicare Benefits Schedule (MBS) snapshot used when the primary
metadata store is unreachable or does not know a code. Prices are the
schedule fee in AUD.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from .models import BillingCode, ModifierRule, Money

MBS_SYSTEM = "http://www.health.gov.au/mbs"
MBS_MODIFIER_SYSTEM = "http://www.health.gov.au/mbs/modifier"

_CATEGORY_ATTENDANCE = "Category 1 - Professional attendances"
_CATEGORY_PROCEDURE  = "Category 3 - Therapeutic procedures"

MBS_ITEMS: dict[str, dict[str, Any]] = {
    "3": {
        "description": "Level A consultation: professional attendance for an obvious problem",
        "fee": "17.90",
        "category": _CATEGORY_ATTENDANCE,
    },
    "23": {
        "description": "Level B consultation: professional attendance lasting less than 20 minutes",
        "fee": "39.10",
        "category": _CATEGORY_ATTENDANCE,
    },
    "36": {
        "description": "Level C consultation: professional attendance lasting at least 20 minutes",
        "fee": "75.75",
        "category": _CATEGORY_ATTENDANCE,
    },
    "44": {
        "description": "Level D consultation: professional attendance lasting at least 40 minutes",
        "fee": "111.50",
        "category": _CATEGORY_ATTENDANCE,
    },
    "721": {
        "description": "Preparation of a GP management plan",
        "fee": "148.75",
        "category": _CATEGORY_ATTENDANCE,
    },
    "723": {
        "description": "Coordination of team care arrangements",
        "fee": "117.90",
        "category": _CATEGORY_ATTENDANCE,
    },
    "2713": {
        "description": "GP mental health treatment consultation lasting at least 20 minutes",
        "fee": "74.15",
        "category": _CATEGORY_ATTENDANCE,
    },
    "10990": {
        "description": "Bulk billing incentive for a concessional or under-16 patient",
        "fee": "6.60",
        "category": _CATEGORY_ATTENDANCE,
    },
    "30026": {
        "description": "Repair of superficial wound, not on face or neck, up to 7 cm",
        "fee": "52.45",
        "category": _CATEGORY_PROCEDURE,
    },
    "30071": {
        "description": "Diagnostic biopsy of skin",
        "fee": "48.90",
        "category": _CATEGORY_PROCEDURE,
    },
}

# Multiple operation rule: the second procedure attracts 50% of its fee,
# the third and later 25%.
MODIFIER_RULES: dict[str, ModifierRule] = {
    "MOR50": ModifierRule(
        modifier="MOR50",
        factor=Decimal("0.50"),
        description="Multiple operation rule, second procedure",
    ),
    "MOR25": ModifierRule(
        modifier="MOR25",
        factor=Decimal("0.25"),
        description="Multiple operation rule, third and subsequent procedures",
    ),
}


class StaticCatalog:
    """Read-only code lookup over an in-memory table."""

    def __init__(self, codes: Mapping[str, BillingCode]) -> None:
        self._codes = dict(codes)

    @classmethod
    def from_mapping(
        cls,
        table: Mapping[str, Mapping[str, Any]],
        currency: str = "AUD",
    ) -> "StaticCatalog":
        """Build a catalog from ``{code: {description, fee, category}}`` rows."""
        codes = {
            code: BillingCode(
                code=code,
                description=row.get("description", ""),
                unit_price=Money(value=Decimal(str(row["fee"])), currency=row.get("currency", currency)),
                category=row.get("category", ""),
                source="static",
            )
            for code, row in table.items()
        }
        return cls(codes)

    @classmethod
    def default(cls) -> "StaticCatalog":
        return cls.from_mapping(MBS_ITEMS)

    def lookup(self, codes: Iterable[str]) -> dict[str, BillingCode]:
        return {code: self._codes[code] for code in codes if code in self._codes}

    def __contains__(self, code: object) -> bool:
        return code in self._codes

    def __len__(self) -> int:
        return len(self._codes)
