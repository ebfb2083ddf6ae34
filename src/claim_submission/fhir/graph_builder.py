"""Reference graph builder: selected items + context -> encounter and claim records."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict

from ..billing.catalog import MODIFIER_RULES
from ..billing.models import BillingCode, ClinicalNote, ModifierRule, Money, SelectedItem
from ..errors import ClaimValidationError
from .resources import (
    ClaimLineItem,
    ClaimResource,
    EncounterContext,
    EncounterResource,
    PartyReference,
)


class Parties(BaseModel):
    """The parties a claim refers to."""

    model_config = ConfigDict(frozen=True)

    patient: PartyReference
    practitioner: PartyReference
    coverage: PartyReference | None = None


class ReferenceGraphBuilder:
    """Pure transformation from resolved selections to typed resource records."""

    def __init__(self, modifier_rules: Mapping[str, ModifierRule] | None = None) -> None:
        self._rules = dict(MODIFIER_RULES if modifier_rules is None else modifier_rules)

    def build(
        self,
        items: Sequence[SelectedItem],
        notes: Sequence[ClinicalNote],
        encounter_context: EncounterContext,
        parties: Parties,
        catalog: Mapping[str, BillingCode],
        status: Literal["draft", "active", "cancelled"] = "active",
        priority: Literal["stat", "normal", "deferred"] = "normal",
    ) -> tuple[EncounterResource, ClaimResource]:
        """Build the encounter and claim records.

        Args:
            items: Selected line items, in billing order.
            notes: Clinical or administrative notes for the claim.
            encounter_context: Visit metadata.
            parties: Patient, practitioner and optional coverage.
            catalog: Resolved metadata for the selected codes.
            status: Claim status (``draft`` for previews).
            priority: Claim processing priority.

        Raises:
            ClaimValidationError: on an empty selection, an unresolved code,
                a party of the wrong resource type, or mixed currencies.
        """
        _check_parties(parties)
        if not items:
            raise ClaimValidationError("A claim needs at least one selected item")

        unresolved = [item.code for item in items if item.code not in catalog]
        if unresolved:
            raise ClaimValidationError(
                "Selected items reference unresolved billing codes",
                [f"code {code!r} was not resolved" for code in unresolved],
            )

        lines = tuple(
            self._line(sequence, item, catalog[item.code])
            for sequence, item in enumerate(items, start=1)
        )

        currencies = {line.net.currency for line in lines}
        if len(currencies) > 1:
            raise ClaimValidationError(
                f"All line items must share one currency, got {sorted(currencies)}"
            )
        total = Money.zero(lines[0].net.currency)
        for line in lines:
            total = total + line.net

        encounter = EncounterResource(
            context=encounter_context,
            subject=parties.patient,
            participant=parties.practitioner,
        )
        claim = ClaimResource(
            encounter=encounter.local_id,
            patient=parties.patient,
            provider=parties.practitioner,
            coverage=parties.coverage,
            items=lines,
            notes=tuple(notes),
            status=status,
            priority=priority,
            total=total,
            created=encounter_context.created,
        )
        return encounter, claim

    def _line(self, sequence: int, item: SelectedItem, code: BillingCode) -> ClaimLineItem:
        gross = code.unit_price.times(item.quantity)
        factor = Decimal("1")
        applied: list[str] = []
        for modifier in sorted(item.modifiers):
            rule = self._rules.get(modifier)
            if rule is not None:
                factor *= rule.factor
                applied.append(modifier)
        return ClaimLineItem(
            sequence=sequence,
            billing_code=code,
            modifiers=tuple(sorted(item.modifiers)),
            quantity=item.quantity,
            unit_price=code.unit_price,
            gross=gross,
            factor=factor,
            net=gross.scaled(factor) if applied else gross,
            adjustments=tuple(applied),
        )


def _check_parties(parties: Parties) -> None:
    errors = []
    if parties.patient.resource_type != "Patient":
        errors.append(f"patient must be a Patient, got {parties.patient.resource_type}")
    if parties.practitioner.resource_type != "Practitioner":
        errors.append(
            f"practitioner must be a Practitioner, got {parties.practitioner.resource_type}"
        )
    if parties.coverage is not None:
        if parties.coverage.resource_type != "Coverage":
            errors.append(f"coverage must be a Coverage, got {parties.coverage.resource_type}")
        elif not parties.coverage.is_persisted:
            errors.append("coverage must reference an existing Coverage resource")
    if errors:
        raise ClaimValidationError("Invalid claim parties", errors)
