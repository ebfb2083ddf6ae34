from .catalog import MODIFIER_RULES, StaticCatalog
from .models import BillingCode, ClinicalNote, ModifierRule, Money, SelectedItem
from .resolver import HTTPMetadataStore, MetadataResolver, MetadataStore, Resolution

__all__ = [
    "BillingCode",
    "ClinicalNote",
    "HTTPMetadataStore",
    "MODIFIER_RULES",
    "MetadataResolver",
    "MetadataStore",
    "ModifierRule",
    "Money",
    "Resolution",
    "SelectedItem",
    "StaticCatalog",
]
