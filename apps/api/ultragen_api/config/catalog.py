"""
Tier catalog: pydantic models + JSON Schema validated loader.

The catalog replaces string-keyed dispatch on vendor plan names with a typed
lookup table keyed by the normalized plan name, checked once at load time.
"""

import json
from pathlib import Path
from typing import List, Optional

from jsonschema import ValidationError as JsonSchemaValidationError
from jsonschema import validate
from pydantic import BaseModel, Field, ValidationError, model_validator

FIXTURES_DIR = Path(__file__).parent / "fixtures"
DEFAULT_CATALOG_PATH = FIXTURES_DIR / "tier_catalog.json"
DEFAULT_SCHEMA_PATH = FIXTURES_DIR / "tier_catalog_schema.json"


class CatalogError(ValueError):
    """Tier catalog failed to load or violates a load-time invariant."""


def normalize_plan_name(name: str) -> str:
    """Trim and lower-case a vendor plan label."""
    return name.strip().lower()


class LifetimeProduct(BaseModel):
    """One-time lifetime purchase SKU"""
    product_id: str
    label: str = ""
    price: float = 0.0


class TierDescriptor(BaseModel):
    """Recurring subscription tier"""
    tier_id: str
    plan_names: List[str] = Field(default_factory=list)
    credit_allotment: int = Field(ge=0)
    monthly_price: float = 0.0

    def lookup_names(self) -> List[str]:
        """Normalized names this tier answers to (tier_id is always one)."""
        names = [normalize_plan_name(self.tier_id)]
        for name in self.plan_names:
            normalized = normalize_plan_name(name)
            if normalized not in names:
                names.append(normalized)
        return names


class TierCatalog(BaseModel):
    """Tier catalog root model"""
    catalog_version: str
    currency: str = "BRL"
    lifetime_product: Optional[LifetimeProduct] = None
    tiers: List[TierDescriptor]

    @model_validator(mode="after")
    def _check_plan_names_unique(self) -> "TierCatalog":
        tier_ids = [tier.tier_id for tier in self.tiers]
        if len(set(tier_ids)) != len(tier_ids):
            raise ValueError(f"duplicate tier_id in catalog: {tier_ids}")

        owners: dict[str, str] = {}
        for tier in self.tiers:
            for name in tier.lookup_names():
                owner = owners.setdefault(name, tier.tier_id)
                if owner != tier.tier_id:
                    raise ValueError(
                        f"plan name {name!r} maps to both {owner!r} and {tier.tier_id!r}"
                    )
        return self

    def resolve(self, plan_name: Optional[str]) -> Optional[TierDescriptor]:
        """Return the tier for a vendor plan label, or None if unrecognised."""
        if not plan_name or not plan_name.strip():
            return None
        normalized = normalize_plan_name(plan_name)
        for tier in self.tiers:
            if normalized in tier.lookup_names():
                return tier
        return None

    def get_tier(self, tier_id: str) -> Optional[TierDescriptor]:
        """Get tier configuration by its canonical id"""
        for tier in self.tiers:
            if tier.tier_id == tier_id:
                return tier
        return None

    @property
    def tier_ids(self) -> List[str]:
        return [tier.tier_id for tier in self.tiers]


def load_tier_catalog(
    path: Optional[Path] = None,
    schema_path: Optional[Path] = None,
) -> TierCatalog:
    """
    Load the tier catalog JSON and validate it against its JSON Schema

    Raises:
        CatalogError: file missing/unreadable, schema violation, or
            duplicate plan names across tiers
    """
    path = Path(path) if path else DEFAULT_CATALOG_PATH
    schema_path = Path(schema_path) if schema_path else DEFAULT_SCHEMA_PATH

    try:
        with open(schema_path, "r", encoding="utf-8") as f:
            schema = json.load(f)
        with open(path, "r", encoding="utf-8") as f:
            catalog_json = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CatalogError(f"Cannot read tier catalog {path}: {e}") from e

    try:
        validate(instance=catalog_json, schema=schema)
    except JsonSchemaValidationError as e:
        raise CatalogError(f"JSON Schema validation failed: {e.message}") from e

    try:
        return TierCatalog(**catalog_json)
    except ValidationError as e:
        raise CatalogError(f"Tier catalog invalid: {e}") from e
