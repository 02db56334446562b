"""
Tier Catalog - static table of subscription tiers.

Provides:
- TierDefinition: immutable entitlement set, limits and display metadata
- TierCatalog: lookup, price ordering and upgrade suggestions
- load_tier_catalog: parse a JSON or YAML catalog file
- get_tier_catalog: process-wide catalog loaded once at first use

The catalog file is the single source of truth for which tier includes
which feature. Do NOT hardcode tier membership elsewhere.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import yaml

from tenant_access.entitlements.errors import CatalogError
from tenant_access.entitlements.models import DIRECTORY_ONLY_TIER

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "config" / "tiers.json"

LIMIT_KEYS = ("max_skus", "max_locations")


@dataclass(frozen=True)
class TierDefinition:
    """Entitlements and limits of a single tier. None limits are unlimited."""

    tier_id: str
    display_name: str
    price_cents: int
    features: FrozenSet[str]
    max_skus: Optional[int] = None
    max_locations: Optional[int] = None

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def get_limit(self, limit_key: str) -> Optional[int]:
        if limit_key not in LIMIT_KEYS:
            raise KeyError(f"Unknown limit: {limit_key}")
        return getattr(self, limit_key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier_id": self.tier_id,
            "display_name": self.display_name,
            "price_cents": self.price_cents,
            "features": sorted(self.features),
            "max_skus": self.max_skus,
            "max_locations": self.max_locations,
        }


class TierCatalog:
    """
    Immutable set of tiers with a documented default.

    Unknown tier ids resolve to the default tier (the lowest paid tier)
    instead of failing, so a corrupted tier field never hard-denies a tenant.
    """

    def __init__(
        self,
        tiers: Iterable[TierDefinition],
        default_tier: str,
        degraded_tier: str = DIRECTORY_ONLY_TIER,
        version: str = "",
    ):
        tiers = list(tiers)
        self._tiers: Dict[str, TierDefinition] = {t.tier_id: t for t in tiers}
        if len(self._tiers) != len(tiers):
            raise ValueError("Duplicate tier ids in catalog")
        if default_tier not in self._tiers:
            raise ValueError(f"Default tier {default_tier!r} is not in the catalog")

        # sorted() is stable, so equal prices keep their configured order
        self._ordered: Tuple[TierDefinition, ...] = tuple(
            sorted(tiers, key=lambda t: t.price_cents)
        )
        self._default_tier = default_tier
        self._degraded_tier = degraded_tier
        self._version = version

    @property
    def version(self) -> str:
        return self._version

    @property
    def default_tier(self) -> TierDefinition:
        return self._tiers[self._default_tier]

    @property
    def degraded_tier_id(self) -> str:
        return self._degraded_tier

    def __contains__(self, tier_id: str) -> bool:
        return tier_id in self._tiers

    def lookup(self, tier_id: Optional[str]) -> TierDefinition:
        """Get a tier by id, falling back to the default tier."""
        tier = self._tiers.get((tier_id or "").strip().lower())
        if tier is not None:
            return tier

        logger.warning(
            "Unknown tier id, using default tier",
            extra={"tier_id": tier_id, "default_tier": self._default_tier},
        )
        return self.default_tier

    def tiers_ordered_by_price(self) -> Tuple[TierDefinition, ...]:
        return self._ordered

    def minimal_tier_with_feature(self, feature: str) -> Optional[TierDefinition]:
        """
        Cheapest tier that includes the feature.

        None means no tier includes it: the feature is not purchasable,
        which is not an error.
        """
        for tier in self._ordered:
            if feature in tier.features:
                return tier
        return None

    def is_limit_reached(self, tier_id: Optional[str], limit_key: str, usage: int) -> bool:
        """Check usage against a tier limit. Unlimited tiers never reach it."""
        limit = self.lookup(tier_id).get_limit(limit_key)
        if limit is None:
            return False
        return usage >= limit

    def minimal_tier_with_capacity(self, limit_key: str, usage: int) -> Optional[TierDefinition]:
        """Cheapest tier whose limit leaves room to grow past ``usage``."""
        for tier in self._ordered:
            limit = tier.get_limit(limit_key)
            if limit is None or usage < limit:
                return tier
        return None

    def upgrade_cost_cents(self, current_tier: Optional[str], target_tier: str) -> int:
        """Monthly price difference between two tiers (never negative)."""
        current = self.lookup(current_tier)
        target = self.lookup(target_tier)
        return max(0, target.price_cents - current.price_cents)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self._version,
            "default_tier": self._default_tier,
            "degraded_tier": self._degraded_tier,
            "tiers": [t.to_dict() for t in self._ordered],
        }


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _flatten_features(
    tier_id: str,
    raw_tiers: Mapping[str, Mapping[str, Any]],
    resolving: Tuple[str, ...] = (),
) -> FrozenSet[str]:
    """Collect a tier's own features plus everything it inherits."""
    if tier_id in resolving:
        raise ValueError(f"Inheritance cycle: {' -> '.join(resolving + (tier_id,))}")
    if tier_id not in raw_tiers:
        raise ValueError(f"Tier {resolving[-1]!r} inherits unknown tier {tier_id!r}")

    raw = raw_tiers[tier_id]
    features = set(raw.get("features", []))
    for parent in raw.get("inherits", []):
        features |= _flatten_features(parent, raw_tiers, resolving + (tier_id,))
    return frozenset(features)


def _parse_limit(value: Any) -> Optional[int]:
    # null and -1 both mean unlimited
    if value is None:
        return None
    value = int(value)
    return None if value < 0 else value


def build_tier_catalog(config: Mapping[str, Any]) -> TierCatalog:
    """Build a TierCatalog from a parsed config mapping."""
    tiers_data: List[Mapping[str, Any]] = config.get("tiers", [])
    raw_tiers = {t["id"]: t for t in tiers_data}

    tiers = []
    for tier_data in tiers_data:
        tier_id = tier_data["id"]
        limits = tier_data.get("limits", {})
        tiers.append(TierDefinition(
            tier_id=tier_id,
            display_name=tier_data.get("display_name", tier_id),
            price_cents=int(tier_data.get("price_cents", 0)),
            features=_flatten_features(tier_id, raw_tiers),
            max_skus=_parse_limit(limits.get("max_skus")),
            max_locations=_parse_limit(limits.get("max_locations")),
        ))

    return TierCatalog(
        tiers,
        default_tier=config.get("default_tier", "starter"),
        degraded_tier=config.get("degraded_tier", DIRECTORY_ONLY_TIER),
        version=str(config.get("version", "")),
    )


def load_tier_catalog(path: Optional[str] = None) -> TierCatalog:
    """
    Load a catalog file. YAML is used for .yml/.yaml files, JSON otherwise.

    Raises CatalogError if the file is missing or invalid.
    """
    config_path = Path(path or os.getenv("TIER_CATALOG_PATH") or DEFAULT_CATALOG_PATH)
    logger.info("Loading tier catalog from %s", config_path)

    try:
        with open(config_path, "r") as f:
            if config_path.suffix in (".yml", ".yaml"):
                raw = yaml.safe_load(f) or {}
            else:
                raw = json.load(f)
        catalog = build_tier_catalog(raw)
    except (OSError, ValueError, KeyError, TypeError, yaml.YAMLError) as e:
        raise CatalogError(str(config_path), str(e)) from e

    logger.info(
        "Loaded %d tiers (version=%s)",
        len(catalog.tiers_ordered_by_price()),
        catalog.version,
    )
    return catalog


# Module-level singleton
_catalog_instance: Optional[TierCatalog] = None
_catalog_lock = Lock()


def get_tier_catalog() -> TierCatalog:
    """Get the process-wide TierCatalog, loading it on first use."""
    global _catalog_instance
    if _catalog_instance is None:
        with _catalog_lock:
            if _catalog_instance is None:
                _catalog_instance = load_tier_catalog()
    return _catalog_instance


def reset_tier_catalog() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    global _catalog_instance
    _catalog_instance = None
