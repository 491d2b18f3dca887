"""
provider_registry.py
---------------------
Static provider registry lookup layer.

Loads the provider_registry table from config.yaml into an immutable
mapping: slug -> ProviderEntry(name, category, types). Iteration order is
the order of the YAML file, which fuzzy matching relies on for tie-breaks.

Registry updates happen in config.yaml, no code changes required.
"""

import re
from functools import lru_cache
from types import MappingProxyType
from typing import Mapping, Optional

from config.config_loader import get_provider_registry
from core.models import ProviderEntry, ResolvedProvider

CUSTOM_PREFIX = "custom_"


@lru_cache(maxsize=1)
def get_registry() -> Mapping[str, ProviderEntry]:
    """Builds the read-only registry once per process."""
    entries = {
        slug: ProviderEntry(
            name=entry["name"],
            category=entry["category"],
            types=tuple(entry.get("types", [])),
        )
        for slug, entry in get_provider_registry().items()
    }
    return MappingProxyType(entries)


def slugify(name: str) -> str:
    """'Hudson's Bay' -> 'hudsons_bay'."""
    slug = name.lower().strip()
    slug = re.sub(r"['‘’]", "", slug)
    slug = re.sub(r"[^a-z0-9]+", "_", slug)
    return slug.strip("_")


def lookup_provider_id_by_name(name: str) -> Optional[str]:
    """Exact, case-sensitive match on the canonical name."""
    wanted = name.strip()
    for provider_id, entry in get_registry().items():
        if entry.name == wanted:
            return provider_id
    return None


def resolve_provider(name: str) -> ResolvedProvider:
    """
    Resolves a display name to a provider identity. Registry names win
    outright; anything else gets a synthesized custom_<slug> id.
    """
    trimmed = name.strip()
    known_id = lookup_provider_id_by_name(trimmed)
    if known_id is not None:
        return ResolvedProvider(
            provider_id=known_id,
            provider_name=get_registry()[known_id].name,
            is_custom=False,
        )
    return ResolvedProvider(
        provider_id=f"{CUSTOM_PREFIX}{slugify(trimmed)}",
        provider_name=trimmed,
        is_custom=True,
    )


def get_provider_name(provider_id: str) -> Optional[str]:
    entry = get_registry().get(provider_id)
    return entry.name if entry else None


def get_category_from_provider(provider_id: str) -> Optional[dict[str, str]]:
    """Returns {category, subcategory} for a registry slug, or None."""
    entry = get_registry().get(provider_id)
    if entry is None:
        return None
    return {
        "category": entry.category,
        "subcategory": entry.types[0] if entry.types else "",
    }
