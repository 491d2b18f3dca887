"""
provider_matcher.py
--------------------
Fuzzy vendor-name matching against the provider registry.

Used only for vendor names coming back from extraction, where the exact
canonical-name lookup in provider_registry.resolve_provider() fails.

Scoring, per registry entry:
    - normalized equality          -> 1.0, returned immediately
    - containment in either way    -> 0.9
    - otherwise 0.6 * token_overlap + 0.4 * (1 - levenshtein / max_len)

The best score wins; earlier registry entries win ties. Anything below the
acceptance floor is reported as no match.
"""

import re
from typing import Optional

from rapidfuzz.distance import Levenshtein

from core.models import ProviderMatch
from core.provider_registry import get_registry

CONTAINMENT_SCORE = 0.9
TOKEN_WEIGHT = 0.6
EDIT_WEIGHT = 0.4
MIN_ACCEPT_SCORE = 0.4


def normalize(text: str) -> str:
    text = re.sub(r"[^a-z0-9\s]", "", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def token_overlap(a: str, b: str) -> float:
    """
    Fraction of the shorter-token-count string's tokens that appear in (or
    contain) some token of the other string.
    """
    tokens_a = normalize(a).split(" ")
    tokens_b = normalize(b).split(" ")
    shorter, longer = (tokens_a, tokens_b) if len(tokens_a) <= len(tokens_b) else (tokens_b, tokens_a)
    if not shorter:
        return 0.0

    matches = 0
    for ts in shorter:
        for tl in longer:
            if ts == tl or tl in ts or ts in tl:
                matches += 1
                break
    return matches / len(shorter)


def levenshtein(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def fuzzy_match_provider(vendor_name: str) -> Optional[ProviderMatch]:
    """
    Finds the registry entry most similar to a free-text vendor name.

    Returns:
        ProviderMatch with its score, or None if nothing scores >= 0.4.
    """
    if not vendor_name or not vendor_name.strip():
        return None

    normalized_vendor = normalize(vendor_name)
    if not normalized_vendor:
        # Punctuation-only names would otherwise "contain" every entry.
        return None

    best_match: Optional[ProviderMatch] = None
    best_score = 0.0

    for provider_id, entry in get_registry().items():
        normalized_provider = normalize(entry.name)

        if normalized_vendor == normalized_provider:
            return _to_match(provider_id, entry, 1.0)

        if normalized_provider in normalized_vendor or normalized_vendor in normalized_provider:
            if CONTAINMENT_SCORE > best_score:
                best_score = CONTAINMENT_SCORE
                best_match = _to_match(provider_id, entry, CONTAINMENT_SCORE)
            continue

        overlap = token_overlap(vendor_name, entry.name)
        max_len = max(len(normalized_vendor), len(normalized_provider))
        distance = levenshtein(normalized_vendor, normalized_provider)
        edit_score = 1 - distance / max_len if max_len > 0 else 0.0

        combined = TOKEN_WEIGHT * overlap + EDIT_WEIGHT * edit_score
        if combined > best_score and combined >= MIN_ACCEPT_SCORE:
            best_score = combined
            best_match = _to_match(provider_id, entry, combined)

    return best_match


def _to_match(provider_id, entry, score: float) -> ProviderMatch:
    return ProviderMatch(
        provider_id=provider_id,
        provider_name=entry.name,
        category=entry.category,
        types=entry.types,
        score=round(score, 4),
    )
