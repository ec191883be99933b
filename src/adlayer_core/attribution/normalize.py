"""Name normalization and fuzzy scoring for attribution lookups."""
import re
from typing import Iterable, Optional
from urllib.parse import unquote_plus


_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_WHITESPACE = re.compile(r"\s+")

FUZZY_THRESHOLD = 0.86


def normalize_name(value: Optional[str]) -> str:
    """Normalize a campaign/ad-set/ad name for lookup.

    Trims, percent-decodes ('+' becomes a space), lower-cases, collapses
    every run of non-alphanumerics into one space.

    Examples:
        >>> normalize_name("  Spring%20Sale+2024 -- US ")
        'spring sale 2024 us'
    """
    if not value:
        return ""
    text = str(value).strip()
    try:
        text = unquote_plus(text, errors="strict")
    except UnicodeDecodeError:
        text = text.replace("+", " ")
    text = _NON_ALNUM.sub(" ", text.lower()).strip()
    return _WHITESPACE.sub(" ", text)


def compound_key(scope_id: str, name: str) -> str:
    return f"{scope_id}|{name}"


def score_match(needle: str, candidate: str) -> float:
    """Similarity of two normalized names in [0, 1].

    Exact match scores 1. Containment scores 0.90 to 0.99 by length ratio.
    Otherwise token overlap, with a small bonus for a shared first token,
    capped below the containment band.
    """
    if not needle or not candidate:
        return 0.0
    if needle == candidate:
        return 1.0
    if needle in candidate or candidate in needle:
        shorter, longer = sorted((len(needle), len(candidate)))
        return 0.9 + (shorter / longer) * 0.09

    a_tokens = needle.split(" ")
    b_tokens = candidate.split(" ")
    common = len(set(a_tokens) & set(b_tokens))
    if not common:
        return 0.0
    score = common / max(len(a_tokens), len(b_tokens))
    if a_tokens[0] == b_tokens[0]:
        score += 0.05
    return min(score, 0.89)


def best_fuzzy_match(
    needle: str,
    table: dict[str, str],
    excluded: Iterable[str] = (),
    threshold: float = FUZZY_THRESHOLD,
) -> Optional[str]:
    """Return the ID of the single best candidate above threshold.

    Names in ``excluded`` never match. A tie between distinct IDs at the
    best score yields None.
    """
    if not needle:
        return None
    excluded = set(excluded)
    if needle in excluded:
        return None

    best_score = 0.0
    best_ids: set[str] = set()
    for name, entity_id in table.items():
        score = score_match(needle, name)
        if score < threshold:
            continue
        if score > best_score:
            best_score = score
            best_ids = {entity_id}
        elif score == best_score:
            best_ids.add(entity_id)

    if len(best_ids) != 1:
        return None
    return next(iter(best_ids))
