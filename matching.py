"""
Ingredient name matching.
Edit distance, fuzzy suggestions for unknown ingredients, and catalog autocomplete.
"""

from typing import Iterable, List, Optional

MAX_SUGGESTIONS = 5
MAX_AUTOCOMPLETE = 8

EXACT_SCORE = 100
PREFIX_SCORE = 90
CONTAINS_SCORE = 80
CONTAINED_SCORE = 70
FUZZY_BASE_SCORE = 60
FUZZY_MAX_DISTANCE = 2
FUZZY_MIN_LENGTH = 3


def normalize_ingredient(name: str) -> str:
    """Lower-case and trim an ingredient name."""
    if not name:
        return ""
    return str(name).strip().lower()


def edit_distance(a: str, b: str) -> int:
    """
    Levenshtein distance between two strings.

    Args:
        a: Source string
        b: Target string

    Returns:
        Minimum number of single-character insertions, deletions and
        substitutions turning a into b
    """
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            if char_a == char_b:
                current.append(previous[j - 1])
            else:
                current.append(min(
                    previous[j - 1] + 1,  # substitution
                    current[j - 1] + 1,   # insertion
                    previous[j] + 1,      # deletion
                ))
        previous = current
    return previous[-1]


def score_ingredient(term: str, candidate: str) -> int:
    """
    Score how well a catalog ingredient matches a search term.

    The first rule that applies wins: exact (100), candidate starts with
    term (90), candidate contains term (80), term contains candidate (70),
    then a close spelling (60 - 10 per edit, at most 2 edits, both strings
    longer than 3 characters). Anything else scores 0.

    Args:
        term: Search term
        candidate: Catalog ingredient name

    Returns:
        Score between 0 and 100
    """
    term = normalize_ingredient(term)
    candidate = normalize_ingredient(candidate)
    if not term or not candidate:
        return 0

    if candidate == term:
        return EXACT_SCORE
    if candidate.startswith(term):
        return PREFIX_SCORE
    if term in candidate:
        return CONTAINS_SCORE
    if candidate in term:
        return CONTAINED_SCORE

    if min(len(term), len(candidate)) > FUZZY_MIN_LENGTH:
        distance = edit_distance(term, candidate)
        if distance <= FUZZY_MAX_DISTANCE:
            return FUZZY_BASE_SCORE - distance * 10
    return 0


def find_similar_ingredients(
    term: str,
    catalog: Iterable[str],
    limit: int = MAX_SUGGESTIONS
) -> List[str]:
    """
    Rank catalog ingredients that look like the given term.

    Args:
        term: Ingredient the user typed
        catalog: Known ingredient names, in source order
        limit: Maximum number of suggestions

    Returns:
        Up to `limit` catalog names, best first. Ties keep catalog order.
    """
    scored = []
    for candidate in catalog:
        score = score_ingredient(term, candidate)
        if score > 0:
            scored.append((score, candidate))

    # sorted() is stable, so equal scores stay in catalog order
    scored = sorted(scored, key=lambda pair: -pair[0])
    return [candidate for _, candidate in scored[:limit]]


def autocomplete_ingredients(
    query: str,
    catalog: Iterable[str],
    exclude: Optional[Iterable[str]] = None,
    limit: int = MAX_AUTOCOMPLETE
) -> List[str]:
    """Catalog names containing the query, exact match first, then prefixes, then alphabetical."""
    query = normalize_ingredient(query)
    if not query:
        return []

    excluded = {normalize_ingredient(name) for name in (exclude or [])}
    matches = [
        name for name in catalog
        if query in name.lower() and name.lower() not in excluded
    ]

    def sort_key(name: str):
        lowered = name.lower()
        return (lowered != query, not lowered.startswith(query), lowered)

    return sorted(matches, key=sort_key)[:limit]
