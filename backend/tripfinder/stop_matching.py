"""Fuzzy stop-name matching for name-based route lookups."""

import re
from typing import Optional

import pandas as pd

# Stop-type words that users add or omit freely ("ul. Basztowa" vs "Basztowa")
GENERIC_TOKENS = frozenset({
    # Polish
    "ul", "al", "pl", "os", "plac", "rondo", "dworzec", "przystanek", "stacja",
    "pkp", "nż", "nz",
    # English
    "station", "stn", "square", "sq", "street", "st", "avenue", "ave", "road", "rd",
})

_WORD_RE = re.compile(r"\w+", re.UNICODE)

EXACT = 1
WITHOUT_GENERIC_TOKENS = 2
ALL_WORDS = 3
SUBSTRING = 4


def words(name: str) -> list[str]:
    return _WORD_RE.findall(name.lower())


def strip_generic_tokens(name: str) -> str:
    return " ".join(w for w in words(name) if w not in GENERIC_TOKENS)


def match_rule(candidate: str, term: str) -> Optional[int]:
    """Return the number of the first rule under which candidate matches term."""
    candidate_norm = candidate.strip().lower()
    term_norm = term.strip().lower()
    if not candidate_norm or not term_norm:
        return None

    if candidate_norm == term_norm:
        return EXACT

    stripped_term = strip_generic_tokens(term_norm)
    if stripped_term and stripped_term == strip_generic_tokens(candidate_norm):
        return WITHOUT_GENERIC_TOKENS

    significant = [w for w in words(term_norm) if len(w) > 2]
    if significant:
        candidate_words = words(candidate_norm)
        if all(
            any(w in cw or (len(cw) > 2 and cw in w) for cw in candidate_words)
            for w in significant
        ):
            return ALL_WORDS

    if len(term_norm) > 4 and term_norm in candidate_norm:
        return SUBSTRING

    return None


def match_stop_ids(stops: pd.DataFrame, term: str) -> set[str]:
    """Ids of every stop whose name matches term under any rule."""
    if stops.empty or not {"stop_id", "stop_name"} <= set(stops.columns):
        return set()

    ids_by_name: dict[str, list[str]] = {}
    for stop_id, stop_name in zip(stops["stop_id"], stops["stop_name"]):
        ids_by_name.setdefault(stop_name, []).append(stop_id)

    matched: set[str] = set()
    for stop_name, ids in ids_by_name.items():
        if match_rule(stop_name, term) is not None:
            matched.update(ids)
    return matched
