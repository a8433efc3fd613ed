# look up the user's product registry before spending a classifier call
# exact key first, then phonetic-fuzzy over the user's most-logged entries
# ie: "citrus element" finds the saved "citrus lmnt"

from __future__ import annotations

import logging
import os
import re

from api.repositories.registry import find_registry_entry, list_registry_entries
from ingestion.models import REGISTRY_SOURCE_EXACT, REGISTRY_SOURCE_FUZZY, RegistryEntry
from ingestion.phonetics import canonical_token, tokenize, token_similarity

logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
# below this two different words are not treated as the same word
_TOKEN_MATCH_FLOOR = 0.85
# every query token matched and the entry adds words ("5000 iu")
_CONTAINMENT_SCORE = 0.9


def normalize_product_key(name: str | None) -> str:
    if not name:
        return ""
    value = " ".join(name.lower().split())
    value = _PUNCTUATION_RE.sub("", value)
    return " ".join(value.split())


def _fuzzy_min_score() -> float:
    return float(os.getenv("REGISTRY_FUZZY_MIN_SCORE", "0.8"))


def _fuzzy_min_times_logged() -> int:
    return int(os.getenv("REGISTRY_FUZZY_MIN_TIMES_LOGGED", "1"))


def _fuzzy_candidate_limit() -> int:
    return int(os.getenv("REGISTRY_FUZZY_CANDIDATE_LIMIT", "50"))


def _best_token_match(token: str, others: list[str]) -> float:
    best = 0.0
    for other in others:
        similarity = token_similarity(token, other)
        if similarity > best:
            best = similarity
    return best if best >= _TOKEN_MATCH_FLOOR else 0.0


def _canonical_tokens(key: str) -> list[str]:
    return [canonical_token(token) for token in tokenize(key)]


def _unmatched(tokens: list[str], others: list[str]) -> list[str]:
    return [token for token in tokens if _best_token_match(token, others) == 0]


def score_key_similarity(query_key: str, entry_key: str) -> float:
    """Score two product keys in [0, 1] over phonetically canonical tokens.

    Each token counts as matched when some token on the other side shares its
    canonical form or is a near spelling. The score is the share of matched
    tokens across both sides, raised to a fixed containment score when the
    query has at least two tokens, is no longer than the entry, and every
    query token is matched. A query longer than the entry never gets the
    containment score: its extra words describe something the entry does not.
    """
    query_tokens = _canonical_tokens(query_key)
    entry_tokens = _canonical_tokens(entry_key)
    if not query_tokens or not entry_tokens:
        return 0.0

    unmatched_query = _unmatched(query_tokens, entry_tokens)
    unmatched_entry = _unmatched(entry_tokens, query_tokens)
    matched = len(query_tokens) - len(unmatched_query) + len(entry_tokens) - len(unmatched_entry)
    overlap = matched / (len(query_tokens) + len(entry_tokens))

    if len(query_tokens) >= 2 and len(query_tokens) <= len(entry_tokens) and not unmatched_query:
        return max(overlap, _CONTAINMENT_SCORE)
    return overlap


def query_covered_by(query_key: str, entry_key: str) -> bool:
    """True when every query token is matched by some entry token."""
    query_tokens = _canonical_tokens(query_key)
    entry_tokens = _canonical_tokens(entry_key)
    return bool(query_tokens) and not _unmatched(query_tokens, entry_tokens)


def match_registry_exact(user_id: str, text: str | None) -> RegistryEntry | None:
    product_key = normalize_product_key(text)
    if not product_key:
        return None
    entry = find_registry_entry(user_id, product_key)
    if entry is None:
        return None
    entry.source = REGISTRY_SOURCE_EXACT
    entry.score = 1.0
    logger.info(
        "Registry exact match",
        extra={"product_key": product_key, "event_type": entry.event_type, "times_logged": entry.times_logged},
    )
    return entry


def match_registry_fuzzy(user_id: str, text: str | None) -> RegistryEntry | None:
    product_key = normalize_product_key(text)
    if not product_key:
        return None
    entries = list_registry_entries(
        user_id,
        min_times_logged=_fuzzy_min_times_logged(),
        limit=_fuzzy_candidate_limit(),
    )
    min_score = _fuzzy_min_score()
    best: RegistryEntry | None = None
    best_score = 0.0
    # entries arrive ordered by times_logged desc, product_key asc; strict > keeps that tie-break
    for entry in entries:
        score = score_key_similarity(product_key, entry.product_key)
        if score >= min_score and score > best_score:
            best = entry
            best_score = score
    if best is None:
        return None
    best.source = REGISTRY_SOURCE_FUZZY
    best.score = round(best_score, 4)
    best.query_covered = query_covered_by(product_key, best.product_key)
    logger.info(
        "Registry fuzzy match",
        extra={
            "query_key": product_key,
            "product_key": best.product_key,
            "score": best.score,
            "times_logged": best.times_logged,
            "query_covered": best.query_covered,
        },
    )
    return best


def match_registry(user_id: str, text: str | None) -> RegistryEntry | None:
    entry = match_registry_exact(user_id, text)
    if entry is not None:
        return entry
    return match_registry_fuzzy(user_id, text)
