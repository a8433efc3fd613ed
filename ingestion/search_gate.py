# decide whether a classified event needs an external product lookup
# food always searches; supplements/medications skip only when confident, branded and echoed verbatim

from __future__ import annotations

import logging
from typing import Any

from ingestion.normalize_event import item_name_field
from ingestion.phonetics import detect_phonetic_transformation, tokenize

logger = logging.getLogger(__name__)

# strictly greater than this is trusted
CONFIDENCE_THRESHOLD = 83

# lowercase; matched as whole words of the item name, description or brand
KNOWN_BRANDS: tuple[str, ...] = (
    "lmnt",
    "now",
    "thorne",
    "jarrow",
    "nuun",
    "momentous",
    "magtein",
    "garden of life",
    "nature made",
    "nordic naturals",
    "pure encapsulations",
    "life extension",
    "doctor's best",
    "optimum nutrition",
    "liquid i.v.",
    "kirkland",
    "advil",
    "tylenol",
    "motrin",
    "aleve",
    "zyrtec",
    "claritin",
    "benadryl",
    "nyquil",
    "dayquil",
)

SEARCHABLE_EVENT_TYPES = frozenset({"supplement", "medication"})


def _contains_phrase(tokens: list[str], phrase: list[str]) -> bool:
    size = len(phrase)
    return any(tokens[index : index + size] == phrase for index in range(len(tokens) - size + 1))


def detect_brand(event_data: dict[str, Any] | None) -> str | None:
    if not event_data:
        return None
    tokens = tokenize(
        " ".join(str(event_data[field]) for field in ("name", "description", "brand") if event_data.get(field))
    )
    if not tokens:
        return None
    # whole words only: "now" must not fire on "snow" or "unknown"
    for brand in KNOWN_BRANDS:
        if _contains_phrase(tokens, tokenize(brand)):
            return brand
    return None


def _decide(event_type: str, reason: str, result: bool, **context: Any) -> bool:
    logger.info(
        "Product search decision",
        extra={"event_type": event_type, "should_search": result, "reason": reason, **context},
    )
    return result


def should_search_products(
    event_type: str,
    event_data: dict[str, Any] | None,
    confidence: int | float | None,
    user_input_text: str | None = None,
    model_output_text: str | None = None,
) -> bool:
    if event_type == "food":
        return _decide(event_type, "food_always_searched", True)
    if event_type not in SEARCHABLE_EVENT_TYPES:
        return _decide(event_type, "event_type_not_searchable", False)

    item = (event_data or {}).get(item_name_field(event_type)) or (event_data or {}).get("description")
    if not event_data or not item:
        return _decide(event_type, "missing_description", True)
    if confidence is None or confidence <= CONFIDENCE_THRESHOLD:
        return _decide(event_type, "low_confidence", True, confidence=confidence)
    brand = detect_brand(event_data)
    if brand is None:
        return _decide(event_type, "no_brand_detected", True, confidence=confidence)
    if detect_phonetic_transformation(user_input_text, model_output_text):
        return _decide(event_type, "phonetic_transformation", True, confidence=confidence, brand=brand)
    return _decide(event_type, "trusted_brand_high_confidence", False, confidence=confidence, brand=brand)
