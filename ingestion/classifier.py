# send raw text to the language model and turn its answer into a ParsedEvent
# ie: "6 units basal insulin" -> insulin {value: 6, units: "units", insulin_type: "basal"}

from __future__ import annotations

import json
import logging
import os
import re
import time
from collections import Counter
from typing import Any
from urllib import error, request

from pydantic import ValidationError

from ingestion.errors import ClassificationApiFailure, ClassificationParseFailure
from ingestion.models import ParsedEvent
from ingestion.normalize_event import (
    EVENT_TYPES,
    PRODUCT_EVENT_TYPES,
    ClassifierResponse,
    item_name_field,
    validate_event_data,
)
from ingestion.phonetics import canonical_token, tokenize

logger = logging.getLogger(__name__)

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_RAW_LOG_LIMIT = 2000
_FREQUENT_ITEM_LIMIT = 20

# brands whose products always belong to one event type, keyed by canonical token
# ie: the model files "LMNT citrus" as food, it is an electrolyte supplement
BRAND_EVENT_TYPES: dict[str, tuple[str, str]] = {
    "lmnt": ("LMNT", "supplement"),
    "nuun": ("Nuun", "supplement"),
    "thorne": ("Thorne", "supplement"),
    "jarrow": ("Jarrow", "supplement"),
    "momentous": ("Momentous", "supplement"),
    "magtein": ("Magtein", "supplement"),
    "advil": ("Advil", "medication"),
    "tylenol": ("Tylenol", "medication"),
    "motrin": ("Motrin", "medication"),
    "aleve": ("Aleve", "medication"),
    "zyrtec": ("Zyrtec", "medication"),
    "claritin": ("Claritin", "medication"),
    "benadryl": ("Benadryl", "medication"),
    "nyquil": ("NyQuil", "medication"),
    "dayquil": ("DayQuil", "medication"),
}


def model_name() -> str:
    return os.getenv("OPENAI_TEXT_PARSE_MODEL", "gpt-4o-mini")


def frequent_items_from_history(history: list[dict[str, Any]]) -> list[tuple[str, int]]:
    """Count item names across recent voice events, most logged first."""
    counts: Counter[str] = Counter()
    for event in history:
        event_type = event.get("event_type")
        if event_type not in PRODUCT_EVENT_TYPES:
            continue
        data = event.get("event_data") or {}
        value = data.get(item_name_field(event_type))
        if isinstance(value, str) and value.strip():
            counts[value.strip().lower()] += 1
    return counts.most_common(_FREQUENT_ITEM_LIMIT)


def _system_prompt(frequent_items: list[tuple[str, int]] | None) -> str:
    schemas = {
        event_type: {
            "required": list(schema["required"]),
            "optional": [
                name for name in schema["model"].model_fields if name not in schema["required"]
            ],
        }
        for event_type, schema in EVENT_TYPES.items()
    }
    prompt = (
        "You are a health event parser. Extract one structured health event from the user's text. "
        "Return only a JSON object with fields: "
        f"event_type (one of {sorted(EVENT_TYPES)}), "
        "event_data (object with the fields for that event type), "
        "event_time (ISO 8601 timestamp with offset; use the current time if none is given), "
        "confidence (integer 0-100; 100 = certain, 50 = moderate, 0 = guessing).\n"
        f"Event type fields:\n{json.dumps(schemas, indent=2)}\n"
        "Rules: use mg/dL for glucose and units for insulin unless stated otherwise. "
        "Time ranges like '2-2:25pm' start at the first time and give duration in minutes. "
        "Echo brand and product names the way the user said them."
    )
    if frequent_items:
        lines = "\n".join(f'- "{item}" (logged {count}x)' for item, count in frequent_items)
        prompt += (
            f"\nThe user frequently logs these items:\n{lines}\n"
            "Prefer these when the input plausibly refers to one of them."
        )
    return prompt


def _request_completion(raw_text: str, api_key: str, frequent_items: list[tuple[str, int]] | None) -> str:
    base_url = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1").rstrip("/")
    timeout = float(os.getenv("OPENAI_TEXT_PARSE_TIMEOUT_SECONDS", "15"))
    payload = {
        "model": model_name(),
        "temperature": 0,
        "max_tokens": 600,
        "messages": [
            {"role": "system", "content": _system_prompt(frequent_items)},
            {"role": "user", "content": raw_text},
        ],
        "response_format": {"type": "json_object"},
    }
    req = request.Request(
        f"{base_url}/chat/completions",
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        },
    )
    started = time.monotonic()
    try:
        with request.urlopen(req, timeout=timeout) as response:
            body = response.read().decode("utf-8")
            status = getattr(response, "status", 200)
    except error.HTTPError as exc:
        logger.error(
            "Classifier API returned error status",
            extra={"status": exc.code, "model": payload["model"]},
        )
        raise ClassificationApiFailure(f"classifier API error status {exc.code}", status=exc.code) from exc
    except (error.URLError, TimeoutError, OSError) as exc:
        logger.error("Classifier API request failed", extra={"model": payload["model"], "error": str(exc)})
        raise ClassificationApiFailure("classifier API unreachable") from exc
    logger.info(
        "Classifier API call",
        extra={
            "model": payload["model"],
            "status": status,
            "duration_ms": int((time.monotonic() - started) * 1000),
            "input_length": len(raw_text),
        },
    )
    try:
        envelope = json.loads(body)
        content = envelope["choices"][0]["message"]["content"]
    except (json.JSONDecodeError, KeyError, IndexError, TypeError) as exc:
        raise ClassificationApiFailure("classifier API returned an unexpected envelope", status=status) from exc
    if not isinstance(content, str):
        raise ClassificationApiFailure("classifier API returned no message content", status=status)
    return content


def extract_json_object(content: str) -> dict[str, Any]:
    # models sometimes wrap the object in prose or a markdown fence
    match = _JSON_OBJECT_RE.search(content or "")
    if match is None:
        raise ClassificationParseFailure("no JSON object in classifier response", raw_response=content)
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise ClassificationParseFailure(f"invalid JSON in classifier response: {exc.msg}", raw_response=content) from exc
    if not isinstance(data, dict):
        raise ClassificationParseFailure("classifier response is not an object", raw_response=content)
    return data


def reclassify_by_brand(event_type: str, event_data: dict[str, Any]) -> tuple[str, dict[str, Any], str | None]:
    """Correct a product event whose item carries a brand of another event type.

    Returns (event_type, event_data, corrected_from); corrected_from is None
    when nothing changed.
    """
    if event_type not in PRODUCT_EVENT_TYPES:
        return event_type, event_data, None
    item = event_data.get(item_name_field(event_type)) or event_data.get("name") or event_data.get("description")
    if not isinstance(item, str):
        return event_type, event_data, None
    for token in tokenize(item):
        brand = BRAND_EVENT_TYPES.get(canonical_token(token))
        if brand is None:
            continue
        display, brand_event_type = brand
        if brand_event_type == event_type:
            return event_type, event_data, None
        corrected = dict(event_data)
        source_field = item_name_field(event_type)
        target_field = item_name_field(brand_event_type)
        if source_field != target_field and source_field in corrected and not corrected.get(target_field):
            corrected[target_field] = corrected.pop(source_field)
        corrected.setdefault("brand", display)
        logger.info(
            "Reclassified event by brand",
            extra={"from_event_type": event_type, "to_event_type": brand_event_type, "brand": display},
        )
        return brand_event_type, corrected, event_type
    return event_type, event_data, None


def parse_classifier_content(content: str) -> ParsedEvent:
    try:
        data = extract_json_object(content)
        try:
            response = ClassifierResponse.model_validate(data)
        except ValidationError as exc:
            raise ClassificationParseFailure(
                f"classifier response failed validation: {exc.errors()}", raw_response=content
            ) from exc
        event_data, _ = validate_event_data(response.event_type, response.event_data)
        event_type, event_data, corrected_from = reclassify_by_brand(response.event_type, event_data)
        event_data, missing = validate_event_data(event_type, event_data)
    except ClassificationParseFailure as exc:
        raw = exc.raw_response if exc.raw_response is not None else content
        logger.error(
            "Classifier response could not be parsed",
            extra={"reason": str(exc), "raw_response": (raw or "")[:_RAW_LOG_LIMIT]},
        )
        if exc.raw_response is None:
            raise ClassificationParseFailure(str(exc), raw_response=content) from exc
        raise
    return ParsedEvent(
        event_type=event_type,
        event_data=event_data,
        event_time=response.event_time,
        confidence=response.confidence,
        complete=not missing,
        missing_fields=missing,
        corrected_from=corrected_from,
    )


def classify(
    raw_text: str,
    api_key: str | None,
    *,
    frequent_items: list[tuple[str, int]] | None = None,
) -> ParsedEvent:
    if not api_key:
        raise ClassificationApiFailure("classifier API key is not configured")
    content = _request_completion(raw_text, api_key, frequent_items)
    parsed = parse_classifier_content(content)
    logger.info(
        "Classified text input",
        extra={
            "event_type": parsed.event_type,
            "confidence": parsed.confidence,
            "complete": parsed.complete,
            "missing_fields": parsed.missing_fields,
        },
    )
    return parsed
