# turn one raw text input into a persisted voice event or a confirmation request
# ie: "citrus element" -> registry hit on "citrus lmnt" -> supplement saved without a model call
# every input leaves exactly one audit row behind

from __future__ import annotations

import logging
import os
from typing import Any
from uuid import UUID

from api.helpers.identity import validate_user_id
from api.repositories.audit import (
    create_audit_record,
    get_audit_record,
    update_audit_classification,
    update_audit_status,
)
from api.repositories.events import create_voice_event, list_voice_events
from api.repositories.registry import increment_registry_usage, upsert_registry_entry
from ingestion.classifier import classify, frequent_items_from_history, model_name
from ingestion.errors import (
    AuditRecordNotFound,
    AuditStateConflict,
    ClassificationApiFailure,
    ClassificationParseFailure,
    IngestionError,
)
from ingestion.models import (
    AUDIT_STATUS_AWAITING,
    AUDIT_STATUS_AWAITING_SUCCESS,
    AUDIT_STATUS_FAILED,
    AUDIT_STATUS_SUCCESS,
    CAPTURE_METHODS,
    SOURCE_CLASSIFIER,
    SOURCE_USER_REGISTRY,
    ParsedEvent,
    PipelineResult,
    RegistryEntry,
)
from ingestion.normalize_event import (
    PRODUCT_EVENT_TYPES,
    item_name_field,
    item_text,
    validate_event_data,
)
from ingestion.product_search import resolve_products
from ingestion.registry_match import match_registry, normalize_product_key
from ingestion.search_gate import should_search_products
from ingestion.time_utils import now_iso, parse_event_time

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


def _event_data_from_registry(entry: RegistryEntry) -> dict[str, Any]:
    data: dict[str, Any] = {item_name_field(entry.event_type): entry.product_name}
    if entry.brand and entry.event_type in PRODUCT_EVENT_TYPES:
        data["brand"] = entry.brand
    return data


def _remap_to_event_type(event_data: dict[str, Any], from_type: str, to_type: str) -> dict[str, Any]:
    data = dict(event_data)
    source_field = item_name_field(from_type)
    target_field = item_name_field(to_type)
    if source_field != target_field and source_field in data and not data.get(target_field):
        data[target_field] = data.pop(source_field)
    return data


def _registry_metadata(entry: RegistryEntry) -> dict[str, Any]:
    return {
        "source": entry.source,
        "product_key": entry.product_key,
        "score": entry.score,
        "times_logged": entry.times_logged,
    }


def _is_uuid(value: object) -> bool:
    if not isinstance(value, str):
        return False
    try:
        UUID(value)
    except ValueError:
        return False
    return True


def _mark_failed(audit_id: str, user_id: str) -> None:
    try:
        update_audit_status(audit_id, AUDIT_STATUS_FAILED, user_id)
    except Exception:
        # keep the original failure as the one the caller sees
        logger.exception("Failed to mark audit record failed", extra={"audit_id": audit_id})


def _persist_and_finish(
    user_id: str,
    audit_id: str,
    parsed: ParsedEvent,
    capture_method: str,
    status: str,
) -> dict[str, Any]:
    event = create_voice_event(
        user_id,
        parsed.event_type,
        parsed.event_data,
        parsed.event_time,
        audit_id,
        capture_method,
    )
    update_audit_status(audit_id, status, user_id)
    logger.info(
        "Voice event persisted",
        extra={"audit_id": audit_id, "event_id": event.get("id"), "event_type": parsed.event_type, "status": status},
    )
    return event


def _resolve_from_registry(
    user_id: str,
    audit_id: str,
    entry: RegistryEntry,
    capture_method: str,
    metadata: dict[str, Any],
) -> PipelineResult:
    parsed = ParsedEvent(
        event_type=entry.event_type,
        event_data=_event_data_from_registry(entry),
        event_time=now_iso(),
        confidence=100,
    )
    update_audit_classification(
        audit_id,
        user_id,
        record_type=entry.event_type,
        nlp_metadata={**metadata, "registry_match": _registry_metadata(entry), "parsed_at": now_iso()},
    )
    event = _persist_and_finish(user_id, audit_id, parsed, capture_method, AUDIT_STATUS_SUCCESS)
    increment_registry_usage(user_id, entry.product_key)
    return PipelineResult(
        success=True,
        complete=True,
        source=SOURCE_USER_REGISTRY,
        audit_id=audit_id,
        parsed=parsed,
        event=event,
        product_options=None,
        confidence=parsed.confidence,
        should_search=False,
    )


def process_text_input(
    user_id: object,
    raw_text: str,
    api_key: str | None = None,
    capture_method: str = "manual",
    transcription_metadata: dict[str, Any] | None = None,
) -> PipelineResult:
    acting_user_id = validate_user_id(user_id, "processing text input")
    if not isinstance(raw_text, str) or not raw_text.strip():
        raise ValueError("raw_text is required")
    if capture_method not in CAPTURE_METHODS:
        raise ValueError(f"unknown capture method: {capture_method}")
    raw_text = raw_text.strip()

    history = list_voice_events(acting_user_id, limit=HISTORY_LIMIT)
    metadata: dict[str, Any] = {
        "capture_method": capture_method,
        "user_history_count": len(history),
        "model": model_name(),
    }
    if transcription_metadata:
        metadata["transcription"] = transcription_metadata
    audit = create_audit_record(acting_user_id, raw_text, None, None, None, model_name(), metadata)
    audit_id = audit["id"]
    logger.info(
        "Text input received",
        extra={"audit_id": audit_id, "input_length": len(raw_text), "capture_method": capture_method},
    )

    try:
        # a registry hit covering every word of the input is authoritative; nothing below may overwrite it
        entry = match_registry(acting_user_id, raw_text)
        if entry is not None and entry.query_covered:
            return _resolve_from_registry(acting_user_id, audit_id, entry, capture_method, metadata)
        if entry is not None:
            # words outside the entry (time, dose, other items) still need the classifier
            logger.info(
                "Partial registry match on raw text, classifying",
                extra={"audit_id": audit_id, "product_key": entry.product_key, "score": entry.score},
            )

        try:
            parsed = classify(
                raw_text,
                api_key or os.getenv("OPENAI_API_KEY"),
                frequent_items=frequent_items_from_history(history),
            )
        except (ClassificationApiFailure, ClassificationParseFailure):
            _mark_failed(audit_id, acting_user_id)
            raise

        item = item_text(parsed.event_type, parsed.event_data)
        source = SOURCE_CLASSIFIER
        registry_entry = None
        if parsed.event_type in PRODUCT_EVENT_TYPES and item and normalize_product_key(item) != normalize_product_key(raw_text):
            registry_entry = match_registry(acting_user_id, item)
        if registry_entry is not None:
            if registry_entry.event_type != parsed.event_type:
                parsed.event_data = _remap_to_event_type(
                    parsed.event_data, parsed.event_type, registry_entry.event_type
                )
                parsed.corrected_from = parsed.corrected_from or parsed.event_type
                parsed.event_type = registry_entry.event_type
            if registry_entry.brand and not parsed.event_data.get("brand"):
                parsed.event_data["brand"] = registry_entry.brand
            parsed.event_data, _ = validate_event_data(parsed.event_type, parsed.event_data)
            # the user confirmed this product before; its remaining fields are not asked again
            parsed.complete = True
            parsed.missing_fields = []
            source = SOURCE_USER_REGISTRY

        audit_metadata = {
            **metadata,
            "confidence": parsed.confidence,
            "parsed_at": now_iso(),
        }
        if parsed.corrected_from:
            audit_metadata["corrected_from"] = parsed.corrected_from
        if registry_entry is not None:
            audit_metadata["registry_match"] = _registry_metadata(registry_entry)
        update_audit_classification(
            audit_id,
            acting_user_id,
            record_type=parsed.event_type,
            value=parsed.event_data.get("value"),
            units=parsed.event_data.get("units"),
            nlp_metadata=audit_metadata,
        )

        product_options = None
        should_search = False
        # closed-vocabulary types never reach the gate
        if registry_entry is None and parsed.event_type in PRODUCT_EVENT_TYPES:
            should_search = should_search_products(
                parsed.event_type,
                parsed.event_data,
                parsed.confidence,
                raw_text,
                item,
            )
            if should_search:
                product_options = resolve_products(item or raw_text, parsed.event_type)

        # an empty search result saves directly; only real candidates warrant a confirmation screen
        needs_confirmation = not parsed.complete or bool(product_options)
        if not needs_confirmation:
            event = _persist_and_finish(acting_user_id, audit_id, parsed, capture_method, AUDIT_STATUS_SUCCESS)
            if registry_entry is not None:
                increment_registry_usage(acting_user_id, registry_entry.product_key)
            return PipelineResult(
                success=True,
                complete=True,
                source=source,
                audit_id=audit_id,
                parsed=parsed,
                event=event,
                product_options=product_options,
                confidence=parsed.confidence,
                should_search=should_search,
            )

        update_audit_status(audit_id, AUDIT_STATUS_AWAITING, acting_user_id)
        logger.info(
            "Awaiting user confirmation",
            extra={
                "audit_id": audit_id,
                "event_type": parsed.event_type,
                "missing_fields": parsed.missing_fields,
                "product_options_count": len(product_options or []),
            },
        )
        return PipelineResult(
            success=True,
            complete=False,
            source=source,
            audit_id=audit_id,
            parsed=parsed,
            product_options=product_options,
            missing_fields=list(parsed.missing_fields),
            confidence=parsed.confidence,
            should_search=should_search,
        )
    except Exception as exc:
        logger.exception("Text input processing failed", extra={"audit_id": audit_id})
        if isinstance(exc, IngestionError) and exc.audit_id is None:
            exc.audit_id = audit_id
        raise


def confirm_event(
    user_id: object,
    audit_id: str,
    event_type: str,
    event_data: dict[str, Any],
    event_time: str | None = None,
    capture_method: str = "manual",
    selected_product: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Persist the event a user confirmed for an input that was awaiting clarification.

    Product events teach the registry so the same wording resolves directly next time.
    """
    acting_user_id = validate_user_id(user_id, "confirming voice event")
    # the store would reject a malformed id as a type error, not as a miss
    if not _is_uuid(audit_id):
        raise AuditRecordNotFound(f"audit record {audit_id} not found")
    if event_time is not None:
        # ValueError on a malformed time, before anything is written
        event_time = parse_event_time(event_time).isoformat()
    audit = get_audit_record(audit_id, acting_user_id)
    if audit is None:
        raise AuditRecordNotFound(f"audit record {audit_id} not found")
    if audit.get("nlp_status") != AUDIT_STATUS_AWAITING:
        raise AuditStateConflict(
            f"audit record {audit_id} is not awaiting confirmation",
            status=audit.get("nlp_status"),
        )

    try:
        cleaned, missing = validate_event_data(event_type, event_data)
    except ClassificationParseFailure as exc:
        raise ValueError(str(exc)) from exc
    if missing:
        raise ValueError(f"missing required fields: {', '.join(missing)}")

    selected_product = selected_product or {}
    if selected_product.get("brand") and not cleaned.get("brand"):
        cleaned["brand"] = selected_product["brand"]

    parsed = ParsedEvent(
        event_type=event_type,
        event_data=cleaned,
        event_time=event_time or now_iso(),
        confidence=100,
    )
    event = _persist_and_finish(acting_user_id, audit_id, parsed, capture_method, AUDIT_STATUS_AWAITING_SUCCESS)

    registry_entry = None
    product_name = item_text(event_type, cleaned) or selected_product.get("name")
    if event_type in PRODUCT_EVENT_TYPES and product_name:
        registry_entry = upsert_registry_entry(
            acting_user_id,
            product_key=normalize_product_key(product_name),
            event_type=event_type,
            product_name=product_name,
            brand=cleaned.get("brand"),
            external_product_id=(str(selected_product["id"]) if selected_product.get("id") is not None else None),
            external_source=selected_product.get("source"),
        )
        logger.info(
            "Registry updated from confirmation",
            extra={
                "audit_id": audit_id,
                "product_key": registry_entry.product_key,
                "times_logged": registry_entry.times_logged,
            },
        )
    return {"audit_id": audit_id, "event": event, "registry_entry": registry_entry}
