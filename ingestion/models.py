# in-memory shapes passed between pipeline stages
# audit rows and voice events stay plain dicts, the way repositories return rows

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

AUDIT_STATUS_PENDING = "pending"
AUDIT_STATUS_SUCCESS = "success"
AUDIT_STATUS_AWAITING = "awaiting_user_clarification"
AUDIT_STATUS_AWAITING_SUCCESS = "awaiting_user_clarification_success"
AUDIT_STATUS_FAILED = "failed"
AUDIT_STATUSES = frozenset(
    {
        AUDIT_STATUS_PENDING,
        AUDIT_STATUS_SUCCESS,
        AUDIT_STATUS_AWAITING,
        AUDIT_STATUS_AWAITING_SUCCESS,
        AUDIT_STATUS_FAILED,
    }
)
# statuses an audit row may move to; nothing re-enters pending
TERMINAL_AUDIT_STATUSES = AUDIT_STATUSES - {AUDIT_STATUS_PENDING}

CAPTURE_METHODS = frozenset({"voice", "manual", "template"})

SOURCE_USER_REGISTRY = "user_registry"
SOURCE_CLASSIFIER = "classifier"
REGISTRY_SOURCE_EXACT = "user_registry_exact"
REGISTRY_SOURCE_FUZZY = "user_registry_fuzzy"


# model's proposed classification, transient until persisted or discarded
@dataclass
class ParsedEvent:
    event_type: str
    event_data: dict[str, Any]
    event_time: str
    confidence: int
    complete: bool = True
    missing_fields: list[str] = field(default_factory=list)
    corrected_from: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "event_data": dict(self.event_data),
            "event_time": self.event_time,
            "confidence": self.confidence,
            "complete": self.complete,
            "missing_fields": list(self.missing_fields),
            "corrected_from": self.corrected_from,
        }


@dataclass
class RegistryEntry:
    user_id: str
    product_key: str
    event_type: str
    product_name: str
    brand: str | None
    times_logged: int
    # set by the matcher: user_registry_exact | user_registry_fuzzy
    source: str | None = None
    score: float | None = None
    # False when the query carried words the entry does not (a dose, a time, another item)
    query_covered: bool = True


@dataclass
class ProductCandidate:
    source: str
    source_id: str | None
    name: str
    brand: str | None
    nutrients: dict[str, Any] = field(default_factory=dict)
    dosage: str | None = None
    serving_size: str | None = None
    confidence: int = 0
    product_key: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "id": self.source_id,
            "name": self.name,
            "brand": self.brand,
            "nutrients": dict(self.nutrients),
            "dosage": self.dosage,
            "servingSize": self.serving_size,
            "confidence": self.confidence,
        }


# outcome of one pass through the pipeline
@dataclass
class PipelineResult:
    success: bool
    complete: bool
    source: str
    audit_id: str
    parsed: ParsedEvent
    event: dict[str, Any] | None = None
    product_options: list[ProductCandidate] | None = None
    missing_fields: list[str] = field(default_factory=list)
    confidence: int | None = None
    should_search: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "complete": self.complete,
            "source": self.source,
            "audit_id": self.audit_id,
            "parsed": self.parsed.to_dict(),
            "event": self.event,
            "product_options": (
                [candidate.to_dict() for candidate in self.product_options]
                if self.product_options is not None
                else None
            ),
            "missing_fields": list(self.missing_fields),
            "confidence": self.confidence,
            "should_search": self.should_search,
        }
