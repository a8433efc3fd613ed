# validate the classifier's event payload against its event type
# structural problems raise ClassificationParseFailure; missing required fields only mark the event incomplete

from __future__ import annotations

from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ingestion.errors import ClassificationParseFailure
from ingestion.time_utils import parse_event_time

# scalar readings may come back as "25" or 25; keep whichever the model sent
Scalar = Union[str, int, float]


class _EventData(BaseModel):
    # unknown keys from the model are kept, not rejected
    model_config = ConfigDict(extra="allow")


class FoodData(_EventData):
    description: str | None = None
    brand: str | None = None
    meal_type: str | None = None
    carbs: Scalar | None = None
    calories: Scalar | None = None
    portion: str | None = None


class GlucoseData(_EventData):
    value: Scalar | None = None
    units: str | None = None
    context: str | None = None


class InsulinData(_EventData):
    value: Scalar | None = None
    units: str | None = None
    insulin_type: str | None = None
    site: str | None = None


class ActivityData(_EventData):
    activity_type: str | None = None
    duration: Scalar | None = None
    intensity: str | None = None


class SupplementData(_EventData):
    name: str | None = None
    dosage: Scalar | None = None
    units: str | None = None
    brand: str | None = None


class MedicationData(_EventData):
    name: str | None = None
    dosage: Scalar | None = None
    units: str | None = None
    brand: str | None = None


class SaunaData(_EventData):
    duration: Scalar | None = None
    temperature: Scalar | None = None
    temperature_units: str | None = None


class SymptomData(_EventData):
    description: str | None = None
    severity: Scalar | None = None


EVENT_TYPES: dict[str, dict[str, Any]] = {
    "food": {"model": FoodData, "required": ("description",)},
    "glucose": {"model": GlucoseData, "required": ("value", "units")},
    "insulin": {"model": InsulinData, "required": ("value", "units", "insulin_type")},
    "activity": {"model": ActivityData, "required": ("activity_type", "duration")},
    "supplement": {"model": SupplementData, "required": ("name", "dosage")},
    "medication": {"model": MedicationData, "required": ("name", "dosage")},
    "sauna": {"model": SaunaData, "required": ("duration",)},
    "symptom": {"model": SymptomData, "required": ("description",)},
}

# types that name a purchasable product and so may need a catalog lookup
PRODUCT_EVENT_TYPES = frozenset({"food", "supplement", "medication"})


def item_name_field(event_type: str) -> str:
    return "name" if event_type in {"supplement", "medication"} else "description"


def item_text(event_type: str, event_data: dict[str, Any] | None) -> str:
    """Best single string naming the item, used for registry and search queries."""
    if not event_data:
        return ""
    value = event_data.get(item_name_field(event_type))
    if not value:
        value = event_data.get("name") or event_data.get("description")
    return str(value).strip() if value else ""


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def required_fields(event_type: str) -> tuple[str, ...]:
    schema = EVENT_TYPES.get(event_type)
    if schema is None:
        raise ValueError(f"unknown event type: {event_type}")
    return schema["required"]


def validate_event_data(event_type: str, event_data: Any) -> tuple[dict[str, Any], list[str]]:
    """Check event_data against its type's field set.

    Returns the cleaned payload (blank strings trimmed, None values dropped)
    and the required fields still missing. Raises ClassificationParseFailure
    when the type is unknown or a field has the wrong shape.
    """
    schema = EVENT_TYPES.get(event_type)
    if schema is None:
        raise ClassificationParseFailure(f"unknown event type: {event_type!r}")
    if not isinstance(event_data, dict):
        raise ClassificationParseFailure("event_data must be an object")
    try:
        model = schema["model"].model_validate(event_data)
    except ValidationError as exc:
        raise ClassificationParseFailure(f"invalid {event_type} event_data: {exc.errors()}") from exc

    cleaned: dict[str, Any] = {}
    for key, value in model.model_dump(exclude_none=True).items():
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        cleaned[key] = value
    missing = [name for name in schema["required"] if _is_blank(cleaned.get(name))]
    return cleaned, missing


# top-level shape the model must answer with
class ClassifierResponse(BaseModel):
    event_type: str
    event_data: dict[str, Any]
    event_time: str
    confidence: int = Field(ge=0, le=100)

    @field_validator("event_type")
    @classmethod
    def _known_event_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in EVENT_TYPES:
            raise ValueError(f"unknown event type: {value}")
        return normalized

    @field_validator("confidence", mode="before")
    @classmethod
    def _whole_number_confidence(cls, value: Any) -> Any:
        # 87.0 is fine, 87.5 and "high" are not
        if isinstance(value, bool):
            raise ValueError("confidence must be a number")
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    @field_validator("event_time")
    @classmethod
    def _iso_event_time(cls, value: str) -> str:
        return parse_event_time(value).isoformat()
