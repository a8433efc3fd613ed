# standardize base schemas for repeated payload patterns

from typing import Any, Optional

from pydantic import BaseModel, Field

_CAPTURE_METHOD_PATTERN = "^(voice|manual|template)$"


# Shape of raw text from typed input or a speech transcript
class TextIngestIn(BaseModel):
    user_id: Optional[str] = None
    raw_text: str
    capture_method: str = Field(default="manual", pattern=_CAPTURE_METHOD_PATTERN)
    transcription_metadata: Optional[dict[str, Any]] = None


class ParsedEventOut(BaseModel):
    event_type: str
    event_data: dict[str, Any]
    event_time: str
    confidence: int
    complete: bool
    missing_fields: list[str] = Field(default_factory=list)
    corrected_from: Optional[str] = None


# external catalog hit offered on the confirmation screen
class ProductOptionOut(BaseModel):
    source: str
    id: Optional[str] = None
    name: str
    brand: Optional[str] = None
    nutrients: dict[str, Any] = Field(default_factory=dict)
    dosage: Optional[str] = None
    servingSize: Optional[str] = None
    confidence: int


# a persisted row of voice_events
class VoiceEventOut(BaseModel):
    id: str
    user_id: str
    event_type: str
    event_data: dict[str, Any]
    event_time: str
    source_record_id: Optional[str] = None
    capture_method: str
    created_at: Optional[str] = None


# Response shape for /events/ingest_text
# complete=False means the client should show a confirmation screen for audit_id
class TextIngestOut(BaseModel):
    success: bool
    complete: bool
    source: str
    audit_id: str
    parsed: ParsedEventOut
    event: Optional[VoiceEventOut] = None
    product_options: Optional[list[ProductOptionOut]] = None
    missing_fields: list[str] = Field(default_factory=list)
    confidence: Optional[int] = None
    should_search: Optional[bool] = None


class SelectedProductIn(BaseModel):
    source: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None
    brand: Optional[str] = None


class ConfirmEventIn(BaseModel):
    user_id: Optional[str] = None
    event_type: str
    event_data: dict[str, Any]
    event_time: Optional[str] = None
    capture_method: str = Field(default="manual", pattern=_CAPTURE_METHOD_PATTERN)
    selected_product: Optional[SelectedProductIn] = None


class RegistryEntryOut(BaseModel):
    product_key: str
    event_type: str
    product_name: str
    brand: Optional[str] = None
    times_logged: int


class ConfirmEventOut(BaseModel):
    audit_id: str
    event: VoiceEventOut
    registry_entry: Optional[RegistryEntryOut] = None
