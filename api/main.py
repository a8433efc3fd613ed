import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from api.db import initialize_database
from api.helpers.identity import validate_user_id
from api.repositories.events import list_voice_events
from api.repositories.registry import list_registry_entries
from api.schemas import (
    ConfirmEventIn,
    ConfirmEventOut,
    RegistryEntryOut,
    TextIngestIn,
    TextIngestOut,
    VoiceEventOut,
)
from ingestion.errors import (
    AuditRecordNotFound,
    AuditStateConflict,
    ClassificationApiFailure,
    ClassificationParseFailure,
    IngestionError,
    InvalidIdentity,
    PersistenceFailure,
)
from ingestion.ingest_text import confirm_event, process_text_input


def _configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@asynccontextmanager
async def _lifespan(app: FastAPI):
    _ = app
    _configure_logging()
    initialize_database()
    yield


app = FastAPI(
    title="Health Event Ingestion API",
    version="0.1.0",
    lifespan=_lifespan,
)


def _cors_allow_origins() -> list[str]:
    configured = os.getenv("CORS_ALLOW_ORIGINS", "")
    if configured.strip():
        return [origin.strip().rstrip("/") for origin in configured.split(",") if origin.strip()]
    return [
        "http://localhost:8081",
        "http://127.0.0.1:8081",
        "http://localhost:19006",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_allow_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# the upstream auth layer forwards the authenticated caller as X-User-Id
def _resolve_request_user_id(
    *,
    explicit_user_id: Optional[str],
    header_user_id: Optional[str],
) -> str:
    if header_user_id is None or not header_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        auth_user_id = validate_user_id(header_user_id, "request authentication")
    except InvalidIdentity:
        raise HTTPException(status_code=401, detail="Authentication required")
    if explicit_user_id is not None:
        try:
            requested = validate_user_id(explicit_user_id, "request body")
        except InvalidIdentity as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        if requested != auth_user_id:
            raise HTTPException(status_code=403, detail="user_id does not match authenticated user")
    return auth_user_id


# provider messages never reach the client
def _http_error(exc: IngestionError) -> HTTPException:
    if isinstance(exc, InvalidIdentity):
        status, message = 400, "invalid user id"
    elif isinstance(exc, ClassificationParseFailure):
        status, message = 422, "could not understand the classification result"
    elif isinstance(exc, ClassificationApiFailure):
        status, message = 502, "classification service unavailable"
    elif isinstance(exc, PersistenceFailure):
        status, message = 503, "storage unavailable"
    elif isinstance(exc, AuditRecordNotFound):
        status, message = 404, "audit record not found"
    elif isinstance(exc, AuditStateConflict):
        status, message = 409, "audit record is not awaiting confirmation"
    else:
        status, message = 500, "ingestion failed"
    detail: dict = {"message": message}
    if exc.audit_id:
        detail["audit_id"] = exc.audit_id
    return HTTPException(status_code=status, detail=detail)


# empty text submission rejected, else run the classification pipeline
@app.post("/events/ingest_text", response_model=TextIngestOut)
def ingest_text(payload: TextIngestIn, x_user_id: Optional[str] = Header(default=None)):
    user_id = _resolve_request_user_id(
        explicit_user_id=payload.user_id,
        header_user_id=x_user_id,
    )
    if not payload.raw_text.strip():
        raise HTTPException(status_code=400, detail="raw_text is required")
    try:
        result = process_text_input(
            user_id,
            payload.raw_text,
            capture_method=payload.capture_method,
            transcription_metadata=payload.transcription_metadata,
        )
    except IngestionError as exc:
        raise _http_error(exc) from exc
    return result.to_dict()


@app.post("/events/{audit_id}/confirm", response_model=ConfirmEventOut)
def confirm_ingested_event(
    audit_id: str,
    payload: ConfirmEventIn,
    x_user_id: Optional[str] = Header(default=None),
):
    user_id = _resolve_request_user_id(
        explicit_user_id=payload.user_id,
        header_user_id=x_user_id,
    )
    try:
        confirmed = confirm_event(
            user_id,
            audit_id,
            payload.event_type,
            payload.event_data,
            event_time=payload.event_time,
            capture_method=payload.capture_method,
            selected_product=payload.selected_product.model_dump() if payload.selected_product else None,
        )
    except IngestionError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    registry_entry = confirmed["registry_entry"]
    return {
        "audit_id": confirmed["audit_id"],
        "event": confirmed["event"],
        "registry_entry": asdict(registry_entry) if registry_entry is not None else None,
    }


@app.get("/events", response_model=list[VoiceEventOut])
def get_events(
    user_id: Optional[str] = None,
    limit: int = 50,
    x_user_id: Optional[str] = Header(default=None),
):
    user_id = _resolve_request_user_id(
        explicit_user_id=user_id,
        header_user_id=x_user_id,
    )
    try:
        return list_voice_events(user_id, limit=max(1, min(int(limit), 500)))
    except IngestionError as exc:
        raise _http_error(exc) from exc


@app.get("/registry", response_model=list[RegistryEntryOut])
def get_registry(
    user_id: Optional[str] = None,
    limit: int = 50,
    x_user_id: Optional[str] = Header(default=None),
):
    user_id = _resolve_request_user_id(
        explicit_user_id=user_id,
        header_user_id=x_user_id,
    )
    try:
        entries = list_registry_entries(user_id, min_times_logged=1, limit=max(1, min(int(limit), 500)))
    except IngestionError as exc:
        raise _http_error(exc) from exc
    return [asdict(entry) for entry in entries]
