"""
HTTP backend for the Credential Broker.

Endpoints:
- POST /session     mint an ephemeral realtime credential
- GET  /api/voices  static voice catalog
- GET  /health      health check
- GET  /events      recent structured events, filterable
"""
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from logging_setup import get_logger, Component
from observability.event_store import event_store
from observability.events import Component as ObsComponent, EventEmitter, Severity
from voice_catalog import list_voices
from voice_errors import CredentialError
from .broker import CredentialBroker
from .config import get_config
from .models import SessionRequest


app = FastAPI(title="Realtime Voice Credential Broker")
logger = get_logger(Component.BROKER_SERVER)
emitter = EventEmitter(ObsComponent.CREDENTIAL_BROKER)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_broker() -> CredentialBroker:
    """Dependency: broker bound to the process configuration."""
    return CredentialBroker(get_config())


def _new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


@app.post("/session")
async def create_session(
    req: SessionRequest,
    broker: CredentialBroker = Depends(get_broker),
):
    """
    Create an ephemeral client secret for WebRTC to the realtime provider.

    Success returns the provider session payload verbatim; provider
    failures pass through the provider status and body text.
    """
    request_id = _new_request_id()
    emitter.emit(
        "credential.requested",
        session_id=request_id,
        model=req.model,
        voice=req.voice,
    )

    try:
        lease = await broker.request_ephemeral_credential(req.voice, req.model)
    except CredentialError as e:
        if e.status_code is None:
            # Network failures carry no provider text; keep their detail server-side
            status, error_text = 500, "Failed to create session"
        elif e.status_code < 400:
            # Provider said yes but the payload was unusable
            status, error_text = 502, str(e)
        else:
            status, error_text = e.status_code, e.response_text
        emitter.emit(
            "credential.failed",
            session_id=request_id,
            severity=Severity.ERROR,
            status=status,
            error_class=type(e).__name__,
        )
        return JSONResponse(status_code=status, content={"error": error_text})

    emitter.emit(
        "credential.issued",
        session_id=request_id,
        model=req.model,
        voice=req.voice,
        expires_at=lease.expires_at,
    )
    return JSONResponse(content=lease.raw)


@app.get("/api/voices")
async def get_voices():
    """List available voices."""
    return {"success": True, "data": [v.to_dict() for v in list_voices()]}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "component": "credential_broker",
        "configured": get_broker().configured,
    }


@app.get("/events")
async def get_events(
    session_id: Optional[str] = Query(None, description="Filter by session_id"),
    event_type: Optional[str] = Query(None, description="Filter by event_type"),
    component: Optional[str] = Query(None, description="Filter by component"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
) -> dict:
    """Query structured events held in this process, oldest first."""
    events = event_store.query(
        session_id=session_id,
        event_type=event_type,
        component=component,
        limit=limit,
    )
    return {"events": events, "count": len(events)}
