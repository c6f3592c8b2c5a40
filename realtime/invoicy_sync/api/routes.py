"""
API routes for the Invoicy dashboard.

Each dashboard screen is a live view. The first request for a screen
activates its view; later requests read snapshots of the same stores,
which the change stream keeps current in the background.

Edits go through an EditSession per entity, so concurrent remote
changes surface as conflicts instead of being overwritten.
"""

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile
from pydantic import BaseModel, Field

from ..apply import EditSession
from ..collaborators import (
    AuthProvider,
    CurrentUser,
    StaticAuthProvider,
    UploadDocument,
    summarize_receipts,
)
from ..errors import FetchError
from ..lifecycle import (
    FIELD_SETTINGS,
    INVOICE_DETAIL,
    INVOICE_LIST,
    SYSTEM_STATUS,
    ActivationStatus,
    ViewActivation,
)
from ..main import SyncEngine
from ..models import FieldConfiguration, FieldType, Invoice

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Invoicy Dashboard"])


# --- Request/Response Models ---


class StageEditRequest(BaseModel):
    """Fields to stage on an edit session."""

    changes: dict[str, Any] = Field(..., description="Field name to new value")


class ResolveConflictRequest(BaseModel):
    """How to resolve a conflicted edit session."""

    resolution: Literal["keep_local", "take_remote", "discard"]


class FieldConfigurationCreateRequest(BaseModel):
    """Request to create a field configuration."""

    field_name: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    field_type: FieldType = FieldType.TEXT
    is_required: bool = False
    prompt_instruction: str | None = None


class FieldConfigurationUpdateRequest(BaseModel):
    """Request to update a field configuration. Omitted fields are kept."""

    display_name: str | None = None
    field_type: FieldType | None = None
    is_required: bool | None = None
    prompt_instruction: str | None = None


class SaveResponse(BaseModel):
    """Outcome of saving an edit session."""

    success: bool
    state: str
    error: dict[str, Any] | None = None
    session: dict[str, Any]


class UploadResponse(BaseModel):
    """Per-document receipts of an upload."""

    accepted: int
    failed: int
    skipped: int
    receipts: list[dict[str, Any]]


# --- Dependencies ---


def get_engine(request: Request) -> SyncEngine:
    """Get the sync engine from app state."""
    return request.app.state.engine


def get_auth(request: Request) -> AuthProvider:
    """Auth provider for the user named in the request headers."""
    return StaticAuthProvider.for_user_id(
        request.headers.get("X-User-ID"),
        request.headers.get("X-User-Email"),
    )


async def require_user(auth: AuthProvider = Depends(get_auth)) -> CurrentUser:
    user = await auth.current_user()
    if user is None:
        raise HTTPException(status_code=401, detail="Sign in required")
    return user


async def _activate(
    engine: SyncEngine,
    view: str,
    user: CurrentUser,
    params: dict[str, str] | None = None,
) -> ViewActivation:
    activation = await engine.activate(view, user, params)
    if activation.status == ActivationStatus.UNAUTHENTICATED:
        raise HTTPException(status_code=401, detail="Sign in required")
    await activation.wait_loaded()
    return activation


def _view_payload(activation: ViewActivation) -> dict[str, Any]:
    state = activation.to_dict()
    return {
        "view_id": state["view_id"],
        "status": state["status"],
        "live": state["live"],
        "loaded": state["loaded"],
        "errors": state["errors"],
    }


def _require_loaded(activation: ViewActivation, source: str) -> None:
    if activation.loaded(source):
        return
    for error in activation.errors:
        if isinstance(error, FetchError) and error.source == source:
            raise HTTPException(status_code=502, detail=error.to_dict())


def _invoice_session(activation: ViewActivation, engine: SyncEngine, invoice_id: str) -> EditSession:
    try:
        return activation.open_edit_session(Invoice.source, invoice_id, engine.data)
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Invoice {invoice_id} not found")


# --- View Routes ---


@router.get("/views")
async def list_views(engine: SyncEngine = Depends(get_engine)):
    """List active views and their subscription state."""
    manager = engine.manager
    if manager is None:
        return {"views": []}
    views = [manager.get(view_id) for view_id in manager.active_views]
    return {"views": [v.to_dict() for v in views if v is not None]}


@router.delete("/views/{view_id}")
async def deactivate_view(
    view_id: str,
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Tear down one of the caller's views. Deactivating an inactive view is not an error."""
    activation = engine.manager.get(view_id) if engine.manager else None
    if activation is not None and activation.context.user.id != user.id:
        raise HTTPException(status_code=403, detail="View belongs to another user")
    return {"view_id": view_id, "deactivated": await engine.deactivate(view_id)}


@router.get("/invoices")
async def list_invoices(
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Invoices of the signed-in user, newest first."""
    activation = await _activate(engine, INVOICE_LIST, user)
    _require_loaded(activation, Invoice.source)
    invoices = activation.snapshot(Invoice.source)
    return {
        "view": _view_payload(activation),
        "items": [invoice.summary() for invoice in invoices],
    }


@router.get("/invoices/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """One invoice with its extraction results and edit state."""
    activation = await _activate(engine, INVOICE_DETAIL, user, {"invoice_id": invoice_id})
    _require_loaded(activation, Invoice.source)
    invoice = activation.store(Invoice.source).get(invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail=f"Invoice {invoice_id} not found")

    session = activation.edit_session(Invoice.source, invoice_id)
    return {
        "view": _view_payload(activation),
        "invoice": invoice.to_dict(),
        "summary": invoice.summary(),
        "edit": session.to_dict() if session is not None else None,
    }


@router.post("/invoices/{invoice_id}/edits")
async def stage_invoice_edit(
    invoice_id: str,
    request: StageEditRequest,
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Stage extracted-data changes without saving them."""
    activation = await _activate(engine, INVOICE_DETAIL, user, {"invoice_id": invoice_id})
    session = _invoice_session(activation, engine, invoice_id)
    try:
        session.stage(request.changes)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return session.to_dict()


@router.post("/invoices/{invoice_id}/save", response_model=SaveResponse)
async def save_invoice(
    invoice_id: str,
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Persist the staged changes of an invoice."""
    activation = await _activate(engine, INVOICE_DETAIL, user, {"invoice_id": invoice_id})
    session = _invoice_session(activation, engine, invoice_id)
    result = await session.save()
    return SaveResponse(
        success=result.success,
        state=result.state.value,
        error=result.error.to_dict() if result.error else None,
        session=session.to_dict(),
    )


@router.post("/invoices/{invoice_id}/resolve")
async def resolve_invoice_conflict(
    invoice_id: str,
    request: ResolveConflictRequest,
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Resolve a conflict, or discard local changes."""
    activation = await _activate(engine, INVOICE_DETAIL, user, {"invoice_id": invoice_id})
    session = _invoice_session(activation, engine, invoice_id)
    if request.resolution == "keep_local":
        session.keep_local()
    elif request.resolution == "take_remote":
        session.take_remote()
    else:
        session.discard()
    return session.to_dict()


@router.get("/system-status")
async def system_status(
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Newest system and integration log entries."""
    activation = await _activate(engine, SYSTEM_STATUS, user)
    system_logs = [entry.to_dict() for entry in activation.snapshot("system_logs")]
    sap_logs = [
        {**entry.to_dict(), "outcome": entry.outcome}
        for entry in activation.snapshot("sap_logs")
    ]
    return {
        "view": _view_payload(activation),
        "system_logs": system_logs,
        "sap_logs": sap_logs,
    }


# --- Field Configuration Routes ---


@router.get("/field-configurations")
async def list_field_configurations(
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Configured extraction fields, newest first."""
    activation = await _activate(engine, FIELD_SETTINGS, user)
    _require_loaded(activation, FieldConfiguration.source)
    return {
        "view": _view_payload(activation),
        "items": [field.to_dict() for field in activation.snapshot(FieldConfiguration.source)],
    }


@router.post("/field-configurations", status_code=201)
async def create_field_configuration(
    request: FieldConfigurationCreateRequest,
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Create a field configuration. The view picks it up from the change stream."""
    row = await engine.create_field_configuration(request.model_dump(mode="json"))
    return row or {}


@router.patch("/field-configurations/{field_id}", response_model=SaveResponse)
async def update_field_configuration(
    field_id: str,
    request: FieldConfigurationUpdateRequest,
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Stage and save changes to one field configuration."""
    activation = await _activate(engine, FIELD_SETTINGS, user)
    try:
        session = activation.open_edit_session(FieldConfiguration.source, field_id, engine.data)
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Field configuration {field_id} not found")

    session.stage(request.model_dump(mode="json", exclude_unset=True))
    result = await session.save()
    if result.success:
        activation.close_edit_session(FieldConfiguration.source, field_id)
    return SaveResponse(
        success=result.success,
        state=result.state.value,
        error=result.error.to_dict() if result.error else None,
        session=session.to_dict(),
    )


@router.delete("/field-configurations/{field_id}", status_code=204)
async def delete_field_configuration(
    field_id: str,
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Delete a field configuration."""
    await engine.delete_field_configuration(field_id)


# --- Upload Routes ---


@router.post("/uploads", response_model=UploadResponse)
async def upload_documents(
    request: Request,
    files: list[UploadFile] = File(...),
    engine: SyncEngine = Depends(get_engine),
    user: CurrentUser = Depends(require_user),
):
    """Upload invoice images for extraction. Non-image files are skipped."""
    settings = request.app.state.settings
    if len(files) > settings.max_upload_files:
        raise HTTPException(
            status_code=413,
            detail=f"At most {settings.max_upload_files} files per upload",
        )

    documents = [
        UploadDocument(
            filename=f.filename or "document",
            content=await f.read(),
            content_type=f.content_type or "application/octet-stream",
        )
        for f in files
    ]
    receipts = await engine.upload(documents, user)
    summary = summarize_receipts(receipts)
    return UploadResponse(
        accepted=summary.accepted,
        failed=summary.failed,
        skipped=len(documents) - len(receipts),
        receipts=[
            {
                "filename": r.filename,
                "status": r.status,
                "invoice_id": r.invoice_id,
                "detail": r.detail,
            }
            for r in receipts
        ],
    )
