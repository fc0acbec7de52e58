#!/usr/bin/env python3
"""
ComplaintDesk API
==================
FastAPI service for filing complaints against a category → subcategory
taxonomy, moving them through their status lifecycle, and serving the
usage counters kept on the taxonomy.

The upstream auth layer forwards the caller as headers:
    X-User-Id, X-User-Role (user|admin), X-User-Verified (true|false)

Usage:
    uvicorn complaintdesk_api:app --host 0.0.0.0 --port 8090

Requires:
    pip install fastapi uvicorn pydantic

Version: 1.0 (October 2026)
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from complaintdesk_lifecycle import (
    AttachmentUpload,
    EventLogNotifier,
    KeywordEnricher,
    LifecycleService,
    LocalUploader,
)
from complaintdesk_reconciler import AggregateReconciler
from complaintdesk_store import ComplaintStore, EventLog, ReconcileQueue, TaxonomyStore
from complaintdesk_types import (
    ComplaintPatch,
    ComplaintStatus,
    DeskError,
    Principal,
    Priority,
    Role,
    SortOrder,
    ValidationError,
    VALID_STATUS_TRANSITIONS,
    authorize,
)

# ── Logging ──
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("cd-api")


# ============================================================================
# CONFIGURATION
# ============================================================================

class Config:
    """Environment-driven configuration. Reads from env vars in production."""
    DB_PATH: str = os.environ.get("CD_DB_PATH", str(Path(__file__).parent / "complaintdesk.db"))
    API_KEY: str = os.environ.get("CD_API_KEY", "cd_live_sk_placeholder")
    REQUIRE_AUTH: bool = os.environ.get("REQUIRE_AUTH", "false").lower() == "true"
    UPLOAD_DIR: str = os.environ.get("CD_UPLOAD_DIR", str(Path(__file__).parent / "uploads"))
    UPLOAD_BASE_URL: str = os.environ.get("CD_UPLOAD_BASE_URL", "/uploads")
    MAX_ATTACHMENTS: int = int(os.environ.get("CD_MAX_ATTACHMENTS", "5"))
    MAX_ATTACHMENT_BYTES: int = int(os.environ.get("CD_MAX_ATTACHMENT_BYTES", str(5 * 1024 * 1024)))
    COUNTER_RETRIES: int = int(os.environ.get("CD_COUNTER_RETRIES", "5"))
    RECONCILE_ATTEMPTS: int = int(os.environ.get("CD_RECONCILE_ATTEMPTS", "3"))
    RECONCILE_BACKOFF: float = float(os.environ.get("CD_RECONCILE_BACKOFF", "0.05"))
    ENRICH_TIMEOUT: float = float(os.environ.get("CD_ENRICH_TIMEOUT", "2.0"))


config = Config()


# ============================================================================
# SERVICE WIRING
# ============================================================================

@dataclass
class Desk:
    """Every component one process needs, built against one database."""
    taxonomy: TaxonomyStore
    complaints: ComplaintStore
    queue: ReconcileQueue
    events: EventLog
    reconciler: AggregateReconciler
    lifecycle: LifecycleService
    start_time: datetime


def build_desk(cfg: Config = config) -> Desk:
    taxonomy = TaxonomyStore(cfg.DB_PATH, max_retries=cfg.COUNTER_RETRIES)
    complaints = ComplaintStore(cfg.DB_PATH)
    queue = ReconcileQueue(cfg.DB_PATH)
    events = EventLog(cfg.DB_PATH)
    reconciler = AggregateReconciler(taxonomy, complaints, queue)
    lifecycle = LifecycleService(
        taxonomy,
        complaints,
        reconciler,
        uploader=LocalUploader(cfg.UPLOAD_DIR, cfg.UPLOAD_BASE_URL, cfg.MAX_ATTACHMENT_BYTES),
        notifier=EventLogNotifier(events),
        enricher=KeywordEnricher(taxonomy),
        reconcile_attempts=cfg.RECONCILE_ATTEMPTS,
        reconcile_backoff=cfg.RECONCILE_BACKOFF,
        enrich_timeout=cfg.ENRICH_TIMEOUT,
        max_attachments=cfg.MAX_ATTACHMENTS,
    )
    logger.info(f"ComplaintDesk wired against {cfg.DB_PATH}")
    return Desk(taxonomy, complaints, queue, events, reconciler, lifecycle, datetime.utcnow())


@lru_cache(maxsize=1)
def get_desk() -> Desk:
    return build_desk(config)


# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class AttachmentIn(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    content_type: str
    content_b64: str = Field(..., description="Base64-encoded file content")
    required: bool = True


class ComplaintCreate(BaseModel):
    title: str
    description: str
    category: str
    sub_category: str
    priority: Optional[Priority] = None
    attachments: List[AttachmentIn] = Field(default_factory=list)


class ComplaintUpdate(BaseModel):
    """Fields a filer may change. Anything else is rejected."""
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None
    priority: Optional[Priority] = None


class StatusUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: ComplaintStatus
    resolution: Optional[str] = None


class CommentCreate(BaseModel):
    text: str


class EmailShare(BaseModel):
    email: str


class SocialShare(BaseModel):
    platform: str


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = ""
    description: str = ""
    is_frequently_used: bool = False


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    icon: Optional[str] = None
    description: Optional[str] = None


class SubCategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = ""
    description: str = ""


class HealthResponse(BaseModel):
    service: str = "cd-api"
    status: str = "healthy"
    uptime_seconds: float = 0.0
    complaints_stored: int = 0
    pending_repairs: int = 0


# ============================================================================
# AUTH
# ============================================================================

def verify_api_key(authorization: Optional[str] = Header(None)) -> str:
    """Verify the service bearer key. Skipped unless REQUIRE_AUTH=true."""
    if not config.REQUIRE_AUTH:
        return "local_dev"
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Missing Authorization header"},
        )
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Invalid Authorization format"},
        )
    if not hmac.compare_digest(parts[1], config.API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Invalid API key"},
        )
    return parts[1]


def current_principal(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_user_verified: Optional[str] = Header(None),
    _key: str = Depends(verify_api_key),
) -> Principal:
    """Caller identity as forwarded by the auth gateway."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Authentication required"},
        )
    try:
        role = Role((x_user_role or Role.USER.value).lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": f"Unknown role: {x_user_role}"},
        )
    verified = (x_user_verified or "").lower() in ("1", "true", "yes")
    return Principal(id=x_user_id, role=role, is_verified=verified)


def _decode_attachments(items: List[AttachmentIn]) -> List[AttachmentUpload]:
    uploads = []
    for item in items:
        try:
            content = base64.b64decode(item.content_b64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError(
                f"Attachment {item.filename!r} is not valid base64",
                field="attachments",
            )
        uploads.append(AttachmentUpload(item.filename, item.content_type, content, item.required))
    return uploads


# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="ComplaintDesk Service",
    description="Complaint filing, status lifecycle and category usage counters",
    version="1.0.0",
)

_allowed_origins = os.environ.get(
    "CORS_ORIGINS",
    "http://localhost:8090,http://127.0.0.1:8090,http://localhost:3000",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins if _allowed_origins != ["*"] else ["*"],
    allow_credentials=True if _allowed_origins != ["*"] else False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DeskError)
async def desk_error_handler(request: Request, exc: DeskError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_detail()})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ()) if p != "body"), "message": e.get("msg", "")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": {"code": "VALIDATION_ERROR", "message": "Request validation failed", "errors": errors}},
    )


@app.get("/health", response_model=HealthResponse)
def health(desk: Desk = Depends(get_desk)):
    """Service health check."""
    uptime = (datetime.utcnow() - desk.start_time).total_seconds()
    return HealthResponse(
        uptime_seconds=round(uptime, 1),
        complaints_stored=desk.complaints.count_all(),
        pending_repairs=desk.queue.size(),
    )


@app.get("/ready")
def ready():
    """Readiness probe. Returns 200 when the service can accept traffic."""
    return {"ready": True}


@app.get("/v1/transitions")
def get_transition_rules(_key: str = Depends(verify_api_key)):
    """Return the full status transition rule map for reference."""
    return {
        "rules": {k: sorted(v) for k, v in VALID_STATUS_TRANSITIONS.items()},
        "statuses": [s.value for s in ComplaintStatus],
    }


# ============================================================================
# COMPLAINTS
# ============================================================================

@app.post("/v1/complaints", status_code=status.HTTP_201_CREATED)
def create_complaint(
    req: ComplaintCreate,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    """
    File a complaint.

    Flow:
    1. Verified caller check and field validation
    2. Upload attachments (a failed required attachment aborts)
    3. Store complaint, reconcile taxonomy counters
    4. Enrichment and notification, best effort
    """
    complaint = desk.lifecycle.create_complaint(
        principal,
        req.title,
        req.description,
        req.category,
        req.sub_category,
        priority=req.priority.value if req.priority else None,
        attachments=_decode_attachments(req.attachments),
    )
    return complaint.to_dict()


@app.get("/v1/complaints")
def list_complaints(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    priority: Optional[Priority] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    sort: Optional[SortOrder] = None,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    """Paginated listing. Admins see every complaint, users their own."""
    if status_filter and status_filter != "all":
        try:
            ComplaintStatus(status_filter)
        except ValueError:
            raise ValidationError(f"Unknown status filter: {status_filter}", field="status")
    return desk.lifecycle.list_complaints(
        principal,
        status_filter=status_filter,
        priority=priority.value if priority else None,
        category=category,
        search=search,
        sort=sort.value if sort else None,
        page=page,
        limit=limit,
    )


@app.get("/v1/complaints/stats")
def complaint_stats(principal: Principal = Depends(current_principal), desk: Desk = Depends(get_desk)):
    return desk.lifecycle.complaint_stats(principal)


@app.get("/v1/complaints/history")
def complaint_history(principal: Principal = Depends(current_principal), desk: Desk = Depends(get_desk)):
    """The caller's ten most recently updated complaints."""
    return desk.lifecycle.complaint_history(principal)


@app.get("/v1/complaints/{complaint_id}")
def get_complaint(
    complaint_id: str,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    return desk.lifecycle.get_complaint(principal, complaint_id).to_dict()


@app.get("/v1/complaints/{complaint_id}/transitions")
def get_valid_transitions(
    complaint_id: str,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    """Statuses the complaint may move to next."""
    return desk.lifecycle.allowed_transitions(principal, complaint_id)


@app.put("/v1/complaints/{complaint_id}")
def update_complaint(
    complaint_id: str,
    req: ComplaintUpdate,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    patch = ComplaintPatch(
        title=req.title,
        description=req.description,
        category=req.category,
        sub_category=req.sub_category,
        priority=req.priority,
    )
    return desk.lifecycle.update_complaint(principal, complaint_id, patch).to_dict()


@app.delete("/v1/complaints/{complaint_id}")
def delete_complaint(
    complaint_id: str,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    desk.lifecycle.delete_complaint(principal, complaint_id)
    return {"complaint_id": complaint_id, "message": "Complaint deleted successfully"}


@app.patch("/v1/complaints/{complaint_id}/status")
def update_complaint_status(
    complaint_id: str,
    req: StatusUpdate,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    """
    Admin-only status transition.
    Body: {"status": "resolved", "resolution": "Refund issued"}
    A resolution text is required when moving to resolved.
    """
    complaint = desk.lifecycle.transition_status(
        principal, complaint_id, req.status.value, req.resolution,
    )
    return complaint.to_dict()


@app.post("/v1/complaints/{complaint_id}/comments", status_code=status.HTTP_201_CREATED)
def add_comment(
    complaint_id: str,
    req: CommentCreate,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    comment = desk.lifecycle.add_comment(principal, complaint_id, req.text)
    return {"complaint_id": complaint_id, "text": comment.text, "user": comment.user, "created_at": comment.created_at}


@app.post("/v1/complaints/{complaint_id}/share/email")
def share_complaint_email(
    complaint_id: str,
    req: EmailShare,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    desk.lifecycle.share_by_email(principal, complaint_id, req.email)
    return {"complaint_id": complaint_id, "message": "Complaint shared successfully"}


@app.post("/v1/complaints/{complaint_id}/share/social")
def share_complaint_social(
    complaint_id: str,
    req: SocialShare,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    desk.lifecycle.share_on_social(principal, complaint_id, req.platform)
    return {"complaint_id": complaint_id, "message": "Complaint shared on social media successfully"}


# ============================================================================
# CATEGORY TAXONOMY
# ============================================================================

@app.get("/v1/categories")
def list_categories(principal: Principal = Depends(current_principal), desk: Desk = Depends(get_desk)):
    """All categories, the caller's most-used ones and the global complaint total."""
    return desk.lifecycle.list_categories(principal)


@app.get("/v1/categories/{category_id}")
def get_category(category_id: str, _key: str = Depends(verify_api_key), desk: Desk = Depends(get_desk)):
    return desk.taxonomy.get_category(category_id).to_dict()


@app.post("/v1/categories", status_code=status.HTTP_201_CREATED)
def create_category(
    req: CategoryCreate,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    authorize("taxonomy.write", principal)
    category = desk.taxonomy.create_category(
        req.name, icon=req.icon, description=req.description, is_frequently_used=req.is_frequently_used,
    )
    return category.to_dict()


@app.put("/v1/categories/{category_id}")
def update_category(
    category_id: str,
    req: CategoryUpdate,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    authorize("taxonomy.write", principal)
    return desk.taxonomy.update_category(
        category_id, name=req.name, icon=req.icon, description=req.description,
    ).to_dict()


@app.delete("/v1/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_category(
    category_id: str,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    authorize("taxonomy.write", principal)
    desk.taxonomy.delete_category(category_id, desk.complaints)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.patch("/v1/categories/{category_id}/frequent")
def toggle_frequent(
    category_id: str,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    authorize("taxonomy.write", principal)
    return desk.taxonomy.toggle_frequently_used(category_id).to_dict()


@app.post("/v1/categories/{category_id}/subcategories", status_code=status.HTTP_201_CREATED)
def add_sub_category(
    category_id: str,
    req: SubCategoryCreate,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    authorize("taxonomy.write", principal)
    return desk.taxonomy.add_sub_category(
        category_id, req.name, icon=req.icon, description=req.description,
    ).to_dict()


@app.put("/v1/categories/{category_id}/subcategories/{sub_category_id}")
def update_sub_category(
    category_id: str,
    sub_category_id: str,
    req: CategoryUpdate,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    authorize("taxonomy.write", principal)
    return desk.taxonomy.update_sub_category(
        category_id, sub_category_id, name=req.name, icon=req.icon, description=req.description,
    ).to_dict()


@app.delete(
    "/v1/categories/{category_id}/subcategories/{sub_category_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_sub_category(
    category_id: str,
    sub_category_id: str,
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    authorize("taxonomy.write", principal)
    desk.taxonomy.delete_sub_category(category_id, sub_category_id, desk.complaints)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# MAINTENANCE
# ============================================================================
# Counter repair for triples whose in-line reconciliation failed, full
# rebuilds, drift reports and the priority_value backfill.
# ============================================================================

@app.get("/v1/admin/reconcile/pending")
def list_pending_repairs(
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    authorize("maintenance.reconcile", principal)
    pending = desk.queue.pending(limit)
    return {"pending": pending, "total": desk.queue.size()}


@app.post("/v1/admin/reconcile")
def run_pending_repairs(
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
):
    authorize("maintenance.reconcile", principal)
    return desk.reconciler.reconcile_pending(limit)


@app.post("/v1/admin/reconcile/all")
def rebuild_all_counters(principal: Principal = Depends(current_principal), desk: Desk = Depends(get_desk)):
    authorize("maintenance.reconcile", principal)
    return desk.reconciler.reconcile_all()


@app.get("/v1/admin/integrity")
def check_integrity(principal: Principal = Depends(current_principal), desk: Desk = Depends(get_desk)):
    """Counter drift report; read-only."""
    authorize("maintenance.reconcile", principal)
    return desk.reconciler.check_consistency()


@app.post("/v1/admin/backfill-priority")
def backfill_priority(principal: Principal = Depends(current_principal), desk: Desk = Depends(get_desk)):
    authorize("maintenance.reconcile", principal)
    return {"corrected": desk.complaints.backfill_priority_values()}


@app.get("/v1/admin/events")
def list_events(
    topic: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(current_principal),
    desk: Desk = Depends(get_desk),
) -> Dict[str, Any]:
    authorize("maintenance.reconcile", principal)
    events = desk.events.list_events(topic, limit)
    return {"events": events, "count": len(events)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", "8090"))
    uvicorn.run(app, host="0.0.0.0", port=port)
