#!/usr/bin/env python3
"""
ComplaintDesk Lifecycle Service
================================
Request-level orchestration around the stores:

    validate → upload attachments → store complaint → reconcile counters
             → enrich (best effort) → notify (best effort)

Guarantees visible to callers:
  - Validation and authorization failures surface immediately, nothing is
    written.
  - A required attachment that fails to upload aborts creation.
  - Counter reconciliation is retried with backoff; if it still fails the
    complaint is kept and the affected triple goes to the repair queue.
  - Enrichment and notification failures are logged and never fail the
    operation.

Version: 1.0 (October 2026)
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from complaintdesk_reconciler import TRANSIENT_ERRORS, AggregateReconciler
from complaintdesk_store import ComplaintStore, EventLog, TaxonomyStore, backoff_delay
from complaintdesk_types import (
    AIResponse,
    Category,
    Comment,
    Complaint,
    ComplaintPatch,
    CountKey,
    DeskError,
    Forbidden,
    NotFound,
    NotifyEvent,
    Principal,
    Priority,
    SocialPlatform,
    UploadFailed,
    ValidationError,
    VALID_STATUS_TRANSITIONS,
    authorize,
)

logger = logging.getLogger("cd-lifecycle")

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

FALLBACK_SUGGESTION = "Unable to generate suggestion at this time."


def fallback_ai_response() -> AIResponse:
    return AIResponse(category="uncategorized", suggestion=FALLBACK_SUGGESTION, confidence=0.0)


# ============================================================================
# COLLABORATORS
# ============================================================================

@dataclass
class AttachmentUpload:
    """One file supplied with a new complaint."""
    filename: str
    content_type: str
    content: bytes
    required: bool = True


class Uploader:
    """Persists attachment bytes and returns a URL."""

    def upload(self, content: bytes, content_type: str, filename: str = "") -> str:
        raise NotImplementedError


class LocalUploader(Uploader):
    """Writes attachments to a local directory under a content-hash name."""

    EXTENSIONS = {
        "image/jpeg": ".jpg",
        "image/png": ".png",
        "application/pdf": ".pdf",
    }

    def __init__(self, upload_dir: str, base_url: str = "/uploads", max_bytes: int = 5 * 1024 * 1024):
        self.upload_dir = Path(upload_dir)
        self.base_url = base_url.rstrip("/")
        self.max_bytes = max_bytes

    def upload(self, content: bytes, content_type: str, filename: str = "") -> str:
        ext = self.EXTENSIONS.get(content_type)
        if ext is None:
            raise UploadFailed(
                "Invalid file type. Only JPEG, PNG and PDF files are allowed.",
                filename=filename,
            )
        if len(content) > self.max_bytes:
            raise UploadFailed(
                f"File exceeds the {self.max_bytes} byte limit",
                filename=filename,
            )
        name = hashlib.sha256(content).hexdigest()[:32] + ext
        try:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
            (self.upload_dir / name).write_bytes(content)
        except OSError as e:
            raise UploadFailed(f"Could not store attachment: {e}", filename=filename) from e
        return f"{self.base_url}/{name}"


class Notifier:
    """Fire-and-forget delivery of lifecycle events."""

    def notify(self, event: NotifyEvent, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class EventLogNotifier(Notifier):
    """Publishes every notification to the persistent event log."""

    def __init__(self, events: EventLog):
        self.events = events

    def notify(self, event: NotifyEvent, payload: Dict[str, Any]) -> None:
        self.events.publish(f"complaint.{NotifyEvent(event).value}", payload)


class Enricher:
    """Suggests a category and a first response for a complaint."""

    def enrich(self, title: str, description: str) -> AIResponse:
        raise NotImplementedError


class KeywordEnricher(Enricher):
    """
    Rule-based suggestion: the taxonomy name with the most hits in the
    complaint text wins, urgency words raise the suggested priority.
    """

    URGENT_WORDS = ("urgent", "immediately", "asap", "emergency", "unsafe", "danger", "outage")
    MINOR_WORDS = ("minor", "suggestion", "whenever", "cosmetic", "typo")

    def __init__(self, taxonomy: TaxonomyStore):
        self.taxonomy = taxonomy

    def enrich(self, title: str, description: str) -> AIResponse:
        text = f"{title} {description}".lower()
        best: Optional[Tuple[int, str]] = None
        for category in self.taxonomy.list_categories():
            names = [category.name] + [s.name for s in category.sub_categories]
            hits = sum(text.count(n.lower()) for n in names if n)
            if hits and (best is None or hits > best[0]):
                best = (hits, category.name)

        if any(w in text for w in self.URGENT_WORDS):
            priority = Priority.HIGH.value
        elif any(w in text for w in self.MINOR_WORDS):
            priority = Priority.LOW.value
        else:
            priority = Priority.MEDIUM.value

        if best is None:
            return AIResponse(
                category="uncategorized",
                suggestion="A support representative will review your complaint shortly.",
                priority=priority,
                confidence=0.0,
            )
        hits, name = best
        return AIResponse(
            category=name,
            suggestion=f"This looks like a {name} issue; it has been routed to that queue.",
            priority=priority,
            confidence=round(min(0.95, 0.5 + 0.15 * hits), 2),
        )


# ============================================================================
# LIFECYCLE SERVICE
# ============================================================================

class LifecycleService:
    """Sequences store, reconciler and collaborator calls for each request."""

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        complaints: ComplaintStore,
        reconciler: AggregateReconciler,
        uploader: Optional[Uploader] = None,
        notifier: Optional[Notifier] = None,
        enricher: Optional[Enricher] = None,
        reconcile_attempts: int = 3,
        reconcile_backoff: float = 0.05,
        enrich_timeout: float = 2.0,
        max_attachments: int = 5,
    ):
        self.taxonomy = taxonomy
        self.complaints = complaints
        self.reconciler = reconciler
        self.uploader = uploader
        self.notifier = notifier
        self.enricher = enricher
        self.reconcile_attempts = max(1, reconcile_attempts)
        self.reconcile_backoff = reconcile_backoff
        self.enrich_timeout = enrich_timeout
        self.max_attachments = max_attachments
        self._enrich_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="cd-enrich")

    def close(self) -> None:
        self._enrich_pool.shutdown(wait=False)

    # ── Complaint creation ──

    def create_complaint(
        self,
        principal: Principal,
        title: str,
        description: str,
        category: str,
        sub_category: str,
        priority: Optional[str] = None,
        attachments: Optional[Sequence[AttachmentUpload]] = None,
    ) -> Complaint:
        authorize("complaint.create", principal)
        if not principal.is_verified:
            raise Forbidden("Email verification required")

        fields = self.complaints.validate_new(title, description, category, sub_category, priority)
        self._require_pair(fields["category"], fields["sub_category"])
        urls = self._upload_attachments(attachments or [])

        complaint = self.complaints.create(
            principal.id,
            fields["title"],
            fields["description"],
            fields["category"],
            fields["sub_category"],
            priority=fields["priority"].value,
            attachments=urls,
        )
        logger.info(
            f"Complaint filed: {complaint.complaint_id} by {principal.id} "
            f"in {complaint.category}/{complaint.sub_category} ({complaint.priority.value})"
        )

        self._reconcile([(CountKey.of(complaint), +1)], "created")
        complaint = self._enrich(complaint)
        self._notify(NotifyEvent.CREATED, {
            "complaint_id": complaint.complaint_id,
            "user": complaint.user,
            "title": complaint.title,
            "category": complaint.category,
            "sub_category": complaint.sub_category,
            "priority": complaint.priority.value,
        })
        return complaint

    # ── Reads ──

    def get_complaint(self, principal: Principal, complaint_id: str) -> Complaint:
        return self.complaints.find_by_id(complaint_id, principal)

    def list_complaints(self, principal: Principal, **filters: Any) -> Dict[str, Any]:
        return self.complaints.list_complaints(principal, **filters)

    def complaint_stats(self, principal: Principal) -> Dict[str, Any]:
        return self.complaints.stats(principal.id)

    def complaint_history(self, principal: Principal, limit: int = 10) -> List[Dict[str, Any]]:
        return self.complaints.history(principal.id, limit)

    def allowed_transitions(self, principal: Principal, complaint_id: str) -> Dict[str, Any]:
        complaint = self.complaints.find_by_id(complaint_id, principal)
        current = complaint.status.value
        return {
            "complaint_id": complaint_id,
            "current_status": current,
            "allowed_transitions": sorted(VALID_STATUS_TRANSITIONS.get(current, set())),
        }

    def list_categories(self, principal: Optional[Principal] = None) -> Dict[str, Any]:
        """All categories, the caller's three most-used ones, and the global total."""
        categories = self.taxonomy.list_categories()
        frequent: List[Category] = []
        if principal is not None:
            used = []
            for c in categories:
                entry = c.find_user_count(principal.id)
                if entry is not None and entry.count > 0:
                    used.append((entry.count, c))
            used.sort(key=lambda pair: pair[0], reverse=True)
            frequent = [c for _, c in used[:3]]
        return {
            "categories": [c.to_dict() for c in categories],
            "frequent_categories": [c.to_dict() for c in frequent],
            "total_complaints": sum(c.total_complaints for c in categories),
        }

    # ── Filer edits ──

    def update_complaint(self, principal: Principal, complaint_id: str, patch: ComplaintPatch) -> Complaint:
        if patch.moves and patch.category and patch.sub_category:
            self._require_pair(patch.category.strip(), patch.sub_category.strip())
        complaint, left = self.complaints.update(complaint_id, principal, patch)
        if left is not None:
            joined = CountKey.of(complaint)
            logger.info(f"Complaint {complaint_id} moved {left} -> {joined}")
            self._reconcile([(left, -1), (joined, +1)], "recategorized")
        return complaint

    def delete_complaint(self, principal: Principal, complaint_id: str) -> Complaint:
        # Recounts read the complaints table, so the row must be gone first.
        removed = self.complaints.delete(complaint_id, principal)
        self._reconcile([(CountKey.of(removed), -1)], "deleted")
        return removed

    def add_comment(self, principal: Principal, complaint_id: str, text: str) -> Comment:
        comment = self.complaints.append_comment(complaint_id, principal, text)
        self._notify(NotifyEvent.NEW_COMMENT, {
            "complaint_id": complaint_id,
            "user": principal.id,
            "text": comment.text,
        })
        return comment

    def share_by_email(self, principal: Principal, complaint_id: str, email: str) -> Complaint:
        address = (email or "").strip().lower()
        if not EMAIL_RE.match(address):
            raise ValidationError("A valid email address is required", field="email")
        complaint = self.complaints.record_share(complaint_id, principal, "email", address)
        self._notify(NotifyEvent.SHARED, {
            "complaint_id": complaint_id,
            "channel": "email",
            "to": address,
            "by": principal.id,
        })
        return complaint

    def share_on_social(self, principal: Principal, complaint_id: str, platform: str) -> Complaint:
        try:
            target = SocialPlatform(platform)
        except ValueError:
            raise ValidationError(
                f"platform must be one of: {', '.join(p.value for p in SocialPlatform)}",
                field="platform",
            )
        complaint = self.complaints.record_share(complaint_id, principal, "social", target.value)
        self._notify(NotifyEvent.SHARED, {
            "complaint_id": complaint_id,
            "channel": "social",
            "platform": target.value,
            "by": principal.id,
        })
        return complaint

    # ── Admin transitions ──

    def transition_status(
        self,
        principal: Principal,
        complaint_id: str,
        new_status: str,
        resolution: Optional[str] = None,
    ) -> Complaint:
        complaint, old_status = self.complaints.transition_status(
            complaint_id, principal, new_status, resolution,
        )
        logger.info(f"Complaint {complaint_id}: {old_status} → {complaint.status.value} by {principal.id}")
        self._notify(NotifyEvent.STATUS_CHANGED, {
            "complaint_id": complaint_id,
            "user": complaint.user,
            "old_status": old_status,
            "new_status": complaint.status.value,
            "resolution": asdict(complaint.resolution) if complaint.resolution else None,
        })
        return complaint

    # ── Internals ──

    def _require_pair(self, category_id: str, sub_category_id: str) -> None:
        try:
            self.taxonomy.resolve_pair(category_id, sub_category_id)
        except NotFound as e:
            raise ValidationError(
                e.message,
                errors=[{"field": "category", "message": e.message}],
            ) from e

    def _upload_attachments(self, attachments: Sequence[AttachmentUpload]) -> List[str]:
        if len(attachments) > self.max_attachments:
            raise ValidationError(f"At most {self.max_attachments} attachments are allowed")
        if attachments and self.uploader is None:
            if any(a.required for a in attachments):
                raise UploadFailed("Attachment storage is not configured")
            logger.warning(f"Dropping {len(attachments)} optional attachment(s): no uploader configured")
            return []
        urls: List[str] = []
        for attachment in attachments:
            try:
                urls.append(self.uploader.upload(
                    attachment.content, attachment.content_type, attachment.filename,
                ))
            except UploadFailed:
                if attachment.required:
                    raise
                logger.warning(f"Optional attachment {attachment.filename!r} failed to upload; skipped")
        return urls

    def _reconcile(self, changes: Iterable[Tuple[CountKey, int]], reason: str) -> bool:
        """Bounded retries per triple; triples that still fail are deferred."""
        all_ok = True
        for key, delta in changes:
            last_error: Optional[DeskError] = None
            for attempt in range(self.reconcile_attempts):
                try:
                    self.reconciler.reconcile(key, delta)
                    last_error = None
                    break
                except TRANSIENT_ERRORS as e:
                    last_error = e
                    if attempt + 1 < self.reconcile_attempts:
                        delay = backoff_delay(attempt, self.reconcile_backoff)
                        logger.warning(
                            f"Reconcile {reason} for {key} failed "
                            f"(attempt {attempt + 1}/{self.reconcile_attempts}), retrying in {delay:.2f}s: {e}"
                        )
                        time.sleep(delay)
                except DeskError as e:
                    last_error = e
                    break
            if last_error is not None:
                all_ok = False
                self.reconciler.defer(key, reason, last_error)
        return all_ok

    def _enrich(self, complaint: Complaint) -> Complaint:
        if self.enricher is None:
            return complaint
        future = self._enrich_pool.submit(self.enricher.enrich, complaint.title, complaint.description)
        try:
            ai_response = future.result(timeout=self.enrich_timeout)
        except FutureTimeout:
            logger.warning(f"Enrichment timed out for {complaint.complaint_id}; using fallback")
            ai_response = fallback_ai_response()
        except Exception as e:
            logger.warning(f"Enrichment failed for {complaint.complaint_id}: {e}")
            ai_response = fallback_ai_response()
        try:
            return self.complaints.set_ai_response(complaint.complaint_id, ai_response)
        except DeskError as e:
            logger.warning(f"Could not store enrichment for {complaint.complaint_id}: {e}")
            complaint.ai_response = ai_response
            return complaint

    def _notify(self, event: NotifyEvent, payload: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event, payload)
        except Exception as e:
            logger.warning(f"Notification {event.value} failed: {e}")
