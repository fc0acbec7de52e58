from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from complaintdesk_lifecycle import Enricher, LifecycleService, Notifier, Uploader
from complaintdesk_reconciler import AggregateReconciler
from complaintdesk_store import ComplaintStore, EventLog, ReconcileQueue, TaxonomyStore
from complaintdesk_types import AIResponse, Conflict, CountKey, NotifyEvent, Principal, Role, UploadFailed


ALICE = Principal(id="user-alice", role=Role.USER, is_verified=True)
BOB = Principal(id="user-bob", role=Role.USER, is_verified=True)
UNVERIFIED = Principal(id="user-carol", role=Role.USER, is_verified=False)
ADMIN = Principal(id="admin-1", role=Role.ADMIN, is_verified=True)


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: List[Tuple[NotifyEvent, Dict[str, Any]]] = []

    def notify(self, event: NotifyEvent, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("mail relay down")
        self.sent.append((event, payload))


class RecordingUploader(Uploader):
    def __init__(self, fail_on: Optional[Set[str]] = None) -> None:
        self.fail_on = fail_on or set()
        self.uploaded: List[str] = []

    def upload(self, content: bytes, content_type: str, filename: str = "") -> str:
        if filename in self.fail_on:
            raise UploadFailed("storage rejected the file", filename=filename)
        self.uploaded.append(filename)
        return f"https://files.test/{filename}"


class StaticEnricher(Enricher):
    def enrich(self, title: str, description: str) -> AIResponse:
        return AIResponse(category="Billing", suggestion="Check your invoice.", priority="high", confidence=0.9)


class SlowEnricher(Enricher):
    def __init__(self, delay: float) -> None:
        self.delay = delay

    def enrich(self, title: str, description: str) -> AIResponse:
        time.sleep(self.delay)
        return AIResponse(category="late", suggestion="too late")


class BrokenEnricher(Enricher):
    def enrich(self, title: str, description: str) -> AIResponse:
        raise RuntimeError("model unavailable")


class FlakyReconciler(AggregateReconciler):
    """Fails the first `failures` reconcile calls with a version conflict."""

    def __init__(self, *args: Any, failures: int = 0, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.failures = failures
        self._lock = threading.Lock()

    def reconcile(self, key: CountKey, delta: int = 0):
        with self._lock:
            if self.failures > 0:
                self.failures -= 1
                raise Conflict("simulated version clash", category_id=key.category)
        return super().reconcile(key, delta)


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "complaintdesk-test.db")


@pytest.fixture
def taxonomy(db_path: str) -> TaxonomyStore:
    return TaxonomyStore(db_path, max_retries=50, backoff_base=0.001)


@pytest.fixture
def complaints(db_path: str) -> ComplaintStore:
    return ComplaintStore(db_path, max_retries=50, backoff_base=0.001)


@pytest.fixture
def queue(db_path: str) -> ReconcileQueue:
    return ReconcileQueue(db_path)


@pytest.fixture
def events(db_path: str) -> EventLog:
    return EventLog(db_path)


@pytest.fixture
def reconciler(taxonomy: TaxonomyStore, complaints: ComplaintStore, queue: ReconcileQueue) -> AggregateReconciler:
    return AggregateReconciler(taxonomy, complaints, queue)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def uploader() -> RecordingUploader:
    return RecordingUploader()


@pytest.fixture
def lifecycle(taxonomy, complaints, reconciler, notifier, uploader):
    service = LifecycleService(
        taxonomy,
        complaints,
        reconciler,
        uploader=uploader,
        notifier=notifier,
        enricher=StaticEnricher(),
        reconcile_attempts=3,
        reconcile_backoff=0.001,
        enrich_timeout=1.0,
    )
    yield service
    service.close()


@pytest.fixture
def billing(taxonomy: TaxonomyStore) -> Dict[str, str]:
    """Billing category with Refund and Late fee subcategories."""
    category = taxonomy.create_category("Billing", icon="💳", description="Invoices and payments")
    taxonomy.add_sub_category(category.category_id, "Refund")
    category = taxonomy.add_sub_category(category.category_id, "Late fee")
    subs = {s.name: s.sub_category_id for s in category.sub_categories}
    return {"category": category.category_id, "refund": subs["Refund"], "late_fee": subs["Late fee"]}


def file_complaint(service: LifecycleService, principal: Principal, pair: Dict[str, str], sub: str = "refund", **kwargs: Any):
    return service.create_complaint(
        principal,
        kwargs.pop("title", "Double charged"),
        kwargs.pop("description", "My card was charged twice for one order."),
        pair["category"],
        pair[sub],
        **kwargs,
    )
