"""LifecycleService tests: ordering, best-effort side effects, deferral."""

from __future__ import annotations

import pytest

from complaintdesk_lifecycle import (
    FALLBACK_SUGGESTION,
    AttachmentUpload,
    KeywordEnricher,
    LifecycleService,
    LocalUploader,
)
from complaintdesk_reconciler import AggregateReconciler
from complaintdesk_types import (
    ComplaintPatch,
    CountKey,
    Forbidden,
    NotifyEvent,
    UploadFailed,
    ValidationError,
)

from conftest import (
    ADMIN,
    ALICE,
    BOB,
    UNVERIFIED,
    BrokenEnricher,
    FlakyReconciler,
    RecordingNotifier,
    RecordingUploader,
    SlowEnricher,
    file_complaint,
)


def _service(taxonomy, complaints, reconciler, **kwargs) -> LifecycleService:
    kwargs.setdefault("reconcile_backoff", 0.001)
    return LifecycleService(taxonomy, complaints, reconciler, **kwargs)


class TestCreate:
    def test_happy_path(self, lifecycle, notifier: RecordingNotifier, billing):
        complaint = file_complaint(lifecycle, ALICE, billing, priority="high")
        assert complaint.priority_value == 2
        assert complaint.ai_response.suggestion == "Check your invoice."
        # enrichment is advisory; the filer's priority stands
        assert complaint.priority.value == "high"
        assert [e for e, _ in notifier.sent] == [NotifyEvent.CREATED]

    def test_unverified_filer_refused(self, lifecycle, complaints, billing):
        with pytest.raises(Forbidden):
            file_complaint(lifecycle, UNVERIFIED, billing)
        assert complaints.count_all() == 0

    def test_unknown_subcategory_is_a_validation_error(self, lifecycle, complaints, billing):
        with pytest.raises(ValidationError):
            lifecycle.create_complaint(
                ALICE, "Double charged", "My card was charged twice.", billing["category"], "sub_nope",
            )
        assert complaints.count_all() == 0

    def test_required_upload_failure_aborts(self, taxonomy, complaints, reconciler, billing):
        service = _service(
            taxonomy, complaints, reconciler, uploader=RecordingUploader(fail_on={"receipt.pdf"}),
        )
        try:
            with pytest.raises(UploadFailed):
                file_complaint(service, ALICE, billing, attachments=[
                    AttachmentUpload("receipt.pdf", "application/pdf", b"%PDF-1.4"),
                ])
        finally:
            service.close()
        assert complaints.count_all() == 0
        assert taxonomy.get_category(billing["category"]).total_complaints == 0

    def test_optional_upload_failure_is_skipped(self, taxonomy, complaints, reconciler, billing):
        uploader = RecordingUploader(fail_on={"photo.png"})
        service = _service(taxonomy, complaints, reconciler, uploader=uploader)
        try:
            complaint = file_complaint(service, ALICE, billing, attachments=[
                AttachmentUpload("receipt.pdf", "application/pdf", b"%PDF-1.4"),
                AttachmentUpload("photo.png", "image/png", b"\x89PNG", required=False),
            ])
        finally:
            service.close()
        assert complaint.attachments == ["https://files.test/receipt.pdf"]

    def test_too_many_attachments(self, lifecycle, billing):
        files = [AttachmentUpload(f"f{i}.png", "image/png", b"\x89PNG") for i in range(6)]
        with pytest.raises(ValidationError):
            file_complaint(lifecycle, ALICE, billing, attachments=files)

    def test_notifier_failure_does_not_fail_filing(self, taxonomy, complaints, reconciler, billing):
        service = _service(taxonomy, complaints, reconciler, notifier=RecordingNotifier(fail=True))
        try:
            complaint = file_complaint(service, ALICE, billing)
        finally:
            service.close()
        assert complaints.get(complaint.complaint_id).user == ALICE.id

    def test_enricher_failure_uses_fallback(self, taxonomy, complaints, reconciler, billing):
        service = _service(taxonomy, complaints, reconciler, enricher=BrokenEnricher())
        try:
            complaint = file_complaint(service, ALICE, billing)
        finally:
            service.close()
        assert complaint.ai_response.suggestion == FALLBACK_SUGGESTION
        assert complaint.ai_response.category == "uncategorized"

    def test_slow_enricher_times_out(self, taxonomy, complaints, reconciler, billing):
        service = _service(
            taxonomy, complaints, reconciler, enricher=SlowEnricher(0.5), enrich_timeout=0.05,
        )
        try:
            complaint = file_complaint(service, ALICE, billing)
        finally:
            service.close()
        assert complaints.get(complaint.complaint_id).ai_response.suggestion == FALLBACK_SUGGESTION


class TestDeferredReconciliation:
    def test_exhausted_retries_queue_the_key(self, taxonomy, complaints, queue, billing):
        flaky = FlakyReconciler(taxonomy, complaints, queue, failures=10)
        service = _service(taxonomy, complaints, flaky, reconcile_attempts=2)
        try:
            complaint = file_complaint(service, ALICE, billing)
        finally:
            service.close()

        # the complaint stands even though counters lag
        assert complaints.get(complaint.complaint_id)
        assert taxonomy.get_category(billing["category"]).total_complaints == 0
        pending = queue.pending()
        assert len(pending) == 1
        assert pending[0]["reason"] == "created"

        AggregateReconciler(taxonomy, complaints, queue).reconcile_pending()
        assert taxonomy.get_category(billing["category"]).total_complaints == 1
        assert queue.size() == 0

    def test_transient_failure_is_retried_inline(self, taxonomy, complaints, queue, billing):
        flaky = FlakyReconciler(taxonomy, complaints, queue, failures=1)
        service = _service(taxonomy, complaints, flaky, reconcile_attempts=3)
        try:
            file_complaint(service, ALICE, billing)
        finally:
            service.close()
        assert queue.size() == 0
        assert taxonomy.get_category(billing["category"]).total_complaints == 1


class TestEdits:
    def test_move_between_subcategories(self, lifecycle, taxonomy, billing):
        complaint = file_complaint(lifecycle, ALICE, billing)
        moved = lifecycle.update_complaint(
            ALICE, complaint.complaint_id,
            ComplaintPatch(category=billing["category"], sub_category=billing["late_fee"]),
        )
        assert CountKey.of(moved) == CountKey(billing["category"], billing["late_fee"], ALICE.id)
        category = taxonomy.get_category(billing["category"])
        assert category.find_sub_category(billing["refund"]).total_complaints == 0
        assert category.find_sub_category(billing["late_fee"]).total_complaints == 1
        assert category.total_complaints == 1
        assert category.find_user_count(ALICE.id).count == 1

    def test_move_across_categories(self, lifecycle, taxonomy, billing):
        other = taxonomy.create_category("Delivery")
        other = taxonomy.add_sub_category(other.category_id, "Late parcel")
        target = other.sub_categories[0].sub_category_id
        complaint = file_complaint(lifecycle, ALICE, billing)

        lifecycle.update_complaint(
            ALICE, complaint.complaint_id,
            ComplaintPatch(category=other.category_id, sub_category=target),
        )
        assert taxonomy.get_category(billing["category"]).total_complaints == 0
        assert taxonomy.get_category(other.category_id).total_complaints == 1

    def test_move_to_unknown_pair_rejected(self, lifecycle, billing):
        complaint = file_complaint(lifecycle, ALICE, billing)
        with pytest.raises(ValidationError):
            lifecycle.update_complaint(
                ALICE, complaint.complaint_id,
                ComplaintPatch(category=billing["category"], sub_category="sub_nope"),
            )

    def test_status_change_notifies(self, lifecycle, notifier: RecordingNotifier, billing):
        complaint = file_complaint(lifecycle, ALICE, billing)
        lifecycle.transition_status(ADMIN, complaint.complaint_id, "in-progress")
        event, payload = notifier.sent[-1]
        assert event == NotifyEvent.STATUS_CHANGED
        assert (payload["old_status"], payload["new_status"]) == ("pending", "in-progress")

    def test_share_validation(self, lifecycle, notifier: RecordingNotifier, billing):
        complaint = file_complaint(lifecycle, ALICE, billing)
        with pytest.raises(ValidationError):
            lifecycle.share_by_email(ALICE, complaint.complaint_id, "not-an-email")
        with pytest.raises(ValidationError):
            lifecycle.share_on_social(ALICE, complaint.complaint_id, "myspace")
        shared = lifecycle.share_on_social(ALICE, complaint.complaint_id, "linkedin")
        assert [s.target for s in shared.shared_on] == ["linkedin"]
        assert notifier.sent[-1][0] == NotifyEvent.SHARED

    def test_comment_by_stranger_refused(self, lifecycle, billing):
        complaint = file_complaint(lifecycle, ALICE, billing)
        with pytest.raises(Forbidden):
            lifecycle.add_comment(BOB, complaint.complaint_id, "me too")

    def test_frequent_categories(self, lifecycle, taxonomy, billing):
        file_complaint(lifecycle, ALICE, billing)
        listing = lifecycle.list_categories(ALICE)
        assert [c["name"] for c in listing["frequent_categories"]] == ["Billing"]
        assert listing["total_complaints"] == 1
        assert lifecycle.list_categories(BOB)["frequent_categories"] == []


class TestCollaborators:
    def test_local_uploader_writes_by_hash(self, tmp_path):
        uploader = LocalUploader(str(tmp_path / "files"), base_url="/uploads/")
        url = uploader.upload(b"%PDF-1.4 receipt", "application/pdf", "receipt.pdf")
        assert url.startswith("/uploads/") and url.endswith(".pdf")
        assert (tmp_path / "files" / url.rsplit("/", 1)[1]).read_bytes() == b"%PDF-1.4 receipt"

    def test_local_uploader_rejects_type_and_size(self, tmp_path):
        uploader = LocalUploader(str(tmp_path), max_bytes=4)
        with pytest.raises(UploadFailed):
            uploader.upload(b"GIF89a", "image/gif", "anim.gif")
        with pytest.raises(UploadFailed):
            uploader.upload(b"\x89PNG-too-big", "image/png", "big.png")

    def test_keyword_enricher(self, taxonomy, billing):
        enricher = KeywordEnricher(taxonomy)
        suggestion = enricher.enrich("Refund missing", "Urgent: my refund never arrived")
        assert suggestion.category == "Billing"
        assert suggestion.priority == "high"
        assert 0 < suggestion.confidence <= 0.95
        assert enricher.enrich("Hello there", "Nothing matches here").category == "uncategorized"
