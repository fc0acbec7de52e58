#!/usr/bin/env python3
"""
ComplaintDesk Aggregate Reconciler
===================================
Keeps the denormalized counters on the taxonomy (per subcategory, per
category, per filer) in line with the complaints table.

Every pass recounts from the complaints table instead of adding or
subtracting, so running it twice, late, or concurrently with other passes
on the same category ends in the same counters. That is what lets a failed
pass be parked in the repair queue and replayed later.

Usage:
    from complaintdesk_reconciler import AggregateReconciler
    reconciler = AggregateReconciler(taxonomy, complaints, queue)
    reconciler.reconcile_created(complaint)

Version: 1.0 (October 2026)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from complaintdesk_store import ComplaintStore, ReconcileQueue, TaxonomyStore
from complaintdesk_types import (
    Category,
    Complaint,
    Conflict,
    CountKey,
    NotFound,
    StoreUnavailable,
)

logger = logging.getLogger("cd-reconciler")

# Failures worth retrying; anything else is a bug or a vanished category.
TRANSIENT_ERRORS = (Conflict, StoreUnavailable)


class AggregateReconciler:
    """Recount-based maintenance of taxonomy counters."""

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        complaints: ComplaintStore,
        queue: Optional[ReconcileQueue] = None,
    ):
        self.taxonomy = taxonomy
        self.complaints = complaints
        self.queue = queue

    # ── Single passes ──

    def reconcile(self, key: CountKey, delta: int = 0) -> Optional[Category]:
        """
        Recompute the counters for one (category, subcategory, user) triple.
        Returns the updated category, or None when the category no longer
        exists (nothing left to keep consistent).
        """
        try:
            return self.taxonomy.apply_count_delta(
                key.category, key.sub_category, key.user, delta, self.complaints,
            )
        except NotFound:
            logger.warning(f"Reconcile skipped: category {key.category} no longer exists")
            return None

    def reconcile_created(self, complaint: Complaint) -> Optional[Category]:
        return self.reconcile(CountKey.of(complaint), delta=+1)

    def reconcile_deleted(self, complaint: Complaint) -> Optional[Category]:
        return self.reconcile(CountKey.of(complaint), delta=-1)

    def reconcile_moved(self, old_key: CountKey, new_key: CountKey) -> List[Optional[Category]]:
        """Debit the triple a complaint left and credit the one it joined."""
        results = [self.reconcile(old_key, delta=-1)]
        if new_key != old_key:
            results.append(self.reconcile(new_key, delta=+1))
        return results

    # ── Deferred repair ──

    def defer(self, key: CountKey, reason: str, error: Exception) -> None:
        if self.queue is None:
            logger.error(f"Reconcile for {key} failed and no repair queue is configured: {error}")
            return
        self.queue.push(key, reason, str(error))
        logger.error(f"Reconcile deferred for {key} ({reason}): {error}")

    def reconcile_pending(self, limit: int = 100) -> Dict[str, Any]:
        """Replay queued triples. Entries that fail again stay queued."""
        if self.queue is None:
            return {"processed": 0, "repaired": 0, "failed": 0}
        entries = self.queue.pending(limit)
        repaired = failed = 0
        for entry in entries:
            key = CountKey(entry["category_id"], entry["sub_category_id"], entry["user_id"])
            try:
                self.reconcile(key)
            except TRANSIENT_ERRORS as e:
                failed += 1
                self.queue.mark_failed(entry["queue_id"], str(e))
                logger.warning(f"Queued reconcile for {key} failed again: {e}")
                continue
            self.queue.remove(entry["queue_id"])
            repaired += 1
        if entries:
            logger.info(f"Repair sweep: {repaired} repaired, {failed} still pending")
        return {"processed": len(entries), "repaired": repaired, "failed": failed}

    # ── Whole-taxonomy passes ──

    def reconcile_all(self) -> Dict[str, Any]:
        """Rebuild every counter on every category from the complaints table."""
        rebuilt = 0
        orphaned_subs: List[Dict[str, str]] = []
        for category in self.taxonomy.list_categories():
            try:
                category = self.taxonomy.rebuild_counts(category.category_id, self.complaints)
            except NotFound:
                continue
            rebuilt += 1
            known = {sub.sub_category_id for sub in category.sub_categories}
            for sub_id in sorted(self.complaints.sub_category_counts(category.category_id)):
                if sub_id not in known:
                    orphaned_subs.append({"category_id": category.category_id, "sub_category_id": sub_id})
        if orphaned_subs:
            logger.warning(f"Complaints reference {len(orphaned_subs)} missing subcategories")
        orphaned = sorted(
            self.complaints.category_ids() - {c.category_id for c in self.taxonomy.list_categories()}
        )
        if orphaned:
            logger.warning(f"Complaints reference {len(orphaned)} missing categories: {orphaned[:5]}")
        logger.info(f"Full rebuild: {rebuilt} categories")
        return {
            "categories_rebuilt": rebuilt,
            "orphaned_categories": orphaned,
            "orphaned_sub_categories": orphaned_subs,
        }

    def check_consistency(self) -> Dict[str, Any]:
        """
        Compare stored counters with the complaints table without writing.
        Each finding names the counter, what is stored and what it should be.
        Complaints filed under a subcategory the category no longer holds
        are reported as `orphaned_sub_category`; a rebuild cannot fix those.
        """
        drift: List[Dict[str, Any]] = []
        categories = self.taxonomy.list_categories()
        for category in categories:
            cid = category.category_id
            sub_sum = 0
            for sub in category.sub_categories:
                sub_sum += sub.total_complaints
                actual = self.complaints.count_complaints(cid, sub_category_id=sub.sub_category_id)
                if actual != sub.total_complaints:
                    drift.append({
                        "counter": "sub_category",
                        "category_id": cid,
                        "sub_category_id": sub.sub_category_id,
                        "stored": sub.total_complaints,
                        "actual": actual,
                    })
            if sub_sum != category.total_complaints:
                drift.append({
                    "counter": "category_total",
                    "category_id": cid,
                    "stored": category.total_complaints,
                    "actual": sub_sum,
                })
            actual_total = self.complaints.count_complaints(cid)
            if actual_total != category.total_complaints:
                drift.append({
                    "counter": "category_complaints",
                    "category_id": cid,
                    "stored": category.total_complaints,
                    "actual": actual_total,
                })
            known = {sub.sub_category_id for sub in category.sub_categories}
            for sub_id, count in sorted(self.complaints.sub_category_counts(cid).items()):
                if sub_id not in known:
                    drift.append({
                        "counter": "orphaned_sub_category",
                        "category_id": cid,
                        "sub_category_id": sub_id,
                        "stored": 0,
                        "actual": count,
                    })
            stored_users = {uc.user: uc.count for uc in category.user_counts}
            for user in set(stored_users) | self.complaints.users_in_category(cid):
                actual = self.complaints.count_complaints(cid, user_id=user)
                if stored_users.get(user, 0) != actual:
                    drift.append({
                        "counter": "user_count",
                        "category_id": cid,
                        "user": user,
                        "stored": stored_users.get(user, 0),
                        "actual": actual,
                    })
        pending = self.queue.size() if self.queue is not None else 0
        return {
            "status": "pass" if not drift else "fail",
            "categories_checked": len(categories),
            "drift": drift,
            "pending_repairs": pending,
        }
