"""Maintenance CLI tests."""

from __future__ import annotations

import json

from click.testing import CliRunner

from complaintdesk_maintenance import main
from complaintdesk_reconciler import AggregateReconciler
from complaintdesk_store import ComplaintStore, ReconcileQueue, TaxonomyStore
from complaintdesk_types import CountKey


def _seed(db_path: str):
    taxonomy = TaxonomyStore(db_path)
    complaints = ComplaintStore(db_path)
    category = taxonomy.create_category("Billing")
    category = taxonomy.add_sub_category(category.category_id, "Refund")
    sub_id = category.sub_categories[0].sub_category_id
    complaint = complaints.create(
        "user-alice", "Double charged", "My card was charged twice.", category.category_id, sub_id,
    )
    return category.category_id, CountKey.of(complaint)


class TestMaintenanceCli:
    def test_check_fails_until_reconciled(self, db_path):
        category_id, key = _seed(db_path)
        runner = CliRunner()

        result = runner.invoke(main, ["--db", db_path, "check"], obj={})
        assert result.exit_code == 1
        assert json.loads(result.stdout)["status"] == "fail"

        result = runner.invoke(main, ["--db", db_path, "reconcile-all"], obj={})
        assert result.exit_code == 0
        assert json.loads(result.stdout)["categories_rebuilt"] == 1

        result = runner.invoke(main, ["--db", db_path, "check"], obj={})
        assert result.exit_code == 0
        assert TaxonomyStore(db_path).get_category(category_id).total_complaints == 1

    def test_reconcile_pending(self, db_path):
        _, key = _seed(db_path)
        queue = ReconcileQueue(db_path)
        AggregateReconciler(TaxonomyStore(db_path), ComplaintStore(db_path), queue).defer(
            key, "created", RuntimeError("offline"),
        )

        result = CliRunner().invoke(main, ["--db", db_path, "reconcile-pending"], obj={})
        assert result.exit_code == 0
        assert json.loads(result.stdout)["repaired"] == 1
        assert queue.size() == 0

    def test_backfill_priority(self, db_path):
        _seed(db_path)
        result = CliRunner().invoke(main, ["--db", db_path, "backfill-priority"], obj={})
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"corrected": 0}
