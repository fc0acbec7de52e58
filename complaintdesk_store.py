#!/usr/bin/env python3
"""
ComplaintDesk Persistent Store
===============================
SQLite-backed storage for the category taxonomy and for complaints.

Each category row holds the whole aggregate (subcategories and per-user
counts) as one JSON document plus a `version` column. Every change to a
category is a read-modify-write of that document finished by a write
conditioned on the version it read, retried with jittered backoff when
another writer got there first. No multi-row transactions are needed.

Usage:
    from complaintdesk_store import TaxonomyStore, ComplaintStore
    taxonomy = TaxonomyStore(db_path)
    complaints = ComplaintStore(db_path)

Version: 1.0 (October 2026)
"""

from __future__ import annotations

import json
import logging
import math
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from complaintdesk_types import (
    AIResponse,
    Category,
    Comment,
    Complaint,
    ComplaintPatch,
    ComplaintStatus,
    Conflict,
    CountKey,
    InvalidTransition,
    NotFound,
    PRIORITY_VALUES,
    Principal,
    Priority,
    PreconditionFailed,
    Resolution,
    ShareRecord,
    SortOrder,
    StoreUnavailable,
    SubCategory,
    UserCount,
    ValidationError,
    VALID_STATUS_TRANSITIONS,
    is_allowed,
    authorize,
    new_id,
    utcnow,
)

logger = logging.getLogger("cd-store")


# ============================================================================
# SQLITE CONNECTION
# ============================================================================

DEFAULT_DB_PATH = os.environ.get(
    "CD_DB_PATH",
    str(Path(__file__).parent / "complaintdesk.db"),
)

MIN_TITLE_LENGTH = 5
MIN_DESCRIPTION_LENGTH = 10


def _get_db(db_path: str) -> sqlite3.Connection:
    """Open a connection with WAL mode so readers never block the writer."""
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextmanager
def _db(db_path: str) -> Iterator[sqlite3.Connection]:
    """Commit on success, roll back on any error, always close."""
    conn = None
    try:
        conn = _get_db(db_path)
        yield conn
        conn.commit()
    except sqlite3.Error as e:
        logger.error(f"Database error: {e}")
        if conn:
            conn.rollback()
        raise StoreUnavailable("Database operation failed") from e
    except Exception:
        if conn:
            conn.rollback()
        raise
    finally:
        if conn:
            conn.close()


def _init_db(db_path: str) -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    with _db(db_path) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS categories (
                category_id      TEXT PRIMARY KEY,
                name             TEXT NOT NULL UNIQUE,
                version          INTEGER NOT NULL DEFAULT 0,
                total_complaints INTEGER NOT NULL DEFAULT 0,
                data             TEXT NOT NULL,
                created_at       TEXT NOT NULL,
                updated_at       TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS complaints (
                complaint_id     TEXT PRIMARY KEY,
                user_id          TEXT NOT NULL,
                category_id      TEXT NOT NULL,
                sub_category_id  TEXT NOT NULL,
                status           TEXT NOT NULL DEFAULT 'pending',
                priority         TEXT NOT NULL DEFAULT 'medium',
                priority_value   INTEGER NOT NULL DEFAULT 1,
                title            TEXT NOT NULL,
                description      TEXT NOT NULL,
                version          INTEGER NOT NULL DEFAULT 0,
                data             TEXT NOT NULL,
                created_at       TEXT NOT NULL,
                updated_at       TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS reconcile_queue (
                queue_id         TEXT PRIMARY KEY,
                category_id      TEXT NOT NULL,
                sub_category_id  TEXT NOT NULL,
                user_id          TEXT NOT NULL,
                reason           TEXT NOT NULL,
                attempts         INTEGER NOT NULL DEFAULT 0,
                last_error       TEXT NOT NULL DEFAULT '',
                queued_at        TEXT NOT NULL,
                updated_at       TEXT NOT NULL,
                UNIQUE (category_id, sub_category_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS events (
                event_id    TEXT PRIMARY KEY,
                topic       TEXT NOT NULL,
                payload     TEXT NOT NULL,
                timestamp   TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_complaints_user_status ON complaints(user_id, status);
            CREATE INDEX IF NOT EXISTS idx_complaints_category ON complaints(category_id, sub_category_id);
            CREATE INDEX IF NOT EXISTS idx_complaints_category_user ON complaints(category_id, user_id);
            CREATE INDEX IF NOT EXISTS idx_complaints_created ON complaints(created_at);
            CREATE INDEX IF NOT EXISTS idx_events_topic ON events(topic);
        """)


def backoff_delay(attempt: int, base_delay: float, max_delay: float = 1.0) -> float:
    """Exponential backoff with jitter so competing writers spread out."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay * (0.5 + random.random() * 0.5)


# ============================================================================
# TAXONOMY STORE
# ============================================================================

class TaxonomyStore:
    """
    Owns Category documents and their embedded SubCategory lists.

    All subcategory changes and all counter changes go through `_mutate`,
    the single read / modify / conditional-write path on the category row.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        max_retries: int = 5,
        backoff_base: float = 0.01,
    ):
        self.db_path = db_path
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        _init_db(db_path)

    # ── Reads ──

    def get_category(self, category_id: str) -> Category:
        with _db(self.db_path) as conn:
            row = conn.execute(
                "SELECT data, version FROM categories WHERE category_id = ?",
                (category_id,),
            ).fetchone()
        if not row:
            raise NotFound("Category not found", category_id=category_id)
        category = Category.from_dict(json.loads(row["data"]))
        category.version = row["version"]
        return category

    def list_categories(self) -> List[Category]:
        with _db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT data, version FROM categories ORDER BY created_at ASC, rowid ASC"
            ).fetchall()
        categories = []
        for r in rows:
            category = Category.from_dict(json.loads(r["data"]))
            category.version = r["version"]
            categories.append(category)
        return categories

    def resolve_pair(self, category_id: str, sub_category_id: str) -> Tuple[Category, SubCategory]:
        """Look up a (category, subcategory) pair; NotFound if either is missing."""
        category = self.get_category(category_id)
        sub = category.find_sub_category(sub_category_id)
        if sub is None:
            raise NotFound(
                "Subcategory not found",
                category_id=category_id, sub_category_id=sub_category_id,
            )
        return category, sub

    # ── Category CRUD ──

    def create_category(
        self,
        name: str,
        icon: str = "",
        description: str = "",
        is_frequently_used: bool = False,
    ) -> Category:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Category name is required")
        category = Category(
            name=name,
            icon=icon,
            description=(description or "").strip(),
            is_frequently_used=is_frequently_used,
        )
        try:
            with _db(self.db_path) as conn:
                conn.execute(
                    """INSERT INTO categories
                       (category_id, name, version, total_complaints, data, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        category.category_id,
                        category.name,
                        category.version,
                        category.total_complaints,
                        json.dumps(category.to_dict()),
                        category.created_at,
                        category.updated_at,
                    ),
                )
        except StoreUnavailable as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise Conflict("Category already exists", name=name) from e
            raise
        logger.info(f"Category created: {category.category_id} ({category.name})")
        return category

    def update_category(
        self,
        category_id: str,
        name: Optional[str] = None,
        icon: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Category:
        def apply(category: Category) -> None:
            if name is not None:
                new_name = name.strip()
                if not new_name:
                    raise ValidationError("Category name is required")
                category.name = new_name
            if icon is not None:
                category.icon = icon
            if description is not None:
                category.description = description.strip()

        return self._mutate(category_id, apply, "update_category")

    def delete_category(self, category_id: str, counter: "ComplaintStore") -> None:
        """
        Delete an unused category. Usage is recounted from the complaints
        table, not read from the stored counter, which may lag behind a
        deferred reconcile.
        """
        for attempt in range(self.max_retries):
            category = self.get_category(category_id)
            actual = counter.count_complaints(category_id)
            if actual > 0:
                raise PreconditionFailed(
                    "Cannot delete category with existing complaints",
                    category_id=category_id,
                    total_complaints=actual,
                )
            # a complaint filed after the count blocks the delete
            with _db(self.db_path) as conn:
                cur = conn.execute(
                    """DELETE FROM categories WHERE category_id = ? AND version = ?
                       AND NOT EXISTS (SELECT 1 FROM complaints WHERE category_id = ?)""",
                    (category_id, category.version, category_id),
                )
            if cur.rowcount == 1:
                logger.info(f"Category deleted: {category_id}")
                return
            time.sleep(backoff_delay(attempt, self.backoff_base))
        raise Conflict(
            f"Category {category_id} kept changing; delete abandoned",
            category_id=category_id,
        )

    def toggle_frequently_used(self, category_id: str) -> Category:
        def apply(category: Category) -> None:
            category.is_frequently_used = not category.is_frequently_used

        return self._mutate(category_id, apply, "toggle_frequently_used")

    # ── Subcategory CRUD (always through the owning category) ──

    def add_sub_category(
        self,
        category_id: str,
        name: str,
        icon: str = "",
        description: str = "",
    ) -> Category:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Subcategory name is required")

        def apply(category: Category) -> None:
            if any(s.name == name for s in category.sub_categories):
                raise Conflict(
                    "Subcategory already exists in this category",
                    category_id=category_id, name=name,
                )
            category.sub_categories.append(
                SubCategory(name=name, icon=icon, description=(description or "").strip())
            )

        return self._mutate(category_id, apply, "add_sub_category")

    def update_sub_category(
        self,
        category_id: str,
        sub_category_id: str,
        name: Optional[str] = None,
        icon: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Category:
        def apply(category: Category) -> None:
            sub = category.find_sub_category(sub_category_id)
            if sub is None:
                raise NotFound("Subcategory not found", sub_category_id=sub_category_id)
            if name is not None:
                new_name = name.strip()
                if not new_name:
                    raise ValidationError("Subcategory name is required")
                if any(s.name == new_name and s is not sub for s in category.sub_categories):
                    raise Conflict(
                        "Subcategory already exists in this category",
                        category_id=category_id, name=new_name,
                    )
                sub.name = new_name
            if icon is not None:
                sub.icon = icon
            if description is not None:
                sub.description = description.strip()
            sub.updated_at = utcnow()

        return self._mutate(category_id, apply, "update_sub_category")

    def delete_sub_category(
        self,
        category_id: str,
        sub_category_id: str,
        counter: "ComplaintStore",
    ) -> Category:
        def apply(category: Category) -> None:
            sub = category.find_sub_category(sub_category_id)
            if sub is None:
                raise NotFound("Subcategory not found", sub_category_id=sub_category_id)
            actual = counter.count_complaints(category_id, sub_category_id=sub_category_id)
            if actual > 0:
                raise PreconditionFailed(
                    "Cannot delete subcategory with existing complaints",
                    sub_category_id=sub_category_id,
                    total_complaints=actual,
                )
            category.sub_categories = [
                s for s in category.sub_categories if s.sub_category_id != sub_category_id
            ]
            category.calculate_total_complaints()

        return self._mutate(
            category_id,
            apply,
            "delete_sub_category",
            unless_used=sub_category_id,
        )

    # ── Counters ──

    def apply_count_delta(
        self,
        category_id: str,
        sub_category_id: str,
        user_id: str,
        delta: int,
        counter: "ComplaintStore",
    ) -> Category:
        """
        Recompute the subcategory, category and per-user counters touched
        by a membership change of `delta` on (category, subcategory, user).

        Counts come from `counter` (ground truth), never from `delta`; the
        delta only names which counters move and is logged. Counting
        happens after the version read inside each attempt, so the write
        that finally lands reflects every complaint stored before it.
        """
        def apply(category: Category) -> None:
            sub_count = counter.count_complaints(category_id, sub_category_id=sub_category_id)
            user_count = counter.count_complaints(category_id, user_id=user_id)

            sub = category.find_sub_category(sub_category_id)
            if sub is None:
                logger.warning(
                    f"Counter update for missing subcategory {sub_category_id} "
                    f"in {category_id}; user count only"
                )
            else:
                sub.total_complaints = sub_count
                sub.updated_at = utcnow()

            entry = category.find_user_count(user_id)
            if entry is None:
                if user_count > 0:
                    category.user_counts.append(UserCount(user=user_id, count=user_count))
            else:
                entry.count = user_count

            category.calculate_total_complaints()

        category = self._mutate(category_id, apply, "apply_count_delta")
        logger.info(
            f"Counters reconciled: {category_id}/{sub_category_id} user={user_id} "
            f"delta={delta:+d} total={category.total_complaints}"
        )
        return category

    def rebuild_counts(self, category_id: str, counter: "ComplaintStore") -> Category:
        """Recompute every counter on one category from the complaints table."""
        def apply(category: Category) -> None:
            for sub in category.sub_categories:
                sub.total_complaints = counter.count_complaints(
                    category_id, sub_category_id=sub.sub_category_id,
                )
            users = {uc.user for uc in category.user_counts} | counter.users_in_category(category_id)
            counts = {u: counter.count_complaints(category_id, user_id=u) for u in users}
            known = {uc.user for uc in category.user_counts}
            for uc in category.user_counts:
                uc.count = counts[uc.user]
            for u in sorted(users - known):
                if counts[u] > 0:
                    category.user_counts.append(UserCount(user=u, count=counts[u]))
            category.calculate_total_complaints()

        return self._mutate(category_id, apply, "rebuild_counts")

    # ── Optimistic write path ──

    def _mutate(
        self,
        category_id: str,
        apply: Callable[[Category], None],
        op: str,
        unless_used: Optional[str] = None,
    ) -> Category:
        """
        Read, apply, conditional write; retried on version clash. With
        `unless_used`, the write also fails while any complaint references
        that subcategory, so the next attempt's recount sees it.
        """
        for attempt in range(self.max_retries):
            category = self.get_category(category_id)
            apply(category)
            if self._write_if_unchanged(category, unless_used):
                return category
            delay = backoff_delay(attempt, self.backoff_base)
            logger.warning(
                f"{op}: version clash on {category_id} "
                f"(attempt {attempt + 1}/{self.max_retries}), retrying in {delay:.3f}s"
            )
            time.sleep(delay)
        raise Conflict(
            f"Category {category_id} changed concurrently; gave up after "
            f"{self.max_retries} attempts",
            category_id=category_id, operation=op,
        )

    def _write_if_unchanged(self, category: Category, unless_used: Optional[str] = None) -> bool:
        expected = category.version
        category.version = expected + 1
        category.updated_at = utcnow()
        query = """UPDATE categories
                   SET name = ?, version = ?, total_complaints = ?, data = ?, updated_at = ?
                   WHERE category_id = ? AND version = ?"""
        params: list = [
            category.name,
            category.version,
            category.total_complaints,
            json.dumps(category.to_dict()),
            category.updated_at,
            category.category_id,
            expected,
        ]
        if unless_used is not None:
            query += """ AND NOT EXISTS (SELECT 1 FROM complaints
                                         WHERE category_id = ? AND sub_category_id = ?)"""
            params.extend([category.category_id, unless_used])
        try:
            with _db(self.db_path) as conn:
                cur = conn.execute(query, params)
        except StoreUnavailable as e:
            category.version = expected
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise Conflict("Category name already exists", name=category.name) from e
            raise
        if cur.rowcount != 1:
            category.version = expected
            return False
        return True


# ============================================================================
# COMPLAINT STORE
# ============================================================================

_SORT_SQL: Dict[str, str] = {
    SortOrder.NEWEST.value: "created_at DESC, rowid DESC",
    SortOrder.OLDEST.value: "created_at ASC, rowid ASC",
    SortOrder.PRIORITY_HIGH.value: "priority_value DESC, created_at DESC, rowid DESC",
    SortOrder.PRIORITY_LOW.value: "priority_value ASC, created_at DESC, rowid DESC",
    SortOrder.STATUS.value: "status ASC, created_at DESC, rowid DESC",
}


def _validate_text(errors: List[Dict[str, str]], field_name: str, value: Optional[str], min_len: int) -> str:
    text = (value or "").strip()
    if len(text) < min_len:
        errors.append({
            "field": field_name,
            "message": f"{field_name} must be at least {min_len} characters",
        })
    return text


def _escape_like(text: str) -> str:
    """Make `%` and `_` match literally under LIKE ... ESCAPE '\\'."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _parse_priority(errors: List[Dict[str, str]], value: Any) -> Priority:
    try:
        return Priority(value)
    except ValueError:
        errors.append({
            "field": "priority",
            "message": f"priority must be one of: {', '.join(PRIORITY_VALUES)}",
        })
        return Priority.MEDIUM


class ComplaintStore:
    """
    Owns Complaint documents. Each complaint is independent, so writes use
    a per-row version check only to keep concurrent appends (comments,
    shares) from overwriting each other.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, max_retries: int = 5, backoff_base: float = 0.01):
        self.db_path = db_path
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        _init_db(db_path)

    # ── Create ──

    @staticmethod
    def validate_new(
        title: Optional[str],
        description: Optional[str],
        category: Optional[str],
        sub_category: Optional[str],
        priority: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Check a new complaint's fields; returns them cleaned or raises ValidationError."""
        errors: List[Dict[str, str]] = []
        cleaned: Dict[str, Any] = {
            "title": _validate_text(errors, "title", title, MIN_TITLE_LENGTH),
            "description": _validate_text(errors, "description", description, MIN_DESCRIPTION_LENGTH),
            "category": (category or "").strip(),
            "sub_category": (sub_category or "").strip(),
        }
        if not cleaned["category"]:
            errors.append({"field": "category", "message": "category is required"})
        if not cleaned["sub_category"]:
            errors.append({"field": "sub_category", "message": "sub_category is required"})
        cleaned["priority"] = _parse_priority(errors, priority or Priority.MEDIUM.value)
        if errors:
            raise ValidationError("Complaint validation failed", errors=errors)
        return cleaned

    def create(
        self,
        user_id: str,
        title: str,
        description: str,
        category: str,
        sub_category: str,
        priority: Optional[str] = None,
        attachments: Optional[List[str]] = None,
    ) -> Complaint:
        fields = self.validate_new(title, description, category, sub_category, priority)
        complaint = Complaint(
            user=user_id,
            attachments=list(attachments or []),
            **fields,
        )
        complaint.sync_priority_value()
        with _db(self.db_path) as conn:
            conn.execute(
                """INSERT INTO complaints
                   (complaint_id, user_id, category_id, sub_category_id, status, priority,
                    priority_value, title, description, version, data, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    complaint.complaint_id,
                    complaint.user,
                    complaint.category,
                    complaint.sub_category,
                    complaint.status.value,
                    complaint.priority.value,
                    complaint.priority_value,
                    complaint.title,
                    complaint.description,
                    complaint.version,
                    json.dumps(complaint.to_dict()),
                    complaint.created_at,
                    complaint.updated_at,
                ),
            )
        logger.info(f"Complaint stored: {complaint.complaint_id} by {user_id}")
        return complaint

    # ── Reads ──

    def get(self, complaint_id: str) -> Complaint:
        """Unscoped read for internal callers."""
        with _db(self.db_path) as conn:
            row = conn.execute(
                "SELECT data, version FROM complaints WHERE complaint_id = ?", (complaint_id,)
            ).fetchone()
        if not row:
            raise NotFound("Complaint not found", complaint_id=complaint_id)
        complaint = Complaint.from_dict(json.loads(row["data"]))
        complaint.version = row["version"]
        return complaint

    def find_by_id(self, complaint_id: str, principal: Principal) -> Complaint:
        complaint = self.get(complaint_id)
        if not is_allowed("complaint.read", principal, complaint.user):
            # existence is not revealed to non-owners
            raise NotFound("Complaint not found", complaint_id=complaint_id)
        return complaint

    def count_complaints(
        self,
        category_id: str,
        sub_category_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        query = "SELECT COUNT(*) FROM complaints WHERE category_id = ?"
        params: list = [category_id]
        if sub_category_id is not None:
            query += " AND sub_category_id = ?"
            params.append(sub_category_id)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with _db(self.db_path) as conn:
            return conn.execute(query, params).fetchone()[0]

    def count_all(self) -> int:
        with _db(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM complaints").fetchone()[0]

    def users_in_category(self, category_id: str) -> Set[str]:
        with _db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT DISTINCT user_id FROM complaints WHERE category_id = ?", (category_id,)
            ).fetchall()
        return {r["user_id"] for r in rows}

    def sub_category_counts(self, category_id: str) -> Dict[str, int]:
        """Complaint count per subcategory id referenced under one category."""
        with _db(self.db_path) as conn:
            rows = conn.execute(
                """SELECT sub_category_id, COUNT(*) AS n FROM complaints
                   WHERE category_id = ? GROUP BY sub_category_id""",
                (category_id,),
            ).fetchall()
        return {r["sub_category_id"]: r["n"] for r in rows}

    def category_ids(self) -> Set[str]:
        with _db(self.db_path) as conn:
            rows = conn.execute("SELECT DISTINCT category_id FROM complaints").fetchall()
        return {r["category_id"] for r in rows}

    def list_complaints(
        self,
        principal: Principal,
        status_filter: Optional[str] = None,
        priority: Optional[str] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
        sort: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        where = "WHERE 1=1"
        params: list = []
        if not is_allowed("complaint.list", principal):
            where += " AND user_id = ?"
            params.append(principal.id)
        if status_filter and status_filter != "all":
            where += " AND status = ?"
            params.append(status_filter)
        if priority:
            where += " AND priority = ?"
            params.append(priority)
        if category:
            where += " AND category_id = ?"
            params.append(category)
        if search:
            where += " AND (LOWER(title) LIKE ? ESCAPE '\\' OR LOWER(description) LIKE ? ESCAPE '\\')"
            needle = f"%{_escape_like(search.lower())}%"
            params.extend([needle, needle])
        order = _SORT_SQL.get(sort or SortOrder.NEWEST.value, _SORT_SQL[SortOrder.NEWEST.value])

        with _db(self.db_path) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM complaints {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT data, version FROM complaints {where} ORDER BY {order} LIMIT ? OFFSET ?",
                params + [limit, (page - 1) * limit],
            ).fetchall()
        complaints = []
        for r in rows:
            data = json.loads(r["data"])
            data["version"] = r["version"]
            complaints.append(data)
        return {
            "complaints": complaints,
            "current_page": page,
            "total_pages": math.ceil(total / limit) if total else 0,
            "total_complaints": total,
        }

    def stats(self, user_id: str) -> Dict[str, Any]:
        """Per-status totals and most-used categories for one filer."""
        with _db(self.db_path) as conn:
            by_status = {
                r["status"]: r["n"]
                for r in conn.execute(
                    "SELECT status, COUNT(*) AS n FROM complaints WHERE user_id = ? GROUP BY status",
                    (user_id,),
                ).fetchall()
            }
            frequent = conn.execute(
                """SELECT category_id, COUNT(*) AS n FROM complaints WHERE user_id = ?
                   GROUP BY category_id ORDER BY n DESC, category_id ASC LIMIT 5""",
                (user_id,),
            ).fetchall()
        return {
            "stats": {
                "total": sum(by_status.values()),
                "pending": by_status.get(ComplaintStatus.PENDING.value, 0),
                "in_progress": by_status.get(ComplaintStatus.IN_PROGRESS.value, 0),
                "resolved": by_status.get(ComplaintStatus.RESOLVED.value, 0),
                "rejected": by_status.get(ComplaintStatus.REJECTED.value, 0),
            },
            "frequent_categories": [
                {"category": r["category_id"], "count": r["n"]} for r in frequent
            ],
        }

    def history(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        with _db(self.db_path) as conn:
            rows = conn.execute(
                """SELECT complaint_id, title, status, updated_at FROM complaints
                   WHERE user_id = ? ORDER BY updated_at DESC, rowid DESC LIMIT ?""",
                (user_id, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    # ── Mutations ──

    def update(
        self,
        complaint_id: str,
        principal: Principal,
        patch: ComplaintPatch,
    ) -> Tuple[Complaint, Optional[CountKey]]:
        """
        Apply a filer's patch. Returns the updated complaint and, when the
        patch moved it to another (category, subcategory), the count key it
        left so the caller can reconcile both sides.
        """
        if patch.is_empty():
            raise ValidationError("Nothing to update")
        errors: List[Dict[str, str]] = []
        title = description = None
        if patch.title is not None:
            title = _validate_text(errors, "title", patch.title, MIN_TITLE_LENGTH)
        if patch.description is not None:
            description = _validate_text(errors, "description", patch.description, MIN_DESCRIPTION_LENGTH)
        if patch.moves and not ((patch.category or "").strip() and (patch.sub_category or "").strip()):
            errors.append({
                "field": "category",
                "message": "category and sub_category must be changed together",
            })
        level = _parse_priority(errors, patch.priority) if patch.priority is not None else None
        if errors:
            raise ValidationError("Complaint validation failed", errors=errors)

        previous: Dict[str, Optional[CountKey]] = {"key": None}

        def apply(complaint: Complaint) -> None:
            authorize("complaint.update", principal, complaint.user)
            if complaint.is_terminal:
                raise InvalidTransition(
                    f"Complaint is {ComplaintStatus(complaint.status).value}; edits are closed",
                    complaint_id=complaint_id,
                )
            if title is not None:
                complaint.title = title
            if description is not None:
                complaint.description = description
            if level is not None:
                complaint.priority = level
            if patch.moves:
                old_key = CountKey.of(complaint)
                complaint.category = patch.category.strip()
                complaint.sub_category = patch.sub_category.strip()
                previous["key"] = old_key if old_key != CountKey.of(complaint) else None
            complaint.sync_priority_value()

        complaint = self._rewrite(complaint_id, apply, "update")
        return complaint, previous["key"]

    def transition_status(
        self,
        complaint_id: str,
        principal: Principal,
        new_status: str,
        resolution: Optional[str] = None,
    ) -> Tuple[Complaint, str]:
        """Move along the status state machine. Returns (complaint, old_status)."""
        try:
            target = ComplaintStatus(new_status)
        except ValueError:
            raise ValidationError(
                f"status must be one of: {', '.join(s.value for s in ComplaintStatus)}"
            )
        authorize("complaint.transition", principal)
        resolution_text = (resolution or "").strip()

        old: Dict[str, str] = {}

        def apply(complaint: Complaint) -> None:
            current = ComplaintStatus(complaint.status).value
            allowed = VALID_STATUS_TRANSITIONS.get(current, set())
            if target.value not in allowed:
                raise InvalidTransition(
                    f"Cannot transition from '{current}' to '{target.value}'",
                    current_status=current,
                    allowed_transitions=sorted(allowed),
                )
            if target == ComplaintStatus.RESOLVED and not resolution_text:
                raise ValidationError("A resolution is required to resolve a complaint")
            old["status"] = current
            complaint.status = target
            if target == ComplaintStatus.RESOLVED:
                complaint.resolution = Resolution(text=resolution_text, by=principal.id)

        complaint = self._rewrite(complaint_id, apply, "transition_status")
        return complaint, old["status"]

    def append_comment(self, complaint_id: str, principal: Principal, text: str) -> Comment:
        body = (text or "").strip()
        if not body:
            raise ValidationError("Comment text is required")
        comment = Comment(text=body, user=principal.id)

        def apply(complaint: Complaint) -> None:
            authorize("complaint.comment", principal, complaint.user)
            complaint.comments.append(comment)

        self._rewrite(complaint_id, apply, "append_comment")
        return comment

    def record_share(self, complaint_id: str, principal: Principal, channel: str, target: str) -> Complaint:
        def apply(complaint: Complaint) -> None:
            authorize("complaint.share", principal, complaint.user)
            complaint.shared_on.append(ShareRecord(channel=channel, target=target, by=principal.id))

        return self._rewrite(complaint_id, apply, "record_share")

    def set_ai_response(self, complaint_id: str, ai_response: AIResponse) -> Complaint:
        def apply(complaint: Complaint) -> None:
            complaint.ai_response = ai_response

        return self._rewrite(complaint_id, apply, "set_ai_response")

    def delete(self, complaint_id: str, principal: Principal) -> Complaint:
        """
        Hard-delete. Returns the removed record so its counters can be
        reconciled; the delete only lands on the version that was read, so
        the returned category pair is the one the row actually held.
        """
        for attempt in range(self.max_retries):
            complaint = self.get(complaint_id)
            authorize("complaint.delete", principal, complaint.user)
            with _db(self.db_path) as conn:
                cur = conn.execute(
                    "DELETE FROM complaints WHERE complaint_id = ? AND version = ?",
                    (complaint_id, complaint.version),
                )
            if cur.rowcount == 1:
                logger.info(f"Complaint deleted: {complaint_id} by {principal.id}")
                return complaint
            time.sleep(backoff_delay(attempt, self.backoff_base))
        raise Conflict(
            f"Complaint {complaint_id} changed concurrently; delete abandoned",
            complaint_id=complaint_id,
        )

    def backfill_priority_values(self) -> int:
        """Recompute priority_value from priority on every stored complaint."""
        fixed = 0
        with _db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT complaint_id, priority, priority_value, data FROM complaints"
            ).fetchall()
            for r in rows:
                data = json.loads(r["data"])
                expected = PRIORITY_VALUES.get(r["priority"], 1)
                if r["priority_value"] == expected and data.get("priority_value") == expected:
                    continue
                data["priority_value"] = expected
                conn.execute(
                    "UPDATE complaints SET priority_value = ?, data = ? WHERE complaint_id = ?",
                    (expected, json.dumps(data), r["complaint_id"]),
                )
                fixed += 1
        logger.info(f"Priority backfill: {fixed} complaint(s) corrected")
        return fixed

    # ── Optimistic write path ──

    def _rewrite(self, complaint_id: str, apply: Callable[[Complaint], None], op: str) -> Complaint:
        for attempt in range(self.max_retries):
            complaint = self.get(complaint_id)
            expected = complaint.version
            apply(complaint)
            complaint.version = expected + 1
            complaint.updated_at = utcnow()
            with _db(self.db_path) as conn:
                cur = conn.execute(
                    """UPDATE complaints
                       SET category_id = ?, sub_category_id = ?, status = ?, priority = ?,
                           priority_value = ?, title = ?, description = ?, version = ?,
                           data = ?, updated_at = ?
                       WHERE complaint_id = ? AND version = ?""",
                    (
                        complaint.category,
                        complaint.sub_category,
                        ComplaintStatus(complaint.status).value,
                        Priority(complaint.priority).value,
                        complaint.priority_value,
                        complaint.title,
                        complaint.description,
                        complaint.version,
                        json.dumps(complaint.to_dict()),
                        complaint.updated_at,
                        complaint_id,
                        expected,
                    ),
                )
            if cur.rowcount == 1:
                return complaint
            time.sleep(backoff_delay(attempt, self.backoff_base))
        raise Conflict(
            f"Complaint {complaint_id} changed concurrently; {op} abandoned",
            complaint_id=complaint_id,
        )


# ============================================================================
# RECONCILE QUEUE & EVENT LOG
# ============================================================================

class ReconcileQueue:
    """Count keys whose counters could not be reconciled in-line."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        _init_db(db_path)

    def push(self, key: CountKey, reason: str, error: str = "") -> None:
        now = utcnow()
        with _db(self.db_path) as conn:
            conn.execute(
                """INSERT INTO reconcile_queue
                   (queue_id, category_id, sub_category_id, user_id, reason, attempts,
                    last_error, queued_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
                   ON CONFLICT (category_id, sub_category_id, user_id)
                   DO UPDATE SET reason = excluded.reason, last_error = excluded.last_error,
                                 updated_at = excluded.updated_at""",
                (new_id("rq"), key.category, key.sub_category, key.user, reason, error, now, now),
            )

    def pending(self, limit: int = 100) -> List[Dict[str, Any]]:
        with _db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM reconcile_queue ORDER BY queued_at ASC LIMIT ?", (limit,)
            ).fetchall()
        return [dict(r) for r in rows]

    def size(self) -> int:
        with _db(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM reconcile_queue").fetchone()[0]

    def mark_failed(self, queue_id: str, error: str) -> None:
        with _db(self.db_path) as conn:
            conn.execute(
                """UPDATE reconcile_queue SET attempts = attempts + 1, last_error = ?, updated_at = ?
                   WHERE queue_id = ?""",
                (error, utcnow(), queue_id),
            )

    def remove(self, queue_id: str) -> None:
        with _db(self.db_path) as conn:
            conn.execute("DELETE FROM reconcile_queue WHERE queue_id = ?", (queue_id,))


class EventLog:
    """Append-only record of published notifications."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        _init_db(db_path)

    def publish(self, topic: str, payload: Dict[str, Any]) -> str:
        eid = new_id("evt")
        with _db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO events (event_id, topic, payload, timestamp) VALUES (?, ?, ?, ?)",
                (eid, topic, json.dumps(payload), utcnow()),
            )
        logger.info(f"Event published: {topic} -> {eid}")
        return eid

    def list_events(self, topic: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = "SELECT * FROM events"
        params: list = []
        if topic:
            query += " WHERE topic = ?"
            params.append(topic)
        query += " ORDER BY rowid DESC LIMIT ?"
        params.append(limit)
        with _db(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "topic": r["topic"],
                "payload": json.loads(r["payload"]),
                "timestamp": r["timestamp"],
            }
            for r in rows
        ]
