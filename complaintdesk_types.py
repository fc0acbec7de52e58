#!/usr/bin/env python3
"""
ComplaintDesk — Type Definitions
=================================
Enums, data objects, the complaint status state machine, the error
hierarchy and the authorization policy table shared by every
ComplaintDesk module.

Usage:
    from complaintdesk_types import Complaint, Category, ComplaintStatus, ...

Version: 1.0 (October 2026)
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def utcnow() -> str:
    """ISO-8601 UTC timestamp used for every stored date."""
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ============================================================================
# ENUMS
# ============================================================================

class ComplaintStatus(str, Enum):
    """Complaint lifecycle status."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class Priority(str, Enum):
    """Complaint priority as chosen by the filer."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class NotifyEvent(str, Enum):
    """Event kinds handed to the notifier."""
    CREATED = "created"
    STATUS_CHANGED = "statusChanged"
    NEW_COMMENT = "newComment"
    SHARED = "shared"


class SortOrder(str, Enum):
    """Sort keys accepted by the complaint listing."""
    NEWEST = "newest"
    OLDEST = "oldest"
    PRIORITY_HIGH = "priority-high"
    PRIORITY_LOW = "priority-low"
    STATUS = "status"


class SocialPlatform(str, Enum):
    TWITTER = "twitter"
    FACEBOOK = "facebook"
    LINKEDIN = "linkedin"


class Access(str, Enum):
    """Outcome of an authorization policy lookup."""
    ANY = "any"
    OWNER = "owner"
    DENY = "deny"


# priority_value is a pure function of priority; never stored independently
PRIORITY_VALUES: Dict[str, int] = {
    Priority.LOW.value: 0,
    Priority.MEDIUM.value: 1,
    Priority.HIGH.value: 2,
}


def priority_value(priority: str) -> int:
    return PRIORITY_VALUES.get(priority, PRIORITY_VALUES[Priority.MEDIUM.value])


# Valid status transitions: from_status → set of allowed to_statuses.
# resolved and rejected are terminal.
VALID_STATUS_TRANSITIONS: Dict[str, Set[str]] = {
    "pending":     {"in-progress", "rejected"},
    "in-progress": {"resolved", "rejected"},
    "resolved":    set(),
    "rejected":    set(),
}

TERMINAL_STATUSES: Set[str] = {
    s for s, allowed in VALID_STATUS_TRANSITIONS.items() if not allowed
}


# ============================================================================
# ERRORS
# ============================================================================

class DeskError(Exception):
    """Base error. `code` is the machine-readable tag surfaced to callers."""
    code = "ERROR"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> Dict[str, Any]:
        detail = {"code": self.code, "message": self.message}
        detail.update(self.context)
        return detail


class ValidationError(DeskError):
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFound(DeskError):
    code = "NOT_FOUND"
    http_status = 404


class Forbidden(DeskError):
    code = "FORBIDDEN"
    http_status = 403


class Conflict(DeskError):
    code = "CONFLICT"
    http_status = 409


class PreconditionFailed(DeskError):
    code = "PRECONDITION_FAILED"
    http_status = 412


class InvalidTransition(DeskError):
    code = "INVALID_TRANSITION"
    http_status = 409


class UploadFailed(DeskError):
    code = "UPLOAD_FAILED"
    http_status = 502


class StoreUnavailable(DeskError):
    """Transient persistence failure; safe to retry."""
    code = "STORE_UNAVAILABLE"
    http_status = 503


# ============================================================================
# CORE DATA OBJECTS — Identity
# ============================================================================

@dataclass(frozen=True)
class Principal:
    """Authenticated caller as forwarded by the upstream auth layer."""
    id: str
    role: Role = Role.USER
    is_verified: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# ============================================================================
# CORE DATA OBJECTS — Taxonomy
# ============================================================================

@dataclass
class SubCategory:
    """Embedded in exactly one Category; never stored on its own."""
    sub_category_id: str = field(default_factory=lambda: new_id("sub"))
    name: str = ""
    icon: str = ""
    description: str = ""
    total_complaints: int = 0
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)


@dataclass
class UserCount:
    user: str
    count: int = 0


@dataclass
class Category:
    """
    Taxonomy aggregate root. Owns its subcategories and per-user counts;
    every change to either goes through one conditional write of the
    whole document, guarded by `version`.
    """
    category_id: str = field(default_factory=lambda: new_id("cat"))
    name: str = ""
    icon: str = ""
    description: str = ""
    is_frequently_used: bool = False
    sub_categories: List[SubCategory] = field(default_factory=list)
    total_complaints: int = 0
    user_counts: List[UserCount] = field(default_factory=list)
    version: int = 0
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def find_sub_category(self, sub_category_id: str) -> Optional[SubCategory]:
        for sub in self.sub_categories:
            if sub.sub_category_id == sub_category_id:
                return sub
        return None

    def find_user_count(self, user_id: str) -> Optional[UserCount]:
        for uc in self.user_counts:
            if uc.user == user_id:
                return uc
        return None

    def calculate_total_complaints(self) -> int:
        self.total_complaints = sum(s.total_complaints for s in self.sub_categories)
        return self.total_complaints

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Category":
        data = dict(data)
        data["sub_categories"] = [SubCategory(**s) for s in data.get("sub_categories", [])]
        data["user_counts"] = [UserCount(**u) for u in data.get("user_counts", [])]
        return cls(**data)


# ============================================================================
# CORE DATA OBJECTS — Complaints
# ============================================================================

@dataclass
class Resolution:
    text: str
    by: str
    date: str = field(default_factory=utcnow)


@dataclass
class Comment:
    text: str
    user: str
    created_at: str = field(default_factory=utcnow)


@dataclass
class ShareRecord:
    """One entry of the share history. `target` is an address or platform."""
    channel: str
    target: str
    by: str
    date: str = field(default_factory=utcnow)


@dataclass
class AIResponse:
    category: str = "uncategorized"
    suggestion: str = ""
    priority: Optional[str] = None
    confidence: float = 0.0


@dataclass
class Complaint:
    """A filed complaint. `user`, `created_at` and the id never change."""
    complaint_id: str = field(default_factory=lambda: new_id("cmp"))
    user: str = ""
    title: str = ""
    description: str = ""
    category: str = ""
    sub_category: str = ""
    status: ComplaintStatus = ComplaintStatus.PENDING
    priority: Priority = Priority.MEDIUM
    priority_value: int = 1
    attachments: List[str] = field(default_factory=list)
    ai_response: Optional[AIResponse] = None
    resolution: Optional[Resolution] = None
    comments: List[Comment] = field(default_factory=list)
    shared_on: List[ShareRecord] = field(default_factory=list)
    version: int = 0
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def sync_priority_value(self) -> int:
        self.priority_value = priority_value(Priority(self.priority).value)
        return self.priority_value

    @property
    def is_terminal(self) -> bool:
        return ComplaintStatus(self.status).value in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = ComplaintStatus(self.status).value
        data["priority"] = Priority(self.priority).value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Complaint":
        data = dict(data)
        data["status"] = ComplaintStatus(data.get("status", "pending"))
        data["priority"] = Priority(data.get("priority", "medium"))
        if data.get("ai_response"):
            data["ai_response"] = AIResponse(**data["ai_response"])
        if data.get("resolution"):
            data["resolution"] = Resolution(**data["resolution"])
        data["comments"] = [Comment(**c) for c in data.get("comments", [])]
        data["shared_on"] = [ShareRecord(**s) for s in data.get("shared_on", [])]
        return cls(**data)


@dataclass
class ComplaintPatch:
    """
    Fields a filer may change on an open complaint. Anything not listed
    here (status, resolution, owner, timestamps) has its own operation.
    `category` and `sub_category` travel together: moving a complaint
    always names the full destination pair.
    """
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None
    priority: Optional[Priority] = None

    def is_empty(self) -> bool:
        return all(v is None for v in (
            self.title, self.description, self.category, self.sub_category, self.priority,
        ))

    @property
    def moves(self) -> bool:
        return self.category is not None or self.sub_category is not None


@dataclass(frozen=True)
class CountKey:
    """The (category, sub_category, user) triple a complaint contributes to."""
    category: str
    sub_category: str
    user: str

    @classmethod
    def of(cls, complaint: Complaint) -> "CountKey":
        return cls(complaint.category, complaint.sub_category, complaint.user)


# ============================================================================
# AUTHORIZATION POLICY
# ============================================================================

AUTH_POLICY: Dict[str, Dict[Role, Access]] = {
    "complaint.create":      {Role.USER: Access.ANY,   Role.ADMIN: Access.ANY},
    "complaint.read":        {Role.USER: Access.OWNER, Role.ADMIN: Access.ANY},
    "complaint.list":        {Role.USER: Access.OWNER, Role.ADMIN: Access.ANY},
    "complaint.update":      {Role.USER: Access.OWNER, Role.ADMIN: Access.OWNER},
    "complaint.delete":      {Role.USER: Access.OWNER, Role.ADMIN: Access.OWNER},
    "complaint.transition":  {Role.USER: Access.DENY,  Role.ADMIN: Access.ANY},
    "complaint.comment":     {Role.USER: Access.OWNER, Role.ADMIN: Access.OWNER},
    "complaint.share":       {Role.USER: Access.OWNER, Role.ADMIN: Access.ANY},
    "taxonomy.read":         {Role.USER: Access.ANY,   Role.ADMIN: Access.ANY},
    "taxonomy.write":        {Role.USER: Access.DENY,  Role.ADMIN: Access.ANY},
    "maintenance.reconcile": {Role.USER: Access.DENY,  Role.ADMIN: Access.ANY},
}


def access_for(operation: str, principal: Principal) -> Access:
    rules = AUTH_POLICY.get(operation)
    if rules is None:
        raise KeyError(f"Unknown operation: {operation}")
    return rules.get(Role(principal.role), Access.DENY)


def is_allowed(operation: str, principal: Principal, owner_id: Optional[str] = None) -> bool:
    """Pure policy check. OWNER rules need `owner_id`; without it they deny."""
    access = access_for(operation, principal)
    if access == Access.ANY:
        return True
    if access == Access.OWNER:
        return owner_id is not None and owner_id == principal.id
    return False


def authorize(operation: str, principal: Principal, owner_id: Optional[str] = None) -> None:
    if not is_allowed(operation, principal, owner_id):
        raise Forbidden(
            f"Not authorized to perform {operation}",
            operation=operation,
        )
