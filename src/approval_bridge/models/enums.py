"""Shared enums for approval bridge models."""

from __future__ import annotations

from enum import Enum


class RequestStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class RuleScope(str, Enum):
    ALWAYS = "always"
    PROJECT = "project"


class AlertKind(str, Enum):
    AUTHORIZATION = "authorization"
    TASK_COMPLETE = "task_complete"


class CardType(str, Enum):
    TASK_COMPLETE = "task_complete"
    AUTHORIZATION_REQUIRED = "authorization_required"
    AUTHORIZATION_RESOLVED = "authorization_resolved"
    NOTIFICATION = "notification"


class DeliveryMode(str, Enum):
    """How the chat platform expects a card-action acknowledgment."""

    SYNC = "sync"
    PUSH = "push"


class HookProtocol(str, Enum):
    PRE_TOOL_USE = "PreToolUse"
    PERMISSION_REQUEST = "PermissionRequest"


class CardActionOutcome(str, Enum):
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    REPLAYED = "replayed"
    EXPIRED = "expired"
    RESOLVED = "resolved"
