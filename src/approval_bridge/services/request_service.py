"""In-memory authorization request store with lazy expiry."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from approval_bridge.models.authorization import (
    AuthorizationRequest,
    ExternalMessageRef,
    parse_tool_input,
)
from approval_bridge.models.enums import Decision, RequestStatus

LOG = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


class AuthorizationRequestStore:
    """Holds pending, resolved and expired requests for the lifetime of the process.

    Nothing is persisted: after a restart unknown ids must be treated by
    callers exactly like expired ones.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl_seconds
        self.clock = clock
        self._requests: Dict[str, AuthorizationRequest] = {}
        self._lock = threading.Lock()

    def create(
        self,
        session_id: str,
        tool: str,
        tool_input: Any,
        options: List[str],
        command: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> AuthorizationRequest:
        request = AuthorizationRequest(
            id=str(uuid.uuid4()),
            session_id=session_id,
            tool=tool,
            tool_input=parse_tool_input(tool, tool_input),
            command=command,
            options=list(options),
            cwd=cwd,
            created_at=self.clock(),
        )
        with self._lock:
            self._requests[request.id] = request
        LOG.info(
            "auth_request_created request_id=%s tool=%s session_id=%s command=%.100s",
            request.id,
            tool,
            session_id,
            command or "",
        )
        return request

    def get(self, request_id: str) -> Optional[AuthorizationRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                return None
            if request.status == RequestStatus.PENDING and self.clock() - request.created_at > self.ttl:
                request.status = RequestStatus.EXPIRED
                LOG.warning("auth_request_expired request_id=%s tool=%s", request_id, request.tool)
            return request

    def resolve(self, request_id: str, decision: Decision, reason: str) -> Optional[AuthorizationRequest]:
        request, _ = self.resolve_transition(request_id, decision, reason)
        return request

    def resolve_transition(
        self, request_id: str, decision: Decision, reason: str
    ) -> Tuple[Optional[AuthorizationRequest], bool]:
        """Like :meth:`resolve`, also reporting whether this call did the transition."""
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                return None, False
            # First resolution wins; repeated clicks see the stored outcome.
            if request.status != RequestStatus.PENDING:
                return request, False
            request.status = RequestStatus.RESOLVED
            request.decision = decision
            request.decision_reason = reason
            request.resolved_at = self.clock()
        LOG.info(
            "auth_decision_received request_id=%s decision=%s reason=%s latency_ms=%d",
            request_id,
            decision.value,
            reason,
            int((request.resolved_at - request.created_at) * 1000),
        )
        return request, True

    def attach_message(self, request_id: str, message_id: str, chat_id: Optional[str] = None) -> None:
        with self._lock:
            request = self._requests.get(request_id)
            if request is not None:
                request.external_message_ref = ExternalMessageRef(message_id=message_id, chat_id=chat_id)

    def find_by_message(self, message_id: str) -> Optional[AuthorizationRequest]:
        with self._lock:
            for request in self._requests.values():
                ref = request.external_message_ref
                if ref is not None and ref.message_id == message_id:
                    return request
        return None

    def cleanup(self) -> int:
        """Drop every request older than twice the TTL, whatever its status."""
        cutoff = self.clock() - self.ttl * 2
        with self._lock:
            stale = [rid for rid, request in self._requests.items() if request.created_at < cutoff]
            for request_id in stale:
                del self._requests[request_id]
        if stale:
            LOG.info("auth_requests_cleaned count=%d", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._requests)
