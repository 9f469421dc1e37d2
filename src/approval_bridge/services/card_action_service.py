"""Turns card button clicks into authorization decisions."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from json import dumps
from typing import Any, Dict, Optional

from pydantic import ValidationError

from approval_bridge import constants
from approval_bridge.clients.feishu import ChatDeliveryError, FeishuClient
from approval_bridge.models.authorization import AuthorizationRequest
from approval_bridge.models.card_action import (
    ActionValue,
    CardActionEvent,
    CardActionResult,
)
from approval_bridge.models.enums import (
    CardActionOutcome,
    Decision,
    DeliveryMode,
    RequestStatus,
    RuleScope,
)
from approval_bridge.services.alert_service import AlertScheduler
from approval_bridge.services.request_service import AuthorizationRequestStore
from approval_bridge.services.rule_service import (
    PermissionRuleStore,
    RuleStoreError,
    pattern_from_command,
)
from approval_bridge.utils.cards import expired_card, malformed_card, resolution_card
from approval_bridge.utils.pathing import normalize_project_path

LOG = logging.getLogger(__name__)


def decode_action_value(raw: Any) -> Optional[Dict[str, Any]]:
    """Decode a button value that may arrive as an object, a JSON string, or a JSON string of a JSON string."""
    value = raw
    try:
        if isinstance(value, (str, bytes)):
            value = json.loads(value)
        if isinstance(value, str):
            value = json.loads(value)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def classify_option(label: str) -> Decision:
    lowered = label.lower()
    if "no" in lowered or "deny" in lowered:
        return Decision.DENY
    return Decision.ALLOW


def wants_rule(label: str) -> bool:
    lowered = label.lower()
    return "always" in lowered or "don't ask again" in lowered


def is_project_scoped(label: str) -> bool:
    return "project" in label.lower()


class CardActionService:
    """Resolution state machine for authorization card clicks.

    Every branch yields an acknowledgment card; pending alerts for the
    clicked message are cancelled whatever the outcome.
    """

    def __init__(
        self,
        requests: AuthorizationRequestStore,
        rules: PermissionRuleStore,
        alerts: AlertScheduler,
        chat: Optional[FeishuClient] = None,
    ) -> None:
        self.requests = requests
        self.rules = rules
        self.alerts = alerts
        self.chat = chat

    def handle(self, event: CardActionEvent, mode: DeliveryMode = DeliveryMode.SYNC) -> CardActionResult:
        context = event.context
        if context.message_id:
            self.alerts.cancel_alert(context.message_id)

        data = decode_action_value(event.value)
        value: Optional[ActionValue] = None
        if data is not None:
            try:
                value = ActionValue.model_validate(data)
            except ValidationError:
                value = None
        if value is None or not value.request_id:
            LOG.warning("card_action_malformed message_id=%s value=%.200r", context.message_id, event.value)
            return self._deliver(
                CardActionOutcome.MALFORMED,
                malformed_card(data if data is not None else event.value),
                context.message_id,
                mode,
            )

        request_id = value.request_id
        request = self.requests.get(request_id)
        if request is None:
            LOG.warning("card_action_unknown_request request_id=%s", request_id)
            return self._deliver(
                CardActionOutcome.NOT_FOUND,
                expired_card(request_id),
                context.message_id,
                mode,
                request_id=request_id,
            )

        message_id = context.message_id or self._message_of(request)
        ref_message = self._message_of(request)
        if ref_message and ref_message != context.message_id:
            self.alerts.cancel_alert(ref_message)

        if request.status == RequestStatus.EXPIRED:
            return self._deliver(
                CardActionOutcome.EXPIRED,
                expired_card(request_id, request),
                message_id,
                mode,
                request_id=request_id,
            )

        label = value.action or ""
        resolved, transitioned = self.requests.resolve_transition(request_id, classify_option(label), label)
        if resolved is None:
            return self._deliver(
                CardActionOutcome.NOT_FOUND,
                expired_card(request_id),
                message_id,
                mode,
                request_id=request_id,
            )
        if not transitioned:
            if resolved.status == RequestStatus.EXPIRED:
                return self._deliver(
                    CardActionOutcome.EXPIRED,
                    expired_card(request_id, resolved),
                    message_id,
                    mode,
                    request_id=request_id,
                )
            LOG.info("card_action_replayed request_id=%s", request_id)
            return self._deliver(
                CardActionOutcome.REPLAYED,
                resolution_card(resolved, context.operator_id, replay=True),
                message_id,
                mode,
                request_id=request_id,
            )

        rule_id = None
        if resolved.decision == Decision.ALLOW and wants_rule(label):
            rule_id = self._derive_rule(resolved, label)
        self._append_audit("RESOLVED", resolved, context.operator_id, rule_id)
        return self._deliver(
            CardActionOutcome.RESOLVED,
            resolution_card(resolved, context.operator_id),
            message_id,
            mode,
            request_id=request_id,
        )

    @staticmethod
    def _message_of(request: AuthorizationRequest) -> Optional[str]:
        ref = request.external_message_ref
        return ref.message_id if ref else None

    def _derive_rule(self, request: AuthorizationRequest, label: str) -> Optional[str]:
        scope = RuleScope.PROJECT if is_project_scoped(label) else RuleScope.ALWAYS
        project_path = normalize_project_path(request.cwd) if request.cwd else None
        if scope == RuleScope.PROJECT and not project_path:
            LOG.warning("rule_skipped_no_project request_id=%s label=%s", request.id, label)
            return None
        command_pattern = pattern_from_command(request.command) if request.command else None
        try:
            rule = self.rules.add_rule(
                request.tool,
                scope=scope,
                command_pattern=command_pattern,
                project_path=project_path if scope == RuleScope.PROJECT else None,
            )
        except RuleStoreError:
            LOG.exception("rule_persist_failed request_id=%s", request.id)
            return None
        return rule.id

    def _deliver(
        self,
        outcome: CardActionOutcome,
        card: Dict[str, Any],
        message_id: Optional[str],
        mode: DeliveryMode,
        request_id: Optional[str] = None,
    ) -> CardActionResult:
        pushed = False
        if mode == DeliveryMode.PUSH and message_id and self.chat is not None:
            try:
                self.chat.update_card(message_id, card)
                pushed = True
            except ChatDeliveryError:
                LOG.exception("card_update_failed message_id=%s outcome=%s", message_id, outcome.value)
        return CardActionResult(outcome=outcome, card=card, pushed=pushed, request_id=request_id)

    def _append_audit(
        self,
        action: str,
        request: AuthorizationRequest,
        operator_id: Optional[str],
        rule_id: Optional[str] = None,
    ) -> None:
        """Append decision entries to the audit log."""
        log_file = constants.AUDIT_DIR / "decisions.log"
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "request_id": request.id,
            "session_id": request.session_id,
            "tool": request.tool,
            "command": request.command,
            "decision": request.decision.value if request.decision else None,
            "reason": request.decision_reason,
            "operator_id": operator_id,
            "rule_id": rule_id,
        }
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            with log_file.open("a", encoding="utf-8") as handle:
                handle.write(dumps(entry) + "\n")
        except OSError:
            LOG.exception("decision_audit_write_failed request_id=%s", request.id)
