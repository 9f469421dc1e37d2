"""Server-side handling of the agent's hook calls."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from approval_bridge import constants
from approval_bridge.clients.feishu import ChatDeliveryError
from approval_bridge.models.authorization import (
    AuthorizationCreateRequest,
    AuthorizationCreateResponse,
    AuthorizationPollResponse,
)
from approval_bridge.models.enums import AlertKind, Decision, RequestStatus
from approval_bridge.models.hook import HookAck, NotificationHookRequest, StopHookRequest
from approval_bridge.services.alert_service import AlertScheduler
from approval_bridge.services.group_service import ProjectGroupService
from approval_bridge.services.request_service import AuthorizationRequestStore
from approval_bridge.services.rule_service import PermissionRuleStore
from approval_bridge.utils.cards import authorization_card, notification_card, task_complete_card

LOG = logging.getLogger(__name__)


def extract_command(tool: str, tool_input: Any, fallback: Optional[str] = None) -> Optional[str]:
    """Only shell invocations carry a command string."""
    if tool != constants.SHELL_TOOL:
        return None
    if isinstance(tool_input, dict) and isinstance(tool_input.get("command"), str):
        return tool_input["command"]
    return fallback


class HookService:
    """Pre-tool authorization, task completion and plain notifications."""

    def __init__(
        self,
        requests: AuthorizationRequestStore,
        rules: PermissionRuleStore,
        groups: ProjectGroupService,
        alerts: AlertScheduler,
        auth_alert_delay_minutes: float = 5.0,
        task_alert_delay_minutes: float = 10.0,
    ) -> None:
        self.requests = requests
        self.rules = rules
        self.groups = groups
        self.alerts = alerts
        self.auth_alert_delay_minutes = auth_alert_delay_minutes
        self.task_alert_delay_minutes = task_alert_delay_minutes

    def pre_tool(self, payload: AuthorizationCreateRequest) -> AuthorizationCreateResponse:
        tool = payload.tool_label
        command = extract_command(tool, payload.tool_input, payload.command)

        rule = self.rules.match(tool, command, payload.cwd)
        if rule is not None:
            return AuthorizationCreateResponse(
                decision=Decision.ALLOW,
                reason=f"Matched permission rule {rule.id}",
                rule_id=rule.id,
            )

        options: List[str] = payload.options or list(constants.DEFAULT_OPTIONS)
        request = self.requests.create(
            session_id=payload.session_id,
            tool=tool,
            tool_input=payload.tool_input,
            options=options,
            command=command,
            cwd=payload.cwd,
        )

        chat_id = self.groups.resolve_chat(payload.cwd)
        try:
            sent = self.groups.send_with_retry(authorization_card(request), chat_id, payload.cwd)
        except ChatDeliveryError:
            # The hook keeps polling and falls back to deny when nobody answers.
            LOG.exception("auth_card_delivery_failed request_id=%s", request.id)
            return AuthorizationCreateResponse(request_id=request.id)

        message_id = sent.get("message_id")
        if message_id:
            self.requests.attach_message(request.id, message_id, sent.get("chat_id"))
            self._schedule(message_id, payload.cwd, payload.session_id, AlertKind.AUTHORIZATION, sent.get("chat_id"))
        return AuthorizationCreateResponse(request_id=request.id)

    def poll(self, request_id: str) -> AuthorizationPollResponse:
        request = self.requests.get(request_id)
        if request is None:
            return AuthorizationPollResponse(status=RequestStatus.EXPIRED)
        if request.status == RequestStatus.RESOLVED:
            return AuthorizationPollResponse(
                status=request.status,
                decision=request.decision,
                reason=request.decision_reason,
            )
        return AuthorizationPollResponse(status=request.status)

    def task_complete(self, payload: StopHookRequest) -> HookAck:
        project_path = payload.project_path
        LOG.info(
            "stop_hook_received session_id=%s stop_reason=%s project=%s",
            payload.session_id,
            payload.stop_reason,
            project_path,
        )
        card = task_complete_card(payload.session_id, project_path, payload.completion_message)
        chat_id = self.groups.resolve_chat(project_path)
        sent = self.groups.send_with_retry(card, chat_id, project_path)
        message_id = sent.get("message_id")
        if message_id:
            self._schedule(message_id, project_path, payload.session_id, AlertKind.TASK_COMPLETE, sent.get("chat_id"))
        return HookAck(message_id=message_id)

    def notify(self, payload: NotificationHookRequest) -> HookAck:
        message = payload.message or "Agent notification"
        card = notification_card(payload.session_id, payload.cwd, payload.title, message)
        chat_id = self.groups.resolve_chat(payload.cwd)
        sent = self.groups.send_with_retry(card, chat_id, payload.cwd)
        return HookAck(message_id=sent.get("message_id"))

    def acknowledge_reply(self, parent_message_id: Optional[str]) -> bool:
        """A reply in the thread of a card counts as an answer to it."""
        if not parent_message_id:
            return False
        request = self.requests.find_by_message(parent_message_id)
        if request is not None and request.status == RequestStatus.PENDING:
            LOG.info("reply_on_pending_authorization request_id=%s", request.id)
        return self.alerts.cancel_alert(parent_message_id)

    def _schedule(
        self,
        key: str,
        project_path: Optional[str],
        session_id: str,
        kind: AlertKind,
        chat_id: Optional[str],
    ) -> None:
        operator = self.groups.admin_for(project_path)
        if not operator:
            LOG.info("voice_alert_no_operator key=%s kind=%s", key, kind.value)
            return
        delay = self.auth_alert_delay_minutes if kind == AlertKind.AUTHORIZATION else self.task_alert_delay_minutes
        self.alerts.schedule_alert(key, operator, session_id, kind, delay, chat_ref=chat_id)
