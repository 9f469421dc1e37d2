from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, status

from approval_bridge import constants
from approval_bridge.clients.database import init_db
from approval_bridge.clients.feishu import ChatDeliveryError, FeishuClient
from approval_bridge.config import Settings, get_settings
from approval_bridge.models.authorization import (
    AuthorizationCreateRequest,
    AuthorizationCreateResponse,
    AuthorizationPollResponse,
)
from approval_bridge.models.card_action import CardActionContext, CardActionEvent
from approval_bridge.models.enums import CardActionOutcome, DeliveryMode
from approval_bridge.models.hook import HookAck, NotificationHookRequest, StopHookRequest
from approval_bridge.models.rule import PermissionRule
from approval_bridge.services.alert_service import AlertScheduler, WorkingHoursPolicy
from approval_bridge.services.card_action_service import CardActionService
from approval_bridge.services.group_service import ProjectGroupService
from approval_bridge.services.hook_service import HookService
from approval_bridge.services.request_service import AuthorizationRequestStore
from approval_bridge.services.rule_service import PermissionRuleStore, RuleStoreError
from approval_bridge.utils.logging import setup_logging
from approval_bridge.utils.pathing import ensure_runtime_directories

LOG = logging.getLogger(__name__)

app = FastAPI(title="Approval Bridge API", version="0.1.0")


def _require_service(name: str):
    service = getattr(app.state, name, None)
    if service is None:
        raise RuntimeError(f"Service '{name}' not initialised.")
    return service


def get_bridge_settings() -> Settings:
    return _require_service("settings")


def get_hook_service() -> HookService:
    return _require_service("hook_service")


def get_card_action_service() -> CardActionService:
    return _require_service("card_action_service")


def get_rule_store() -> PermissionRuleStore:
    return _require_service("rule_store")


def require_hook_secret(
    x_hook_secret: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_bridge_settings),
) -> None:
    if settings.hook_secret and x_hook_secret != settings.hook_secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@app.on_event("startup")
async def startup_event() -> None:
    setup_logging()
    ensure_runtime_directories()
    init_db()
    settings = get_settings()

    feishu = FeishuClient(
        app_id=settings.feishu_app_id,
        app_secret=settings.feishu_app_secret,
        base_url=settings.feishu_base_url,
        target_id=settings.feishu_target_id,
    )
    rule_store = PermissionRuleStore(constants.RULES_FILE)
    request_store = AuthorizationRequestStore(ttl_seconds=settings.auth_ttl_seconds)
    alert_scheduler = AlertScheduler(feishu, WorkingHoursPolicy(settings.working_hours))
    group_service = ProjectGroupService(
        feishu,
        owner_id=settings.feishu_target_id,
        default_admin_id=settings.feishu_admin_user_id,
    )
    hook_service = HookService(
        request_store,
        rule_store,
        group_service,
        alert_scheduler,
        auth_alert_delay_minutes=settings.alert_auth_delay_minutes,
        task_alert_delay_minutes=settings.alert_task_delay_minutes,
    )
    card_action_service = CardActionService(request_store, rule_store, alert_scheduler, chat=feishu)

    app.state.settings = settings
    app.state.feishu_client = feishu
    app.state.rule_store = rule_store
    app.state.request_store = request_store
    app.state.alert_scheduler = alert_scheduler
    app.state.group_service = group_service
    app.state.hook_service = hook_service
    app.state.card_action_service = card_action_service
    app.state.background_tasks = [
        asyncio.create_task(_cleanup_loop(request_store)),
        asyncio.create_task(_alert_loop(alert_scheduler, settings.alert_tick_seconds)),
    ]
    LOG.info("bridge_started host=%s port=%s", settings.host, settings.port)


async def _cleanup_loop(request_store: AuthorizationRequestStore) -> None:
    while True:
        await asyncio.sleep(request_store.ttl)
        request_store.cleanup()


async def _alert_loop(alert_scheduler: AlertScheduler, tick_seconds: float) -> None:
    while True:
        # Urgent sends are blocking HTTP calls.
        await asyncio.to_thread(alert_scheduler.fire_due)
        due_at = alert_scheduler.next_due()
        delay = tick_seconds if due_at is None else min(tick_seconds, max(due_at - alert_scheduler.clock(), 0.1))
        await asyncio.sleep(delay)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    tasks = getattr(app.state, "background_tasks", [])
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    alert_scheduler = getattr(app.state, "alert_scheduler", None)
    if alert_scheduler is not None:
        alert_scheduler.clear_all()
    feishu = getattr(app.state, "feishu_client", None)
    if feishu is not None:
        feishu.close()


@app.get("/health")
async def health() -> dict[str, Any]:
    """Lightweight health probe."""
    return {"status": "ok", "timestamp": time.time()}


@app.post(
    "/api/hook/pre-tool",
    response_model=AuthorizationCreateResponse,
    response_model_by_alias=True,
    dependencies=[Depends(require_hook_secret)],
)
def pre_tool(
    payload: AuthorizationCreateRequest,
    hooks: HookService = Depends(get_hook_service),
) -> AuthorizationCreateResponse:
    return hooks.pre_tool(payload)


@app.get(
    "/api/hook/auth-poll",
    response_model=AuthorizationPollResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(require_hook_secret)],
)
def auth_poll(
    request_id: Optional[str] = Query(default=None, alias="requestId"),
    hooks: HookService = Depends(get_hook_service),
) -> AuthorizationPollResponse:
    if not request_id:
        raise HTTPException(status_code=400, detail="requestId is required.")
    return hooks.poll(request_id)


@app.post("/api/hook/stop", response_model=HookAck, dependencies=[Depends(require_hook_secret)])
def hook_stop(
    payload: StopHookRequest,
    hooks: HookService = Depends(get_hook_service),
) -> HookAck:
    try:
        return hooks.task_complete(payload)
    except ChatDeliveryError as exc:
        LOG.exception("stop_hook_delivery_failed session_id=%s", payload.session_id)
        raise HTTPException(status_code=500, detail="Failed to send notification") from exc


@app.post("/api/hook/notification", response_model=HookAck, dependencies=[Depends(require_hook_secret)])
def hook_notification(
    payload: NotificationHookRequest,
    hooks: HookService = Depends(get_hook_service),
) -> HookAck:
    try:
        return hooks.notify(payload)
    except ChatDeliveryError as exc:
        LOG.exception("notification_delivery_failed session_id=%s", payload.session_id)
        raise HTTPException(status_code=500, detail="Failed to send notification") from exc


def _operator_id(operator: Any) -> Optional[str]:
    if not isinstance(operator, dict):
        return None
    if operator.get("open_id"):
        return operator["open_id"]
    user_id = operator.get("user_id")
    if isinstance(user_id, dict):
        return user_id.get("open_id")
    return user_id


def _event_from_trigger(event: Dict[str, Any]) -> CardActionEvent:
    action = event.get("action") or {}
    context = event.get("context") or {}
    return CardActionEvent(
        value=action.get("value") if isinstance(action, dict) else None,
        context=CardActionContext(
            message_id=context.get("open_message_id"),
            chat_id=context.get("open_chat_id"),
            operator_id=_operator_id(event.get("operator")),
        ),
    )


def _toast(outcome: CardActionOutcome) -> Dict[str, str]:
    if outcome in (CardActionOutcome.RESOLVED, CardActionOutcome.REPLAYED):
        return {"type": "success", "content": "Processed"}
    if outcome == CardActionOutcome.MALFORMED:
        return {"type": "error", "content": "Invalid callback data"}
    return {"type": "warning", "content": "Request expired"}


@app.post("/api/feishu/webhook")
def feishu_webhook(
    body: Dict[str, Any] = Body(...),
    settings: Settings = Depends(get_bridge_settings),
    card_actions: CardActionService = Depends(get_card_action_service),
    hooks: HookService = Depends(get_hook_service),
) -> Dict[str, Any]:
    if body.get("challenge"):
        LOG.info("feishu_url_verification")
        return {"challenge": body["challenge"]}

    token = settings.feishu_verification_token

    # Card request URL callbacks carry the action at the top level.
    if body.get("action") and not body.get("header"):
        if token and body.get("token") != token:
            LOG.warning("feishu_card_callback_invalid_token")
            raise HTTPException(status_code=403, detail="Invalid verification token")
        event = CardActionEvent(
            value=body["action"].get("value") if isinstance(body["action"], dict) else None,
            context=CardActionContext(
                message_id=body.get("open_message_id"),
                chat_id=body.get("open_chat_id"),
                operator_id=body.get("open_id"),
            ),
        )
        result = card_actions.handle(event, DeliveryMode.SYNC)
        return {"toast": _toast(result.outcome), "card": result.card}

    header = body.get("header") or {}
    if token and header.get("token") != token:
        LOG.warning("feishu_webhook_invalid_token")
        raise HTTPException(status_code=403, detail="Invalid verification token")

    event_type = header.get("event_type")
    event = body.get("event") or {}
    LOG.info("feishu_event_received event_type=%s", event_type)
    if event_type == "card.action.trigger":
        result = card_actions.handle(_event_from_trigger(event), DeliveryMode.SYNC)
        return {"card": result.card}
    if event_type == "im.message.receive_v1":
        message = event.get("message") or {}
        hooks.acknowledge_reply(message.get("parent_id") or message.get("root_id"))
    else:
        LOG.info("feishu_unknown_event event_type=%s", event_type)
    return {"success": True}


@app.get(
    "/api/rules",
    response_model=List[PermissionRule],
    response_model_by_alias=True,
    dependencies=[Depends(require_hook_secret)],
)
async def list_rules(rules: PermissionRuleStore = Depends(get_rule_store)) -> List[PermissionRule]:
    return rules.get_rules()


@app.delete(
    "/api/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_hook_secret)],
)
async def delete_rule(rule_id: str, rules: PermissionRuleStore = Depends(get_rule_store)) -> None:
    try:
        removed = rules.remove_rule(rule_id)
    except RuleStoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    if not removed:
        raise HTTPException(status_code=404, detail="Rule not found.")
