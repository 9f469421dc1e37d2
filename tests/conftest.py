import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from approval_bridge import constants
from approval_bridge.api import main as api_main
from approval_bridge.clients import database
from approval_bridge.clients.feishu import ChatDeliveryError
from approval_bridge.config import Settings, WorkingHoursConfig
from approval_bridge.services.alert_service import AlertScheduler, WorkingHoursPolicy
from approval_bridge.services.card_action_service import CardActionService
from approval_bridge.services.group_service import ProjectGroupService
from approval_bridge.services.hook_service import HookService
from approval_bridge.services.request_service import AuthorizationRequestStore
from approval_bridge.services.rule_service import PermissionRuleStore


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChatClient:
    """Records everything that would have been sent to Feishu."""

    def __init__(self) -> None:
        self.sent_cards: List[Dict[str, Any]] = []
        self.updated_cards: List[Dict[str, Any]] = []
        self.urgent: List[Dict[str, Any]] = []
        self.created_chats: List[Dict[str, Any]] = []
        self.failing_chats: set = set()
        self.fail_all_sends = False
        self.fail_updates = False
        self.fail_urgent = False
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def send_card(self, card: Dict[str, Any], chat_id: Optional[str] = None) -> Dict[str, Optional[str]]:
        if self.fail_all_sends or chat_id in self.failing_chats:
            raise ChatDeliveryError(f"send to {chat_id} failed")
        message_id = self._next("om")
        target = chat_id or "default-target"
        self.sent_cards.append({"message_id": message_id, "chat_id": target, "card": card})
        return {"message_id": message_id, "chat_id": target}

    def update_card(self, message_id: str, card: Dict[str, Any]) -> None:
        if self.fail_updates:
            raise ChatDeliveryError("update failed")
        self.updated_cards.append({"message_id": message_id, "card": card})

    def send_urgent_text(self, user_id: str, text: str, reason: str) -> Optional[str]:
        if self.fail_urgent:
            raise ChatDeliveryError("urgent failed")
        message_id = self._next("urgent")
        self.urgent.append({"user_id": user_id, "text": text, "reason": reason, "message_id": message_id})
        return message_id

    def create_chat(self, name: str, description: str, member_ids: List[str]) -> str:
        chat_id = self._next("oc")
        self.created_chats.append({"chat_id": chat_id, "name": name, "member_ids": member_ids})
        return chat_id

    def close(self) -> None:
        pass


def card_title(card: Dict[str, Any]) -> str:
    return card["header"]["title"]["content"]


def card_text(card: Dict[str, Any]) -> str:
    return "\n".join(
        element["text"]["content"] for element in card["elements"] if element.get("tag") == "div"
    )


def button_values(card: Dict[str, Any]) -> List[str]:
    for element in card["elements"]:
        if element.get("tag") == "action":
            return [action["value"] for action in element["actions"]]
    return []


@pytest.fixture(autouse=True)
def temp_runtime_dirs(tmp_path, monkeypatch):
    """Redirect runtime directories and database into a temp location."""
    base = tmp_path / "runtime"
    home = base / "home"
    mapping = {
        "HOME_DIR": home,
        "LOG_DIR": home / "logs",
        "DATA_DIR": home / "data",
        "RULES_FILE": home / "data" / "permission-rules.json",
        "DB_DIR": home / "db",
        "DB_FILE": home / "db" / "bridge.db",
        "AUDIT_DIR": home / "audit",
    }

    for name, path in mapping.items():
        monkeypatch.setattr(constants, name, path)

    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level

    database.init_db()
    yield

    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_chat():
    return FakeChatClient()


@pytest.fixture
def rule_store():
    return PermissionRuleStore(constants.RULES_FILE)


@pytest.fixture
def request_store(clock):
    return AuthorizationRequestStore(ttl_seconds=300, clock=clock)


@pytest.fixture
def always_on_policy():
    return WorkingHoursPolicy(WorkingHoursConfig(enabled=False))


@pytest.fixture
def alert_scheduler(fake_chat, always_on_policy, clock):
    return AlertScheduler(fake_chat, always_on_policy, clock=clock)


@pytest.fixture
def group_service(fake_chat):
    return ProjectGroupService(fake_chat, owner_id="ou_owner", default_admin_id="ou_admin")


@pytest.fixture
def hook_service(request_store, rule_store, group_service, alert_scheduler):
    return HookService(request_store, rule_store, group_service, alert_scheduler)


@pytest.fixture
def card_action_service(request_store, rule_store, alert_scheduler, fake_chat):
    return CardActionService(request_store, rule_store, alert_scheduler, chat=fake_chat)


@pytest.fixture
def bridge_settings():
    return Settings(working_hours=WorkingHoursConfig(enabled=False))


@pytest.fixture
def api_client(bridge_settings, hook_service, card_action_service, rule_store):
    app = api_main.app

    overrides = {
        api_main.get_bridge_settings: lambda: bridge_settings,
        api_main.get_hook_service: lambda: hook_service,
        api_main.get_card_action_service: lambda: card_action_service,
        api_main.get_rule_store: lambda: rule_store,
    }

    original_overrides = app.dependency_overrides.copy()
    original_lifespan = app.router.lifespan_context

    @asynccontextmanager
    async def noop_lifespan(_app):
        yield

    app.router.lifespan_context = noop_lifespan
    app.dependency_overrides.update(overrides)

    with TestClient(app) as client:
        yield client

    app.dependency_overrides = original_overrides
    app.router.lifespan_context = original_lifespan
