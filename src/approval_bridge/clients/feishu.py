"""Thin wrapper around the Feishu open platform HTTP API."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional

import httpx


LOG = logging.getLogger(__name__)


class ChatDeliveryError(RuntimeError):
    """Raised when the chat platform rejects or fails a call."""


class FeishuClient:
    """Minimal helper covering messages, card updates, urgent pings and group creation."""

    def __init__(
        self,
        app_id: Optional[str],
        app_secret: Optional[str],
        base_url: str = "https://open.feishu.cn/open-apis",
        target_id: Optional[str] = None,
        target_type: str = "open_id",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.target_id = target_id
        self.target_type = target_type
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def close(self) -> None:
        self._client.close()

    # Auth -----------------------------------------------------------------------
    def _tenant_token(self) -> str:
        if self._token and time.time() < self._token_expires_at:
            return self._token
        if not self.app_id or not self.app_secret:
            raise ChatDeliveryError("FEISHU_APP_ID and FEISHU_APP_SECRET are required.")
        data = self._post_json(
            "/auth/v3/tenant_access_token/internal",
            {"app_id": self.app_id, "app_secret": self.app_secret},
            authenticated=False,
        )
        self._token = data["tenant_access_token"]
        # Refresh a minute early.
        self._token_expires_at = time.time() + int(data.get("expire", 7200)) - 60
        return self._token

    def _post_json(
        self,
        path: str,
        payload: Dict[str, Any],
        params: Optional[Dict[str, str]] = None,
        method: str = "POST",
        authenticated: bool = True,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._tenant_token()}"} if authenticated else {}
        try:
            response = self._client.request(method, path, json=payload, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise ChatDeliveryError(f"Feishu request {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise ChatDeliveryError(f"Feishu API error {response.status_code}: {response.text}")
        try:
            body = response.json()
        except ValueError as exc:
            raise ChatDeliveryError(f"Feishu returned invalid JSON for {path}") from exc
        if not isinstance(body, dict):
            raise ChatDeliveryError(f"Feishu returned an unexpected body for {path}")
        if body.get("code", 0) != 0:
            raise ChatDeliveryError(f"Feishu API error {body.get('code')}: {body.get('msg')}")
        return body.get("data") or body

    # Messages -------------------------------------------------------------------
    def _create_message(
        self,
        msg_type: str,
        content: Dict[str, Any],
        receive_id: Optional[str],
        receive_id_type: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Optional[str]]:
        if not receive_id:
            raise ChatDeliveryError("No chat target configured (set FEISHU_TARGET_ID).")
        payload: Dict[str, Any] = {
            "receive_id": receive_id,
            "msg_type": msg_type,
            "content": json.dumps(content, ensure_ascii=False),
        }
        if extra:
            payload.update(extra)
        data = self._post_json("/im/v1/messages", payload, params={"receive_id_type": receive_id_type})
        return {"message_id": data.get("message_id"), "chat_id": data.get("chat_id") or receive_id}

    def _target(self, chat_id: Optional[str]) -> tuple[Optional[str], str]:
        if chat_id:
            return chat_id, "chat_id"
        return self.target_id, self.target_type

    def send_card(self, card: Dict[str, Any], chat_id: Optional[str] = None) -> Dict[str, Optional[str]]:
        receive_id, receive_type = self._target(chat_id)
        result = self._create_message("interactive", card, receive_id, receive_type)
        LOG.info("card_sent message_id=%s chat_id=%s", result["message_id"], result["chat_id"])
        return result

    def update_card(self, message_id: str, card: Dict[str, Any]) -> None:
        self._post_json(
            f"/im/v1/messages/{message_id}",
            {"content": json.dumps(card, ensure_ascii=False)},
            method="PATCH",
        )
        LOG.info("card_updated message_id=%s", message_id)

    def send_urgent_text(self, user_id: str, text: str, reason: str) -> Optional[str]:
        """Text message flagged urgent, which rings the recipient's phone."""
        result = self._create_message(
            "text",
            {"text": text},
            user_id,
            "open_id",
            extra={"urgent": {"is_urgent": True, "urgent_reason": reason}},
        )
        return result["message_id"]

    # Groups ---------------------------------------------------------------------
    def create_chat(self, name: str, description: str, member_ids: List[str]) -> str:
        data = self._post_json(
            "/im/v1/chats",
            {
                "name": name,
                "description": description,
                "user_id_list": member_ids,
                "chat_mode": "group",
                "chat_type": "private",
            },
            params={"user_id_type": "open_id"},
        )
        chat_id = data.get("chat_id")
        if not chat_id:
            raise ChatDeliveryError("Feishu did not return a chat_id.")
        return chat_id
