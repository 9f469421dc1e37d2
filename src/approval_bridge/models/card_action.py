"""Card action event models."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from approval_bridge.models.enums import CardActionOutcome


class ActionValue(BaseModel):
    """Decoded button value attached to an authorization card."""

    class Config:
        populate_by_name = True
        extra = "allow"

    request_id: Optional[str] = Field(default=None, alias="requestId")
    action: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class CardActionContext(BaseModel):
    """Where the click happened, as reported by the chat platform."""

    message_id: Optional[str] = None
    chat_id: Optional[str] = None
    operator_id: Optional[str] = None


class CardActionEvent(BaseModel):
    value: Any = None
    context: CardActionContext = Field(default_factory=CardActionContext)


class CardActionResult(BaseModel):
    outcome: CardActionOutcome
    card: Optional[Dict[str, Any]] = None
    pushed: bool = False
    request_id: Optional[str] = None
