"""Payloads posted by the agent's lifecycle hooks."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel


class StopHookRequest(BaseModel):
    """Sent when the agent finishes a task."""

    class Config:
        extra = "allow"

    session_id: str = "unknown"
    cwd: Optional[str] = None
    stop_reason: Optional[str] = None
    message: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None

    @property
    def project_path(self) -> Optional[str]:
        if self.cwd:
            return self.cwd
        if self.summary and isinstance(self.summary.get("projectPath"), str):
            return self.summary["projectPath"]
        return None

    @property
    def completion_message(self) -> Optional[str]:
        if self.message:
            return self.message
        if self.summary and isinstance(self.summary.get("completionMessage"), str):
            return self.summary["completionMessage"]
        return None


class NotificationHookRequest(BaseModel):
    class Config:
        extra = "allow"

    session_id: str = "unknown"
    cwd: Optional[str] = None
    title: Optional[str] = None
    message: Optional[str] = None


class HookAck(BaseModel):
    success: bool = True
    message_id: Optional[str] = None
