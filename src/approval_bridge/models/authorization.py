"""Authorization request models."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from approval_bridge import constants
from approval_bridge.models.enums import Decision, RequestStatus


class ShellToolInput(BaseModel):
    """Payload of the shell-execution tool."""

    kind: Literal["shell"] = "shell"
    command: str
    description: Optional[str] = None


class FileToolInput(BaseModel):
    """Payload of file editing tools (Edit, Write, ...)."""

    kind: Literal["file"] = "file"
    file_path: str
    extra: Dict[str, Any] = Field(default_factory=dict)


class GenericToolInput(BaseModel):
    kind: Literal["generic"] = "generic"
    payload: Dict[str, Any] = Field(default_factory=dict)


ToolInput = Annotated[
    Union[ShellToolInput, FileToolInput, GenericToolInput],
    Field(discriminator="kind"),
]


def parse_tool_input(tool: str, raw: Any) -> Union[ShellToolInput, FileToolInput, GenericToolInput]:
    """Map a hook's duck-typed ``tool_input`` onto a known shape."""
    data = raw if isinstance(raw, dict) else {"value": raw}
    if tool == constants.SHELL_TOOL and isinstance(data.get("command"), str):
        description = data.get("description")
        return ShellToolInput(
            command=data["command"],
            description=description if isinstance(description, str) else None,
        )
    if isinstance(data.get("file_path"), str):
        extra = {key: value for key, value in data.items() if key != "file_path"}
        return FileToolInput(file_path=data["file_path"], extra=extra)
    return GenericToolInput(payload=dict(data))


class ExternalMessageRef(BaseModel):
    """Handle to the delivered chat card."""

    message_id: str
    chat_id: Optional[str] = None


class AuthorizationRequest(BaseModel):
    """A single pending decision exchange for one proposed tool call."""

    id: str
    session_id: str
    tool: str
    tool_input: ToolInput
    command: Optional[str] = None
    options: List[str]
    cwd: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    decision: Optional[Decision] = None
    decision_reason: Optional[str] = None
    created_at: float
    resolved_at: Optional[float] = None
    external_message_ref: Optional[ExternalMessageRef] = None

    @field_validator("options")
    @classmethod
    def _options_not_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("options must not be empty")
        return value


class AuthorizationCreateRequest(BaseModel):
    """Body posted by the hook client; unknown hook fields are tolerated."""

    class Config:
        extra = "allow"

    session_id: str = "unknown"
    tool: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Any = None
    command: Optional[str] = None
    options: Optional[List[str]] = None
    cwd: Optional[str] = None

    @property
    def tool_label(self) -> str:
        return self.tool or self.tool_name or "unknown"


class AuthorizationCreateResponse(BaseModel):
    class Config:
        populate_by_name = True

    request_id: Optional[str] = Field(default=None, alias="requestId")
    decision: Optional[Decision] = None
    reason: Optional[str] = None
    rule_id: Optional[str] = Field(default=None, alias="ruleId")


class AuthorizationPollResponse(BaseModel):
    status: RequestStatus
    decision: Optional[Decision] = None
    reason: Optional[str] = None
