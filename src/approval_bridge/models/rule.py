"""Permission rule models."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, model_validator

from approval_bridge.models.enums import RuleScope


class PermissionRule(BaseModel):
    """Persisted auto-allow policy; serialised with camelCase keys."""

    class Config:
        populate_by_name = True

    id: str
    tool: str
    command_pattern: Optional[str] = Field(default=None, alias="commandPattern")
    project_path: Optional[str] = Field(default=None, alias="projectPath")
    scope: RuleScope
    created_at: str = Field(alias="createdAt")

    @model_validator(mode="after")
    def _project_scope_needs_path(self) -> "PermissionRule":
        if self.scope == RuleScope.PROJECT and not self.project_path:
            raise ValueError("project scoped rules require projectPath")
        return self
