"""Project group mapping models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ProjectGroup(BaseModel):
    """Chat group bound to one project directory."""

    project_path: str
    chat_id: str
    project_name: str
    admin_user_id: Optional[str] = None
    valid: bool = True
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
