"""Project to chat-group mapping and delivery with a single recreate-and-retry."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from approval_bridge.clients.database import ProjectGroup as ProjectGroupORM, session_scope
from approval_bridge.clients.feishu import ChatDeliveryError, FeishuClient
from approval_bridge.models.group import ProjectGroup
from approval_bridge.utils.pathing import normalize_project_path, project_name

LOG = logging.getLogger(__name__)


class ProjectGroupService:
    """Persists one chat group per project directory."""

    def __init__(
        self,
        chat: FeishuClient,
        owner_id: Optional[str] = None,
        default_admin_id: Optional[str] = None,
    ) -> None:
        self.chat = chat
        self.owner_id = owner_id
        self.default_admin_id = default_admin_id

    def get_group(self, project_path: str) -> Optional[ProjectGroup]:
        with session_scope() as db:
            group = db.get(ProjectGroupORM, normalize_project_path(project_path))
            return ProjectGroup.model_validate(group, from_attributes=True) if group else None

    def list_groups(self) -> List[ProjectGroup]:
        with session_scope() as db:
            groups = db.query(ProjectGroupORM).order_by(ProjectGroupORM.project_path.asc()).all()
            return [ProjectGroup.model_validate(obj, from_attributes=True) for obj in groups]

    def get_or_create_group(self, project_path: str) -> str:
        key = normalize_project_path(project_path)
        existing = self.get_group(key)
        if existing and existing.valid:
            return existing.chat_id

        name = project_name(project_path)
        members = [self.owner_id] if self.owner_id else []
        chat_id = self.chat.create_chat(
            name=f"🤖 {name}",
            description=f"Agent notifications for {name}",
            member_ids=members,
        )
        with session_scope() as db:
            db.merge(
                ProjectGroupORM(
                    project_path=key,
                    chat_id=chat_id,
                    project_name=name,
                    admin_user_id=existing.admin_user_id if existing else None,
                    valid=True,
                )
            )
        LOG.info("group_created project=%s chat_id=%s", key, chat_id)
        return chat_id

    def mark_invalid(self, chat_id: str) -> None:
        with session_scope() as db:
            for group in db.query(ProjectGroupORM).filter(ProjectGroupORM.chat_id == chat_id).all():
                group.valid = False
        LOG.warning("group_marked_invalid chat_id=%s", chat_id)

    def set_admin(self, project_path: str, user_id: str) -> None:
        with session_scope() as db:
            group = db.get(ProjectGroupORM, normalize_project_path(project_path))
            if group:
                group.admin_user_id = user_id

    def admin_for(self, project_path: Optional[str]) -> Optional[str]:
        """Operator to page for a project, falling back to the global admin."""
        if project_path:
            group = self.get_group(project_path)
            if group and group.admin_user_id:
                return group.admin_user_id
        return self.default_admin_id

    def resolve_chat(self, project_path: Optional[str]) -> Optional[str]:
        """Group chat for a project, or ``None`` to use the default target."""
        if not project_path:
            return None
        try:
            return self.get_or_create_group(project_path)
        except ChatDeliveryError:
            LOG.exception("group_resolve_failed project=%s", project_path)
            return None

    def send_with_retry(
        self,
        card: Dict[str, Any],
        chat_id: Optional[str],
        project_path: Optional[str] = None,
    ) -> Dict[str, Optional[str]]:
        """Send a card; a failed group send recreates the group and retries once."""
        try:
            return self.chat.send_card(card, chat_id=chat_id)
        except ChatDeliveryError:
            if not chat_id or not project_path:
                raise
            LOG.warning("card_send_failed_retrying chat_id=%s project=%s", chat_id, project_path)
        self.mark_invalid(chat_id)
        new_chat_id = self.get_or_create_group(project_path)
        return self.chat.send_card(card, chat_id=new_chat_id)
