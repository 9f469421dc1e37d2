"""Persisted "always allow" permission rules."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from approval_bridge.models.enums import RuleScope
from approval_bridge.models.rule import PermissionRule
from approval_bridge.utils.pathing import is_within

LOG = logging.getLogger(__name__)


class RuleStoreError(RuntimeError):
    """Raised when the rule file cannot be written."""


def glob_to_regex(pattern: str) -> str:
    """Translate a command glob into an anchored regular expression.

    Commands are not paths, so ``*`` and ``**`` both match any run of
    characters and ``?`` matches exactly one.
    """
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "*":
            while i < len(pattern) and pattern[i] == "*":
                i += 1
            parts.append(".*")
            continue
        if char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
        i += 1
    return "^" + "".join(parts) + "$"


def match_glob(pattern: str, text: str) -> bool:
    try:
        return re.fullmatch(glob_to_regex(pattern), text, flags=re.DOTALL) is not None
    except re.error:
        return pattern == text


def pattern_from_command(command: str) -> str:
    """``git push origin main`` becomes ``git push**``."""
    parts = command.split()
    if len(parts) >= 2:
        return f"{parts[0]} {parts[1]}**"
    if parts:
        return f"{parts[0]}**"
    return "**"


class PermissionRuleStore:
    """Ordered, file-backed rule list; first match wins."""

    def __init__(self, rules_file: Path) -> None:
        self.rules_file = Path(rules_file)
        self._rules: List[PermissionRule] = []
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if not self.rules_file.exists():
            return
        try:
            raw = json.loads(self.rules_file.read_text(encoding="utf-8"))
            self._rules = [PermissionRule.model_validate(item) for item in raw]
        except (OSError, ValueError, TypeError, ValidationError):
            LOG.exception("permission_rules_load_failed file=%s", self.rules_file)
            self._rules = []
            return
        LOG.info("permission_rules_loaded count=%d", len(self._rules))

    def _save(self) -> None:
        payload = [rule.model_dump(mode="json", by_alias=True) for rule in self._rules]
        try:
            self.rules_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.rules_file.with_name(self.rules_file.name + ".tmp")
            tmp_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_file, self.rules_file)
        except OSError as exc:
            raise RuleStoreError(f"Unable to write {self.rules_file}") from exc

    def add_rule(
        self,
        tool: str,
        scope: RuleScope = RuleScope.ALWAYS,
        command_pattern: Optional[str] = None,
        project_path: Optional[str] = None,
    ) -> PermissionRule:
        rule = PermissionRule(
            id=str(uuid.uuid4()),
            tool=tool,
            command_pattern=command_pattern,
            project_path=project_path,
            scope=scope,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            self._rules.append(rule)
            try:
                self._save()
            except RuleStoreError:
                self._rules.pop()
                raise
        LOG.info(
            "permission_rule_added id=%s tool=%s pattern=%s scope=%s",
            rule.id,
            rule.tool,
            rule.command_pattern,
            rule.scope.value,
        )
        return rule

    def match(
        self,
        tool: str,
        command: Optional[str] = None,
        candidate_path: Optional[str] = None,
    ) -> Optional[PermissionRule]:
        with self._lock:
            rules = list(self._rules)
        for rule in rules:
            if rule.tool != tool:
                continue
            if rule.scope == RuleScope.PROJECT:
                if candidate_path is None or not is_within(candidate_path, rule.project_path or ""):
                    continue
            if rule.command_pattern:
                if command is None or not match_glob(rule.command_pattern, command):
                    continue
            LOG.info("auth_rule_matched rule_id=%s tool=%s command=%.100s", rule.id, tool, command or "")
            return rule
        return None

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            for index, rule in enumerate(self._rules):
                if rule.id == rule_id:
                    del self._rules[index]
                    try:
                        self._save()
                    except RuleStoreError:
                        self._rules.insert(index, rule)
                        raise
                    break
            else:
                return False
        LOG.info("permission_rule_removed id=%s", rule_id)
        return True

    def get_rules(self) -> List[PermissionRule]:
        with self._lock:
            return [rule.model_copy() for rule in self._rules]
