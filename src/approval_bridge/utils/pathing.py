"""Filesystem helpers for the approval bridge."""

from __future__ import annotations

from pathlib import Path

from approval_bridge import constants


def ensure_runtime_directories() -> dict[str, Path]:
    """Create the directory tree required for runtime state."""
    required = {
        "home": constants.HOME_DIR,
        "logs": constants.LOG_DIR,
        "data": constants.DATA_DIR,
        "db": constants.DB_DIR,
        "audit": constants.AUDIT_DIR,
    }

    for path in required.values():
        path.mkdir(parents=True, exist_ok=True)

    return required


def normalize_project_path(project_path: str) -> str:
    """Every directory, worktrees included, is treated as its own project."""
    return project_path


def is_within(candidate: str, root: str) -> bool:
    """True when ``candidate`` equals ``root`` or is nested below it."""
    if candidate == root:
        return True
    base = root.rstrip("/\\")
    return candidate.startswith(base + "/") or candidate.startswith(base + "\\")


def project_name(project_path: str) -> str:
    """Last path component, used for group names and card title tags."""
    return Path(project_path.rstrip("/\\") or "/").name or project_path
