from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from approval_bridge.models.group import ProjectGroup


def table(headers: List[str], rows: List[List[str]], max_widths: Optional[Dict[int, int]] = None) -> str:
    """Format data as ASCII table."""
    if not rows:
        return "No data"

    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            if i < len(widths):
                widths[i] = max(widths[i], len(str(cell)))

    if max_widths:
        for i, max_w in max_widths.items():
            if i < len(widths):
                widths[i] = min(widths[i], max_w)

    header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    separator = "  ".join("-" * w for w in widths)
    row_lines = [
        "  ".join(str(cell)[: widths[i]].ljust(widths[i]) for i, cell in enumerate(row)) for row in rows
    ]
    return "\n".join([header_line, separator] + row_lines)


def rules_table(rules: Sequence[Dict[str, Any]]) -> str:
    """Rules as returned by ``GET /api/rules`` (camelCase keys)."""
    rows = [
        [
            rule.get("id", ""),
            rule.get("tool", ""),
            rule.get("commandPattern") or "*",
            rule.get("scope", ""),
            rule.get("projectPath") or "-",
        ]
        for rule in rules
    ]
    return table(["ID", "TOOL", "PATTERN", "SCOPE", "PROJECT"], rows, max_widths={2: 40, 4: 50})


def groups_table(groups: Sequence[ProjectGroup]) -> str:
    rows = [
        [
            group.project_name,
            group.chat_id,
            group.admin_user_id or "-",
            "yes" if group.valid else "no",
            group.project_path,
        ]
        for group in groups
    ]
    return table(["PROJECT", "CHAT", "ADMIN", "VALID", "PATH"], rows, max_widths={4: 60})
