"""Interactive card payloads sent to the chat platform."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from approval_bridge.models.authorization import AuthorizationRequest
from approval_bridge.models.enums import CardType, Decision
from approval_bridge.utils.pathing import project_name

HEADER_COLORS = {
    CardType.TASK_COMPLETE: "green",
    CardType.AUTHORIZATION_REQUIRED: "orange",
    CardType.AUTHORIZATION_RESOLVED: "blue",
    CardType.NOTIFICATION: "wathet",
}


def build_title_tag(cwd: Optional[str], session_id: Optional[str]) -> str:
    """``[project] #sess`` prefix identifying where a card came from."""
    parts = []
    if cwd:
        parts.append(f"[{project_name(cwd)}]")
    if session_id and session_id != "unknown":
        parts.append(f"#{session_id[:4]}")
    return " ".join(parts)


def _tagged(title: str, tag: str) -> str:
    return f"{tag} {title}" if tag else title


def _markdown(content: str) -> Dict[str, Any]:
    return {"tag": "div", "text": {"tag": "lark_md", "content": content}}


def build_card(
    card_type: CardType,
    title: str,
    content: str,
    command: Optional[str] = None,
    options: Optional[Sequence[str]] = None,
    request_id: Optional[str] = None,
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    elements: List[Dict[str, Any]] = [_markdown(content)]

    if command:
        elements.append(_markdown(f"**Command**: `{command}`"))

    if options:
        last = len(options) - 1
        actions = [
            {
                "tag": "button",
                "text": {"tag": "plain_text", "content": option},
                "type": "danger" if index == last else "primary",
                "value": json.dumps(
                    {
                        "requestId": request_id,
                        "action": option,
                        "index": index,
                        "sessionId": session_id,
                    }
                ),
            }
            for index, option in enumerate(options)
        ]
        elements.append({"tag": "action", "actions": actions})

    if session_id:
        elements.append(
            {"tag": "note", "elements": [{"tag": "plain_text", "content": f"Session: {session_id}"}]}
        )

    return {
        "config": {"wide_screen_mode": True},
        "header": {
            "title": {"tag": "plain_text", "content": title},
            "template": HEADER_COLORS.get(card_type, "blue"),
        },
        "elements": elements,
    }


def authorization_card(request: AuthorizationRequest) -> Dict[str, Any]:
    tag = build_title_tag(request.cwd, request.session_id)
    return build_card(
        CardType.AUTHORIZATION_REQUIRED,
        _tagged("Authorization required", tag),
        f"Tool: **{request.tool}**",
        command=request.command,
        options=request.options,
        request_id=request.id,
        session_id=request.session_id,
    )


def _format_ts(timestamp: Optional[float]) -> str:
    moment = datetime.fromtimestamp(timestamp, tz=timezone.utc) if timestamp else datetime.now(timezone.utc)
    return moment.isoformat()


def resolution_card(
    request: AuthorizationRequest,
    operator_id: Optional[str] = None,
    replay: bool = False,
) -> Dict[str, Any]:
    """Acknowledgment rendered from the stored decision of a resolved request."""
    tag = build_title_tag(request.cwd, request.session_id)
    allowed = request.decision == Decision.ALLOW
    title = _tagged("Authorized" if allowed else "Denied", tag)
    callback = {
        "requestId": request.id,
        "action": request.decision_reason,
        "sessionId": request.session_id,
        "decision": request.decision.value if request.decision else None,
        "timestamp": _format_ts(request.resolved_at),
        "operator": operator_id or "unknown",
    }
    status_line = "Received and processed (repeat click)" if replay else "Received and processed"
    content = "\n".join(
        [
            f"**Decision**: {'✅ Allow' if allowed else '❌ Deny'}",
            f"**Option**: {request.decision_reason or ''}",
            f"**Request**: `{request.id[:16]}...`",
            f"**Session**: `{request.session_id[:8] or 'N/A'}`",
            f"**Decided at**: {_format_ts(request.resolved_at)}",
            "",
            "**Callback data**:",
            "```json",
            json.dumps(callback, indent=2, ensure_ascii=False),
            "```",
            "",
            f"**Server status**: {status_line}",
        ]
    )
    return build_card(
        CardType.AUTHORIZATION_RESOLVED,
        title,
        content,
        command=request.command,
        session_id=request.session_id,
    )


def expired_card(request_id: str, request: Optional[AuthorizationRequest] = None) -> Dict[str, Any]:
    """Acknowledgment for clicks on requests that expired or were lost on restart."""
    tag = build_title_tag(request.cwd, request.session_id) if request else ""
    if request is None:
        detail = "The bridge no longer knows this request (it may have restarted)."
    else:
        detail = "This request expired before a decision was made."
    content = "\n".join(
        [
            f"**Request**: `{request_id[:16]}...`",
            detail,
            "The agent has fallen back to denying the operation; retry it from the terminal if needed.",
        ]
    )
    return build_card(
        CardType.AUTHORIZATION_RESOLVED,
        _tagged("Authorization expired", tag),
        content,
        command=request.command if request else None,
    )


def malformed_card(value: Any) -> Dict[str, Any]:
    try:
        rendered = json.dumps(value, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        rendered = repr(value)
    content = "\n".join(
        [
            "**Error**: the button value carries no requestId",
            "",
            "**Received data**:",
            "```json",
            rendered,
            "```",
            "",
            "Check that the card was built with a requestId on every button.",
        ]
    )
    return build_card(CardType.AUTHORIZATION_RESOLVED, "⚠️ Invalid callback data", content)


def task_complete_card(
    session_id: str,
    cwd: Optional[str],
    message: Optional[str],
) -> Dict[str, Any]:
    tag = build_title_tag(cwd, session_id)
    return build_card(
        CardType.TASK_COMPLETE,
        _tagged("✅ Task complete", tag),
        message or "The agent finished its task.",
        session_id=session_id,
    )


def notification_card(session_id: str, cwd: Optional[str], title: Optional[str], message: str) -> Dict[str, Any]:
    tag = build_title_tag(cwd, session_id)
    return build_card(
        CardType.NOTIFICATION,
        _tagged(title or "Notification", tag),
        message,
        session_id=session_id,
    )
