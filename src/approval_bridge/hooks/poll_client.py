"""Caller-side authorization flow run from the agent's hook commands.

The hook process owns stdout for its decision JSON. Anything that goes
wrong results in no output at all, which the agent treats as "ask in the
terminal as usual".
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from approval_bridge import constants
from approval_bridge.config import HookSettings
from approval_bridge.models.enums import Decision, HookProtocol, RequestStatus

LOG = logging.getLogger(__name__)

SAFE_COMMANDS = [
    # Read-only filesystem
    re.compile(r"^(ls|cat|head|tail|echo|pwd|which|whoami|date|env|printenv|uname|hostname)\b"),
    re.compile(r"^(wc|sort|uniq|tr|cut|tee|xargs|basename|dirname|realpath|readlink)\b"),
    re.compile(r"^(file|stat|du|df|uptime|free|top -l|ps)\b"),
    re.compile(r"^(grep|rg|find|fd|ag|ack)\b"),
    re.compile(r"^test\b"),
    re.compile(r"^\["),
    # Local file operations
    re.compile(r"^(mkdir|touch|cp|mv|chmod|chown|ln)\b"),
    # Git, read-only and local-only
    re.compile(
        r"^git\s+(status|log|diff|branch|show|remote|tag|stash|rev-parse|config|add|commit|checkout"
        r"|switch|merge|rebase|reset|cherry-pick|bisect|blame|shortlog|describe|fetch|rm|restore|clean)\b"
    ),
    # Runtimes and package managers, excluding publish/push
    re.compile(r"^(node|python|python3|ruby|java|go|rustc|cargo)\b"),
    re.compile(
        r"^(npm|pnpm|yarn|bun|deno)\s+(install|ci|run|exec|test|build|start|dev|init|create|info|list"
        r"|ls|outdated|audit|why|pack|link|unlink|--version)\b"
    ),
    re.compile(r"^npx\b"),
    re.compile(r"^(pip|pip3)\s+(install|list|show|freeze|check)\b"),
    re.compile(r"^(curl|wget|http|fetch)\b"),
    re.compile(r"^(sed|awk|perl|jq|yq|column|less|more|vim|vi|nano|code|open)\b"),
    re.compile(r"^(tar|zip|unzip|gzip|gunzip|bzip2|xz)\b"),
    re.compile(r"^(diff|patch|md5|shasum|sha256sum|base64|xxd)\b"),
    re.compile(r"^(make|cmake|gcc|g\+\+|clang|ld)\b"),
    re.compile(r"^(tmux|screen|nohup|time|timeout|watch|wait|sleep)\b"),
    re.compile(r"^(tsc|tsx|ts-node|esbuild|vite|webpack|rollup|vitest|jest|mocha|pytest)\b"),
    re.compile(r"^docker\s+(ps|images|logs|inspect|exec|build|run|compose|version|info)\b"),
]

NOISE_NOTIFICATIONS = [
    re.compile(r"waiting for your input", re.IGNORECASE),
    re.compile(r"waiting for input", re.IGNORECASE),
]

REASON_WHITELISTED = "whitelisted"
REASON_EXPIRED = "expired"
REASON_TIMEOUT = "timeout"

SHELL_CONTROL = re.compile(r";|&&|\|\||\||`|\$\(|>|<|\n")


def is_safe_command(command: Optional[str]) -> bool:
    if not command:
        return False
    trimmed = command.strip()
    if SHELL_CONTROL.search(trimmed):
        return False
    return any(pattern.search(trimmed) for pattern in SAFE_COMMANDS)


def is_noise_notification(message: Optional[str]) -> bool:
    return bool(message) and any(pattern.search(message) for pattern in NOISE_NOTIFICATIONS)


def build_options(suggestions: Any) -> List[str]:
    """Button labels for a permission prompt: ``Yes``, one per suggestion, ``No``."""
    options = ["Yes"]
    if isinstance(suggestions, list):
        for suggestion in suggestions:
            kind = suggestion.get("type") if isinstance(suggestion, dict) else None
            if kind == "toolAlwaysAllow":
                options.append("Yes, don't ask again")
            elif kind == "pathAlwaysAllow":
                options.append("Yes, don't ask again for this project")
            else:
                options.append("Yes, always")
    options.append("No")
    return options


def _is_always_label(label: Optional[str]) -> bool:
    lowered = (label or "").lower()
    return "always" in lowered or "don't ask again" in lowered


class BridgeRequestError(RuntimeError):
    """Raised when the bridge server cannot be reached or answers with an error."""


class BridgeClient:
    """HTTP client for the bridge's hook endpoints."""

    def __init__(
        self,
        base_url: str,
        hook_secret: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"X-Hook-Secret": hook_secret} if hook_secret else {}
        self._client = httpx.Client(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, payload: Any = None, params: Any = None) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, json=payload, params=params)
        except httpx.HTTPError as exc:
            raise BridgeRequestError(f"Bridge request {method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise BridgeRequestError(f"Bridge error {response.status_code}: {response.text}")
        try:
            return response.json()
        except ValueError as exc:
            raise BridgeRequestError(f"Bridge returned invalid JSON for {path}") from exc

    def create_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/api/hook/pre-tool", payload)

    def poll(self, request_id: str) -> Dict[str, Any]:
        return self._request("GET", "/api/hook/auth-poll", params={"requestId": request_id})

    def notify(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", path, payload)


@dataclass
class HookDecision:
    allow: bool
    reason: str
    label: Optional[str] = None


def format_decision(
    protocol: HookProtocol,
    decision: HookDecision,
    suggestions: Any = None,
) -> Dict[str, Any]:
    """Render a decision in the shape the invoking hook event expects."""
    if protocol == HookProtocol.PRE_TOOL_USE:
        return {
            "hookSpecificOutput": {
                "hookEventName": HookProtocol.PRE_TOOL_USE.value,
                "permissionDecision": "allow" if decision.allow else "deny",
                "permissionDecisionReason": decision.reason,
            }
        }

    body: Dict[str, Any] = {"behavior": "allow" if decision.allow else "deny"}
    if decision.allow and _is_always_label(decision.label) and isinstance(suggestions, list) and suggestions:
        body["updatedPermissions"] = suggestions
    if not decision.allow and decision.reason:
        body["message"] = decision.reason
    return {
        "hookSpecificOutput": {
            "hookEventName": HookProtocol.PERMISSION_REQUEST.value,
            "decision": body,
        }
    }


class PollClient:
    """Create an authorization request and block until it is answered."""

    def __init__(
        self,
        bridge: BridgeClient,
        interval: float = 2.0,
        deadline: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bridge = bridge
        self.interval = interval
        self.deadline = deadline
        self.sleep = sleep
        self.clock = clock

    def authorize(self, payload: Dict[str, Any]) -> Optional[HookDecision]:
        """Returns ``None`` when the agent should fall back to its own prompt."""
        tool = payload.get("tool_name") or payload.get("tool")
        tool_input = payload.get("tool_input")
        command = None
        if tool == constants.SHELL_TOOL and isinstance(tool_input, dict):
            command = tool_input.get("command")

        if is_safe_command(command):
            LOG.info("Safe command, auto-allowing: %.60s", command)
            return HookDecision(allow=True, reason=REASON_WHITELISTED)

        try:
            response = self.bridge.create_request(payload)
        except BridgeRequestError:
            LOG.exception("Could not create authorization request")
            return None

        decision = response.get("decision")
        if decision:
            reason = response.get("reason") or "rule"
            LOG.info("Immediate decision: %s (%s)", decision, reason)
            return HookDecision(allow=decision == Decision.ALLOW.value, reason=reason)

        request_id = response.get("requestId")
        if not request_id:
            LOG.warning("No requestId returned, falling back to manual")
            return None

        LOG.info("Auth request created: %s, waiting for a remote decision", request_id)
        return self.wait_for_decision(request_id)

    def wait_for_decision(self, request_id: str) -> HookDecision:
        deadline_at = self.clock() + self.deadline
        while self.clock() < deadline_at:
            try:
                response = self.bridge.poll(request_id)
            except BridgeRequestError as exc:
                LOG.warning("Poll error: %s", exc)
                self.sleep(self.interval)
                continue

            status = response.get("status")
            if status == RequestStatus.RESOLVED.value:
                label = response.get("reason") or ""
                return HookDecision(
                    allow=response.get("decision") == Decision.ALLOW.value,
                    reason=label or "remote decision",
                    label=label,
                )
            if status == RequestStatus.EXPIRED.value:
                return HookDecision(allow=False, reason=REASON_EXPIRED)
            self.sleep(self.interval)

        LOG.warning("Auth poll timeout after %ss", self.deadline)
        return HookDecision(allow=False, reason=REASON_TIMEOUT)


HOOK_ENDPOINTS = {
    "stop": "/api/hook/stop",
    "notification": "/api/hook/notification",
}


def run_hook(
    hook_type: str,
    payload: Dict[str, Any],
    settings: HookSettings,
    remote_pre_tool: bool = False,
    transport: Optional[httpx.BaseTransport] = None,
) -> Optional[Dict[str, Any]]:
    """Run one hook invocation and return the JSON to print, if any."""
    bridge = BridgeClient(
        settings.bridge_url,
        settings.hook_secret,
        timeout=settings.request_timeout_seconds,
        transport=transport,
    )
    try:
        if hook_type in ("pre-tool", "permission-request"):
            return _authorize(hook_type, payload, bridge, settings, remote_pre_tool)

        if hook_type == "notification" and is_noise_notification(payload.get("message")):
            LOG.info("Filtered notification: %.60s", payload.get("message"))
            return None
        endpoint = HOOK_ENDPOINTS.get(hook_type, HOOK_ENDPOINTS["notification"])
        try:
            bridge.notify(endpoint, payload)
            LOG.info("Notification sent: %s", hook_type)
        except BridgeRequestError as exc:
            LOG.error("Failed to send notification: %s", exc)
        return None
    except Exception:
        LOG.exception("Hook %s failed", hook_type)
        return None
    finally:
        bridge.close()


def _authorize(
    hook_type: str,
    payload: Dict[str, Any],
    bridge: BridgeClient,
    settings: HookSettings,
    remote_pre_tool: bool,
) -> Optional[Dict[str, Any]]:
    poller = PollClient(
        bridge,
        interval=settings.poll_interval_seconds,
        deadline=settings.poll_timeout_seconds,
    )

    if hook_type == "permission-request":
        suggestions = payload.get("permission_suggestions")
        request = dict(payload, options=build_options(suggestions))
        decision = poller.authorize(request)
        if decision is None:
            return None
        return format_decision(HookProtocol.PERMISSION_REQUEST, decision, suggestions)

    if not remote_pre_tool:
        # Only the safe-command filter runs here; anything else defers to
        # the PermissionRequest hook by printing nothing.
        tool_input = payload.get("tool_input")
        command = tool_input.get("command") if isinstance(tool_input, dict) else None
        tool = payload.get("tool_name") or payload.get("tool")
        if tool == constants.SHELL_TOOL and is_safe_command(command):
            return format_decision(
                HookProtocol.PRE_TOOL_USE,
                HookDecision(allow=True, reason=REASON_WHITELISTED),
            )
        LOG.info("Non-safe command, deferring to PermissionRequest: %.60s", command or tool or "")
        return None

    request = dict(payload, options=payload.get("options") or list(constants.DEFAULT_OPTIONS))
    decision = poller.authorize(request)
    if decision is None:
        return None
    return format_decision(HookProtocol.PRE_TOOL_USE, decision)
