from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import click
import httpx
import uvicorn

from approval_bridge.cli.formatters import groups_table, rules_table
from approval_bridge.clients.database import init_db
from approval_bridge.clients.feishu import FeishuClient
from approval_bridge.config import get_hook_settings, get_settings
from approval_bridge.hooks.poll_client import run_hook
from approval_bridge.services.group_service import ProjectGroupService
from approval_bridge.utils.logging import setup_hook_logging, setup_logging
from approval_bridge.utils.pathing import ensure_runtime_directories

LOG = logging.getLogger(__name__)


def _request(method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
    settings = get_hook_settings()
    headers = {"X-Hook-Secret": settings.hook_secret} if settings.hook_secret else {}
    with httpx.Client(timeout=60) as client:
        response = client.request(method, f"{settings.bridge_url}{path}", json=payload, headers=headers)
    if response.status_code >= 400:
        raise click.ClickException(f"API error {response.status_code}: {response.text}")
    if response.content:
        return response.json()
    return None


def _group_service() -> ProjectGroupService:
    settings = get_settings()
    chat = FeishuClient(
        app_id=settings.feishu_app_id,
        app_secret=settings.feishu_app_secret,
        base_url=settings.feishu_base_url,
        target_id=settings.feishu_target_id,
    )
    return ProjectGroupService(chat, owner_id=settings.feishu_target_id, default_admin_id=settings.feishu_admin_user_id)


@click.group(help="Approval Bridge command-line interface.")
def cli() -> None:
    """Root command for Approval Bridge."""


@cli.command()
def init() -> None:
    """Initialize local directories and database."""
    setup_logging()
    ensure_runtime_directories()
    init_db()
    click.echo("Approval Bridge environment initialized.")


@cli.command()
@click.option("--host", help="Interface to bind (defaults to BRIDGE_HOST).")
@click.option("--port", type=int, help="Port to bind (defaults to BRIDGE_PORT).")
def serve(host: Optional[str], port: Optional[int]) -> None:
    """Run the bridge HTTP server."""
    settings = get_settings()
    uvicorn.run(
        "approval_bridge.api.main:app",
        host=host or settings.host,
        port=port or settings.port,
        log_config=None,
    )


@cli.command()
@click.argument(
    "hook_type",
    type=click.Choice(["pre-tool", "permission-request", "stop", "notification"]),
)
@click.option(
    "--remote/--filter-only",
    default=False,
    show_default=True,
    help="For pre-tool: ask remotely instead of only auto-allowing safe commands.",
)
def hook(hook_type: str, remote: bool) -> None:
    """Handle one agent hook event read from stdin.

    Only the decision JSON is written to stdout. The command always exits 0
    so a broken bridge never blocks the agent.
    """
    setup_hook_logging()
    raw = click.get_binary_stream("stdin").read().decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw) if raw.strip() else {}
    except ValueError:
        payload = {"message": raw}
    if not isinstance(payload, dict):
        payload = {"message": raw}

    try:
        settings = get_hook_settings()
    except ValueError:
        LOG.exception("Invalid hook configuration")
        return

    output = run_hook(hook_type, payload, settings, remote_pre_tool=remote)
    if output is not None:
        click.echo(json.dumps(output), nl=False)


@cli.command("rules")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON instead of a table.")
def list_rules(as_json: bool) -> None:
    """List permission rules held by the running bridge."""
    result = _request("GET", "/api/rules")
    if as_json:
        click.echo(json.dumps(result, indent=2))
    else:
        click.echo(rules_table(result))


@cli.command("remove-rule")
@click.argument("rule_id")
def remove_rule(rule_id: str) -> None:
    """Delete a permission rule by id."""
    _request("DELETE", f"/api/rules/{rule_id}")
    click.echo("Rule removed.")


@cli.command("groups")
def list_groups() -> None:
    """List project chat groups known locally."""
    init_db()
    groups = _group_service().list_groups()
    click.echo(groups_table(groups))


@cli.command("set-admin")
@click.argument("project_path")
@click.argument("user_id")
def set_admin(project_path: str, user_id: str) -> None:
    """Page USER_ID for unanswered cards from PROJECT_PATH."""
    init_db()
    service = _group_service()
    if service.get_group(project_path) is None:
        raise click.ClickException(f"No group recorded for {project_path}.")
    service.set_admin(project_path, user_id)
    click.echo("Admin updated.")


if __name__ == "__main__":
    cli()
