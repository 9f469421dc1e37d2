import json

import httpx
from click.testing import CliRunner

from approval_bridge import constants
from approval_bridge.cli.main import cli


def test_hook_pre_tool_prints_whitelisted_decision(monkeypatch):
    def fail_run(*args, **kwargs):
        raise AssertionError("safe commands must not reach the bridge")

    monkeypatch.setattr("approval_bridge.hooks.poll_client.BridgeClient.create_request", fail_run)

    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["hook", "pre-tool"],
        input=json.dumps({"tool_name": "Bash", "tool_input": {"command": "git status"}}),
    )

    assert result.exit_code == 0
    output = json.loads(result.stdout)
    assert output["hookSpecificOutput"]["permissionDecision"] == "allow"
    assert output["hookSpecificOutput"]["permissionDecisionReason"] == "whitelisted"


def test_hook_permission_request_uses_run_hook(monkeypatch):
    calls = []

    def fake_run_hook(hook_type, payload, settings, remote_pre_tool=False):
        calls.append((hook_type, payload, settings.bridge_url))
        return {"hookSpecificOutput": {"hookEventName": "PermissionRequest", "decision": {"behavior": "allow"}}}

    monkeypatch.setenv("FEISHU_BRIDGE_URL", "http://bridge:4000/")
    monkeypatch.setattr("approval_bridge.cli.main.run_hook", fake_run_hook)

    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["hook", "permission-request"],
        input=json.dumps({"tool_name": "Bash", "tool_input": {"command": "git push"}}),
    )

    assert result.exit_code == 0
    assert calls[0][0] == "permission-request"
    assert calls[0][1]["tool_input"]["command"] == "git push"
    assert calls[0][2] == "http://bridge:4000"
    assert json.loads(result.stdout)["hookSpecificOutput"]["decision"] == {"behavior": "allow"}


def test_hook_with_unreachable_bridge_is_silent(monkeypatch):
    monkeypatch.setenv("FEISHU_BRIDGE_URL", "http://127.0.0.1:9")

    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["hook", "permission-request"],
        input=json.dumps({"tool_name": "Bash", "tool_input": {"command": "git push"}}),
    )

    assert result.exit_code == 0
    assert result.stdout == ""


def test_hook_accepts_non_json_input(monkeypatch):
    calls = []

    def fake_run_hook(hook_type, payload, settings, remote_pre_tool=False):
        calls.append(payload)
        return None

    monkeypatch.setattr("approval_bridge.cli.main.run_hook", fake_run_hook)

    result = CliRunner().invoke(cli, ["hook", "notification"], input="plain text")

    assert result.exit_code == 0
    assert calls == [{"message": "plain text"}]
    assert result.stdout == ""


def test_hook_bad_configuration_is_silent(monkeypatch):
    monkeypatch.setenv("AUTH_POLL_TIMEOUT_MS", "soon")

    result = CliRunner().invoke(cli, ["hook", "permission-request"], input="{}")

    assert result.exit_code == 0
    assert result.stdout == ""


def test_rules_table(monkeypatch):
    def fake_request(method, path, payload=None):
        assert (method, path) == ("GET", "/api/rules")
        return [
            {
                "id": "rule-1",
                "tool": "Bash",
                "commandPattern": "git push**",
                "projectPath": None,
                "scope": "always",
                "createdAt": "2025-01-01T00:00:00+00:00",
            }
        ]

    monkeypatch.setattr("approval_bridge.cli.main._request", fake_request)

    result = CliRunner().invoke(cli, ["rules"])

    assert result.exit_code == 0
    assert "rule-1" in result.output
    assert "git push**" in result.output


def test_remove_rule(monkeypatch):
    calls = []
    monkeypatch.setattr(
        "approval_bridge.cli.main._request",
        lambda method, path, payload=None: calls.append((method, path)),
    )

    result = CliRunner().invoke(cli, ["remove-rule", "rule-1"])

    assert result.exit_code == 0
    assert calls == [("DELETE", "/api/rules/rule-1")]


def test_init_creates_runtime_dirs():
    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code == 0
    assert constants.DB_FILE.exists()
    assert constants.AUDIT_DIR.is_dir()


def test_set_admin_and_groups(group_service):
    group_service.get_or_create_group("/work/api")

    runner = CliRunner()
    missing = runner.invoke(cli, ["set-admin", "/work/other", "ou_x"])
    updated = runner.invoke(cli, ["set-admin", "/work/api", "ou_lead"])
    listing = runner.invoke(cli, ["groups"])

    assert missing.exit_code != 0
    assert updated.exit_code == 0
    assert group_service.admin_for("/work/api") == "ou_lead"
    assert "ou_lead" in listing.output


def test_hook_with_undecodable_input_is_silent(monkeypatch):
    calls = []

    def fake_run_hook(hook_type, payload, settings, remote_pre_tool=False):
        calls.append(payload)
        return None

    monkeypatch.setattr("approval_bridge.cli.main.run_hook", fake_run_hook)

    result = CliRunner().invoke(cli, ["hook", "pre-tool"], input=b"\xff\xfe{\"tool_name\": \"Bash\"}")

    assert result.exit_code == 0
    assert result.stdout == ""
    assert "message" in calls[0]


def test_rules_sends_hook_secret(monkeypatch):
    seen = []

    def fake_request(self, method, url, json=None, headers=None):
        seen.append((method, url, headers))
        return httpx.Response(200, json=[])

    monkeypatch.setenv("HOOK_SECRET", "s3cret")
    monkeypatch.setenv("FEISHU_BRIDGE_URL", "http://bridge:4000")
    monkeypatch.setattr("approval_bridge.cli.main.httpx.Client.request", fake_request)

    result = CliRunner().invoke(cli, ["rules", "--json"])

    assert result.exit_code == 0
    assert seen == [("GET", "http://bridge:4000/api/rules", {"X-Hook-Secret": "s3cret"})]
