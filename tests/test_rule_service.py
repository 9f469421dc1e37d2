import json
import threading

import pytest

from approval_bridge import constants
from approval_bridge.models.enums import RuleScope
from approval_bridge.services.rule_service import (
    PermissionRuleStore,
    RuleStoreError,
    glob_to_regex,
    match_glob,
    pattern_from_command,
)


@pytest.mark.parametrize(
    "pattern,text,expected",
    [
        ("git push**", "git push origin main", True),
        ("git push**", "git push", True),
        ("git push**", "git pull", False),
        ("npm *", "npm run build --prod", True),
        ("ls ?", "ls a", True),
        ("ls ?", "ls ab", False),
        ("echo (hi)", "echo (hi)", True),
        ("echo a.b", "echo aXb", False),
        ("rm -rf /tmp/*", "rm -rf /tmp/a/b", True),
    ],
)
def test_match_glob(pattern, text, expected):
    assert match_glob(pattern, text) is expected


def test_glob_to_regex_is_anchored_and_collapses_stars():
    assert glob_to_regex("a**b") == "^a.*b$"
    assert glob_to_regex("a*b") == "^a.*b$"


def test_match_glob_matches_whole_string_only():
    assert not match_glob("push", "git push")
    assert not match_glob("git", "git status")


@pytest.mark.parametrize(
    "command,expected",
    [
        ("git push origin main", "git push**"),
        ("ls", "ls**"),
        ("  npm   test  ", "npm test**"),
        ("", "**"),
    ],
)
def test_pattern_from_command(command, expected):
    assert pattern_from_command(command) == expected


def test_first_matching_rule_wins(rule_store):
    first = rule_store.add_rule("Bash", command_pattern="git **")
    rule_store.add_rule("Bash", command_pattern="git push**")

    matched = rule_store.match("Bash", "git push origin main")

    assert matched.id == first.id


def test_match_requires_same_tool_and_command(rule_store):
    rule_store.add_rule("Bash", command_pattern="git push**")

    assert rule_store.match("Edit", "git push") is None
    assert rule_store.match("Bash", None) is None
    assert rule_store.match("Bash", "npm publish") is None


def test_rule_without_pattern_matches_any_command(rule_store):
    rule = rule_store.add_rule("Write")

    assert rule_store.match("Write").id == rule.id
    assert rule_store.match("Write", "anything").id == rule.id


def test_project_rule_is_separator_anchored(rule_store):
    rule_store.add_rule("Bash", scope=RuleScope.PROJECT, command_pattern="git push**", project_path="/proj")

    assert rule_store.match("Bash", "git push", "/proj") is not None
    assert rule_store.match("Bash", "git push", "/proj/sub/dir") is not None
    assert rule_store.match("Bash", "git push", "/project2") is None
    assert rule_store.match("Bash", "git push", None) is None


def test_rules_persist_and_reload(rule_store):
    rule = rule_store.add_rule("Bash", command_pattern="git push**")

    on_disk = json.loads(constants.RULES_FILE.read_text(encoding="utf-8"))
    assert on_disk[0]["commandPattern"] == "git push**"
    assert on_disk[0]["scope"] == "always"

    reloaded = PermissionRuleStore(constants.RULES_FILE)
    assert [r.id for r in reloaded.get_rules()] == [rule.id]


def test_remove_rule(rule_store):
    rule = rule_store.add_rule("Bash", command_pattern="git push**")

    assert rule_store.remove_rule(rule.id) is True
    assert rule_store.remove_rule(rule.id) is False
    assert rule_store.match("Bash", "git push") is None
    assert PermissionRuleStore(constants.RULES_FILE).get_rules() == []


def test_get_rules_returns_copies(rule_store):
    rule_store.add_rule("Bash", command_pattern="git push**")

    snapshot = rule_store.get_rules()
    snapshot[0].tool = "Edit"
    snapshot.clear()

    assert rule_store.get_rules()[0].tool == "Bash"


def test_corrupt_rules_file_loads_empty():
    constants.RULES_FILE.parent.mkdir(parents=True, exist_ok=True)
    constants.RULES_FILE.write_text("{not json", encoding="utf-8")

    store = PermissionRuleStore(constants.RULES_FILE)

    assert store.get_rules() == []


def test_write_failure_raises_rule_store_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    store = PermissionRuleStore(blocker / "rules.json")

    with pytest.raises(RuleStoreError):
        store.add_rule("Bash")


def test_failed_save_keeps_previous_file(rule_store, monkeypatch):
    kept = rule_store.add_rule("Bash", command_pattern="git push**")

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("approval_bridge.services.rule_service.os.replace", broken_replace)

    with pytest.raises(RuleStoreError):
        rule_store.add_rule("Bash", command_pattern="npm publish**")
    with pytest.raises(RuleStoreError):
        rule_store.remove_rule(kept.id)

    assert [rule.id for rule in rule_store.get_rules()] == [kept.id]
    on_disk = json.loads(constants.RULES_FILE.read_text(encoding="utf-8"))
    assert [item["id"] for item in on_disk] == [kept.id]


def test_concurrent_adds_are_all_persisted(rule_store):
    threads = [
        threading.Thread(target=rule_store.add_rule, args=("Bash",), kwargs={"command_pattern": f"cmd{i}**"})
        for i in range(20)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    reloaded = PermissionRuleStore(constants.RULES_FILE)
    assert len(reloaded.get_rules()) == 20
    assert {rule.id for rule in reloaded.get_rules()} == {rule.id for rule in rule_store.get_rules()}
