import threading

from approval_bridge.models.authorization import FileToolInput, GenericToolInput, ShellToolInput
from approval_bridge.models.enums import Decision, RequestStatus
from approval_bridge.services.request_service import AuthorizationRequestStore


def _create(store, command="git push origin main"):
    return store.create(
        session_id="sess-1",
        tool="Bash",
        tool_input={"command": command},
        options=["Yes", "No"],
        command=command,
        cwd="/proj",
    )


def test_create_and_get(request_store):
    request = _create(request_store)

    fetched = request_store.get(request.id)

    assert fetched is request
    assert fetched.status == RequestStatus.PENDING
    assert fetched.decision is None
    assert isinstance(fetched.tool_input, ShellToolInput)
    assert fetched.tool_input.command == "git push origin main"


def test_tool_input_variants(request_store):
    edit = request_store.create("s", "Edit", {"file_path": "/a.py", "old_string": "x"}, ["Yes", "No"])
    other = request_store.create("s", "WebFetch", {"url": "https://example.com"}, ["Yes", "No"])

    assert isinstance(edit.tool_input, FileToolInput)
    assert edit.tool_input.extra == {"old_string": "x"}
    assert isinstance(other.tool_input, GenericToolInput)
    assert other.tool_input.payload["url"] == "https://example.com"


def test_get_unknown_returns_none(request_store):
    assert request_store.get("missing") is None


def test_lazy_expiry_on_read(request_store, clock):
    request = _create(request_store)

    clock.advance(300)
    assert request_store.get(request.id).status == RequestStatus.PENDING

    clock.advance(1)
    assert request.status == RequestStatus.PENDING
    assert request_store.get(request.id).status == RequestStatus.EXPIRED


def test_resolve_sets_decision(request_store, clock):
    request = _create(request_store)
    clock.advance(5)

    resolved = request_store.resolve(request.id, Decision.ALLOW, "Yes")

    assert resolved.status == RequestStatus.RESOLVED
    assert resolved.decision == Decision.ALLOW
    assert resolved.decision_reason == "Yes"
    assert resolved.resolved_at == clock.now


def test_resolve_is_idempotent(request_store):
    request = _create(request_store)

    request_store.resolve(request.id, Decision.DENY, "No")
    again = request_store.resolve(request.id, Decision.ALLOW, "Yes")

    assert again.decision == Decision.DENY
    assert again.decision_reason == "No"


def test_resolve_transition_reports_only_first_caller(request_store):
    request = _create(request_store)

    _, first = request_store.resolve_transition(request.id, Decision.ALLOW, "Yes")
    _, second = request_store.resolve_transition(request.id, Decision.ALLOW, "Yes")

    assert (first, second) == (True, False)


def test_concurrent_resolution_has_single_winner(request_store):
    request = _create(request_store)
    winners = []
    barrier = threading.Barrier(8)

    def click(index):
        barrier.wait()
        decision = Decision.ALLOW if index % 2 else Decision.DENY
        _, transitioned = request_store.resolve_transition(request.id, decision, f"label-{index}")
        if transitioned:
            winners.append(index)

    threads = [threading.Thread(target=click, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(winners) == 1
    assert request.decision_reason == f"label-{winners[0]}"


def test_resolve_does_not_revive_expired(request_store, clock):
    request = _create(request_store)
    clock.advance(301)
    request_store.get(request.id)

    result = request_store.resolve(request.id, Decision.ALLOW, "Yes")

    assert result.status == RequestStatus.EXPIRED
    assert result.decision is None


def test_resolve_unknown_returns_none(request_store):
    assert request_store.resolve("missing", Decision.ALLOW, "Yes") is None


def test_attach_and_find_by_message(request_store):
    request = _create(request_store)

    request_store.attach_message(request.id, "om_1", "oc_1")

    assert request.external_message_ref.message_id == "om_1"
    assert request_store.find_by_message("om_1") is request
    assert request_store.find_by_message("om_2") is None


def test_cleanup_removes_requests_older_than_twice_ttl(clock):
    store = AuthorizationRequestStore(ttl_seconds=60, clock=clock)
    old = _create(store)
    clock.advance(100)
    recent = _create(store)
    clock.advance(21)

    removed = store.cleanup()

    assert removed == 1
    assert store.get(old.id) is None
    assert store.get(recent.id) is not None
    assert len(store) == 1
