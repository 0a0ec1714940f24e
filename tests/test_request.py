import pytest

from stage_plane.base import ChangeKind
from stage_plane.errors import ValidationError
from stage_plane.executor import CommitTransactionExecutor
from stage_plane.impl.memory import create_memory_remote_store
from stage_plane.request import handle_publish_request, parse_publish_request

from conftest import BRANCH, TARGET


@pytest.fixture
def executor(config):
    remote = create_memory_remote_store()
    remote.seed(TARGET, BRANCH, {"a.md": b"A"})
    return CommitTransactionExecutor(remote, config)


def test_parse_request():
    request = parse_publish_request(
        {
            "target": TARGET,
            "ref": "drafts",
            "message": "Tidy up",
            "changes": [
                {"kind": "create", "path": "b.md", "body": "B"},
                {"kind": "rename", "path": "c.md", "previousPath": "a.md", "baseRevision": "r1"},
            ],
        }
    )

    assert request.target == TARGET
    assert request.ref == "drafts"
    assert request.message == "Tidy up"
    assert [change.kind for change in request.changes] == [ChangeKind.CREATE, ChangeKind.RENAME]
    assert request.changes[1].previous_path == "a.md"


@pytest.mark.parametrize(
    "payload, message",
    [
        ([], "Request body must be an object"),
        ({"changes": []}, "Missing required fields: target"),
        ({}, "Missing required fields: target, changes"),
        ({"target": "", "changes": []}, "target must not be empty"),
        ({"target": TARGET, "changes": "a.md"}, "changes must be a list"),
        ({"target": TARGET, "changes": []}, "No changes to commit"),
        ({"target": TARGET, "changes": ["a.md"]}, "changes[0] must be an object"),
        (
            {"target": TARGET, "changes": [{"kind": "create", "path": 5, "body": "x"}]},
            "changes[0]: path must be a string, got int",
        ),
        (
            {"target": TARGET, "changes": [{"kind": "create", "path": "a.md", "body": 5}]},
            "changes[0]: body must be a string, got int",
        ),
        (
            {
                "target": TARGET,
                "changes": [
                    {"kind": "create", "path": "a.md", "body": "x"},
                    {"kind": "rename", "path": "b.md", "previousPath": ["c.md"], "baseRevision": "r1"},
                ],
            },
            "changes[1]: previousPath must be a string, got list",
        ),
        (
            {"target": TARGET, "changes": [{"kind": "delete", "path": "a.md", "baseRevision": 7}]},
            "changes[0]: baseRevision must be a string, got int",
        ),
        (
            {"target": TARGET, "changes": [{"kind": "create", "path": "a.md", "body": "x", "tags": "x"}]},
            "changes[0]: tags must be an object, got str",
        ),
    ],
)
def test_malformed_requests(payload, message: str):
    with pytest.raises(ValidationError) as excinfo:
        parse_publish_request(payload)
    assert excinfo.value.message == message


def test_invalid_change_is_reported_with_its_index():
    with pytest.raises(ValidationError) as excinfo:
        parse_publish_request(
            {
                "target": TARGET,
                "changes": [
                    {"kind": "create", "path": "b.md", "body": "B"},
                    {"kind": "update", "path": "a.md", "body": "A2"},
                ],
            }
        )
    assert excinfo.value.message.startswith("changes[1]: baseRevision is required")


def test_unknown_kind_is_rejected():
    with pytest.raises(ValidationError):
        parse_publish_request({"target": TARGET, "changes": [{"kind": "move", "path": "a.md"}]})


def test_handle_successful_request(executor):
    response = handle_publish_request(
        {"target": TARGET, "changes": [{"kind": "create", "path": "b.md", "body": "B"}]},
        executor,
    )

    assert response["success"] is True
    assert response["pathsChanged"] == 1
    baseline = executor.remote.read_baseline(TARGET, BRANCH)
    assert baseline.head_revision == response["revision"]
    assert sorted(baseline.entries) == ["a.md", "b.md"]


def test_handle_invalid_request(executor):
    response = handle_publish_request({"target": TARGET, "changes": []}, executor)
    assert response == {"success": False, "error": "validation", "message": "No changes to commit"}


def test_handle_stale_request(executor):
    response = handle_publish_request(
        {
            "target": TARGET,
            "changes": [{"kind": "update", "path": "a.md", "body": "A2", "baseRevision": "stale"}],
        },
        executor,
    )

    assert response["success"] is False
    assert response["error"] == "conflict"
    assert response["reload"] is True


def test_handle_request_for_unknown_target(executor):
    response = handle_publish_request(
        {"target": "acme/missing", "changes": [{"kind": "create", "path": "b.md", "body": "B"}]},
        executor,
    )
    assert response["error"] == "not_found"


@pytest.mark.parametrize(
    "changes",
    [
        [
            {"kind": "rename", "path": "b.md", "previousPath": "a.md", "baseRevision": "r1"},
            {"kind": "rename", "path": "c.md", "previousPath": "a.md", "baseRevision": "r1"},
        ],
        [
            {"kind": "delete", "path": "a.md", "baseRevision": "r1"},
            {"kind": "rename", "path": "b.md", "previousPath": "a.md", "baseRevision": "r1"},
        ],
        [
            {"kind": "update", "path": "a.md", "body": "1", "baseRevision": "r1"},
            {"kind": "update", "path": "a.md", "body": "2", "baseRevision": "r1"},
        ],
    ],
    ids=["rename-twice", "delete-then-rename", "update-twice"],
)
def test_overlapping_changes_are_rejected(changes, executor):
    with pytest.raises(ValidationError) as excinfo:
        parse_publish_request({"target": TARGET, "changes": changes})
    assert "'a.md' is touched by more than one change" in excinfo.value.message

    head = executor.remote.read_baseline(TARGET, BRANCH).head_revision
    response = handle_publish_request({"target": TARGET, "changes": changes}, executor)
    assert response["error"] == "validation"
    assert executor.remote.read_baseline(TARGET, BRANCH).head_revision == head


@pytest.mark.parametrize(
    "changes",
    [
        [
            {"kind": "delete", "path": "a.md", "baseRevision": "r1"},
            {"kind": "create", "path": "a.md", "body": "x"},
        ],
        [
            {"kind": "rename", "path": "b.md", "previousPath": "a.md", "baseRevision": "r1"},
            {"kind": "create", "path": "a.md", "body": "x"},
        ],
        [
            {"kind": "create", "path": "a.md", "body": "x"},
            {"kind": "delete", "path": "a.md", "baseRevision": "r1"},
        ],
    ],
    ids=["delete-then-create", "rename-then-create", "create-then-delete"],
)
def test_freed_paths_may_be_reused(changes):
    request = parse_publish_request({"target": TARGET, "changes": changes})
    assert len(request.changes) == 2
