import base64
import hashlib
import json

import httpx
import pytest

from stage_plane.base import ChangeKind, StagedChange
from stage_plane.errors import (
    ConflictError,
    NotFoundError,
    RateLimitedError,
    TransportError,
    ValidationError,
)
from stage_plane.executor import CommitTransactionExecutor, TransactionState
from stage_plane.impl.github import GitHubRemoteStore, parse_repo
from stage_plane.impl.memory import MemoryStagingStore

from conftest import BRANCH, TARGET

API = "/repos/acme/corpus/git"


def sha(kind: str, payload: bytes) -> str:
    return hashlib.sha1(f"{kind} {len(payload)}\0".encode() + payload).hexdigest()


class FakeGitHub:
    """Just enough of the Git Data API to run a publish end to end."""

    def __init__(self, files: dict[str, bytes]):
        self.blobs: dict[str, bytes] = {}
        self.trees: dict[str, list[dict]] = {}
        self.commits: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        tree = self._tree([
            {"path": path, "mode": "100644", "type": "blob", "sha": self._blob(content)}
            for path, content in files.items()
        ])
        self.head = self._commit({"tree": tree, "parents": [], "message": "init"})
        self.move_before_patch: str | None = None

    def _blob(self, content: bytes) -> str:
        key = sha("blob", content)
        self.blobs[key] = content
        return key

    def _tree(self, entries: list[dict]) -> str:
        key = sha("tree", json.dumps(entries, sort_keys=True).encode())
        self.trees[key] = entries
        return key

    def _commit(self, data: dict) -> str:
        key = sha("commit", json.dumps(data, sort_keys=True).encode())
        self.commits[key] = data
        return key

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        body = json.loads(request.content) if request.content else {}

        if request.method == "GET" and path == f"{API}/ref/heads/{BRANCH}":
            return httpx.Response(200, json={"object": {"sha": self.head}})
        if request.method == "GET" and path.startswith(f"{API}/commits/"):
            commit = self.commits.get(path.rsplit("/", 1)[1])
            if commit is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json={"sha": path.rsplit("/", 1)[1], "tree": {"sha": commit["tree"]}})
        if request.method == "GET" and path.startswith(f"{API}/trees/"):
            entries = self.trees[path.rsplit("/", 1)[1]]
            return httpx.Response(200, json={"tree": entries, "truncated": False})
        if request.method == "GET" and path.startswith(f"{API}/blobs/"):
            content = self.blobs[path.rsplit("/", 1)[1]]
            return httpx.Response(200, json={"content": base64.b64encode(content).decode(), "encoding": "base64"})
        if request.method == "POST" and path == f"{API}/blobs":
            assert body["encoding"] == "base64"
            return httpx.Response(201, json={"sha": self._blob(base64.b64decode(body["content"]))})
        if request.method == "POST" and path == f"{API}/trees":
            assert "base_tree" not in body
            return httpx.Response(201, json={"sha": self._tree(body["tree"])})
        if request.method == "POST" and path == f"{API}/commits":
            return httpx.Response(201, json={"sha": self._commit(body)})
        if request.method == "PATCH" and path == f"{API}/refs/heads/{BRANCH}":
            if self.move_before_patch:
                self.head, self.move_before_patch = self.move_before_patch, None
            new = self.commits[body["sha"]]
            if body["force"] is False and self.head not in new["parents"]:
                return httpx.Response(422, json={"message": "Update is not a fast forward"})
            self.head = body["sha"]
            return httpx.Response(200, json={"object": {"sha": self.head}})
        return httpx.Response(404, json={"message": "Not Found"})

    def files(self) -> dict[str, bytes]:
        tree = self.trees[self.commits[self.head]["tree"]]
        return {entry["path"]: self.blobs[entry["sha"]] for entry in tree}


def make_remote(handler) -> GitHubRemoteStore:
    client = httpx.Client(base_url=GitHubRemoteStore.BASE_URL, transport=httpx.MockTransport(handler))
    return GitHubRemoteStore("test-token", client=client)


def respond(status: int, payload: dict | None = None, headers: dict | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=payload or {}, headers=headers)

    return handler


def test_publish_through_github(config):
    server = FakeGitHub({"a.md": b"A", "old.md": b"moved", "trash.md": b"bye"})
    remote = make_remote(server.handler)
    baseline = remote.read_baseline(TARGET, BRANCH)
    store = MemoryStagingStore()
    store.stage(
        StagedChange(
            ChangeKind.UPDATE, "a.md", body="A2", base_revision=baseline.entries["a.md"].object_ref
        )
    )
    store.stage(
        StagedChange(
            ChangeKind.RENAME,
            "new.md",
            previous_path="old.md",
            base_revision=baseline.entries["old.md"].object_ref,
        )
    )
    store.stage(
        StagedChange(
            ChangeKind.DELETE, "trash.md", base_revision=baseline.entries["trash.md"].object_ref
        )
    )

    result = CommitTransactionExecutor(remote, config).publish(store)

    assert result.success
    assert result.revision == server.head
    assert server.files() == {"a.md": b"A2", "new.md": b"moved"}
    assert store.list() == []
    assert remote.read_blob(TARGET, baseline.entries["old.md"].object_ref) == b"moved"


def test_requests_are_authenticated():
    server = FakeGitHub({})
    remote = make_remote(server.handler)
    remote.read_baseline(TARGET, BRANCH)

    request = server.requests[0]
    assert request.headers["authorization"] == "Bearer test-token"
    assert request.headers["accept"] == "application/vnd.github+json"


def test_branch_moved_after_pre_check_is_a_conflict(config):
    server = FakeGitHub({"a.md": b"A"})
    remote = make_remote(server.handler)
    store = MemoryStagingStore()
    store.stage(StagedChange(ChangeKind.CREATE, "b.md", body="B"))
    server.move_before_patch = server._commit({"tree": server.commits[server.head]["tree"], "parents": [server.head], "message": "other"})

    result = CommitTransactionExecutor(remote, config).publish(store)

    assert result.state is TransactionState.CONFLICT
    assert len(store.list()) == 1
    assert "b.md" not in server.files()


def test_moved_tip_detected_before_patch():
    server = FakeGitHub({})
    remote = make_remote(server.handler)

    with pytest.raises(ConflictError):
        remote.update_ref(TARGET, BRANCH, "f" * 40, "0" * 40)
    assert all(request.method != "PATCH" for request in server.requests)


def test_missing_branch_is_not_found():
    remote = make_remote(respond(404, {"message": "Not Found"}))

    with pytest.raises(NotFoundError) as excinfo:
        remote.read_baseline(TARGET, "gone")
    assert "gone" in excinfo.value.message


def test_conflict_status():
    remote = make_remote(respond(409, {"message": "Git Repository is empty."}))

    with pytest.raises(ConflictError):
        remote.write_blob(TARGET, b"x")


def test_secondary_rate_limit():
    remote = make_remote(
        respond(403, {"message": "API rate limit exceeded"}, {"x-ratelimit-remaining": "0", "retry-after": "30"})
    )

    with pytest.raises(RateLimitedError) as excinfo:
        remote.read_baseline(TARGET, BRANCH)
    assert excinfo.value.retry_after == 30.0


def test_too_many_requests_without_hint():
    remote = make_remote(respond(429, {"message": "slow down"}))

    with pytest.raises(RateLimitedError) as excinfo:
        remote.write_blob(TARGET, b"x")
    assert excinfo.value.retry_after is None


def test_forbidden_is_transport_error():
    remote = make_remote(respond(403, {"message": "Resource not accessible"}, {"x-ratelimit-remaining": "42"}))

    with pytest.raises(TransportError):
        remote.write_blob(TARGET, b"x")


def test_server_error_is_transport_error():
    remote = make_remote(respond(502, {"message": "Bad Gateway"}))

    with pytest.raises(TransportError) as excinfo:
        remote.create_tree(TARGET, [])
    assert "502" in excinfo.value.message


def test_truncated_listing_is_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith(f"/ref/heads/{BRANCH}"):
            return httpx.Response(200, json={"object": {"sha": "c1"}})
        if "/commits/" in path:
            return httpx.Response(200, json={"tree": {"sha": "t1"}})
        return httpx.Response(200, json={"tree": [], "truncated": True})

    with pytest.raises(TransportError):
        make_remote(handler).read_baseline(TARGET, BRANCH)


def test_connection_failure_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError):
        make_remote(handler).read_baseline(TARGET, BRANCH)


def test_baseline_skips_directory_entries():
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith(f"/ref/heads/{BRANCH}"):
            return httpx.Response(200, json={"object": {"sha": "c1"}})
        if "/commits/" in path:
            return httpx.Response(200, json={"tree": {"sha": "t1"}})
        assert request.url.params["recursive"] == "1"
        return httpx.Response(
            200,
            json={
                "tree": [
                    {"path": "docs", "mode": "040000", "type": "tree", "sha": "t2"},
                    {"path": "docs/a.md", "mode": "100644", "type": "blob", "sha": "b1"},
                    {"path": "run.sh", "mode": "100755", "type": "blob", "sha": "b2"},
                ],
                "truncated": False,
            },
        )

    baseline = make_remote(handler).read_baseline(TARGET, BRANCH)

    assert baseline.head_revision == "c1"
    assert baseline.root_tree == "t1"
    assert sorted(baseline.entries) == ["docs/a.md", "run.sh"]
    assert baseline.entries["run.sh"].mode == "100755"


@pytest.mark.parametrize("target", ["corpus", "acme/corpus/extra", "", "/corpus"])
def test_invalid_repo_identifier(target: str):
    with pytest.raises(ValidationError):
        parse_repo(target)


def test_parse_repo():
    assert parse_repo("acme/corpus") == ("acme", "corpus")


def test_response_without_sha_is_transport_error():
    remote = make_remote(respond(201, {}))

    with pytest.raises(TransportError) as excinfo:
        remote.write_blob(TARGET, b"x")
    assert "'sha'" in excinfo.value.message


def test_response_that_is_not_json_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    with pytest.raises(TransportError):
        make_remote(handler).read_baseline(TARGET, BRANCH)


def test_listing_without_tree_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith(f"/ref/heads/{BRANCH}"):
            return httpx.Response(200, json={"object": {"sha": "c1"}})
        if "/commits/" in path:
            return httpx.Response(200, json={"tree": {"sha": "t1"}})
        return httpx.Response(200, json={"tree": "t1", "truncated": False})

    with pytest.raises(TransportError):
        make_remote(handler).read_baseline(TARGET, BRANCH)


def test_malformed_tree_response_fails_the_publish(config):
    server = FakeGitHub({"a.md": b"A"})

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path == f"{API}/trees":
            server.requests.append(request)
            return httpx.Response(201, json={"url": "https://example.invalid"})
        return server.handler(request)

    store = MemoryStagingStore()
    store.stage(StagedChange(ChangeKind.CREATE, "b.md", body="B"))
    head = server.head

    result = CommitTransactionExecutor(make_remote(handler), config).publish(store)

    assert result.history[-2:] == [TransactionState.BUILD_TREE, TransactionState.FAILED]
    assert result.to_response()["error"] == "transport"
    assert not result.maybe_committed
    assert server.head == head
    assert len(store.list()) == 1


def test_failed_read_before_ref_update_is_not_ambiguous():
    remote = make_remote(respond(500, {"message": "Server Error"}))

    with pytest.raises(TransportError) as excinfo:
        remote.update_ref(TARGET, BRANCH, "f" * 40, "0" * 40)
    assert excinfo.value.ambiguous is False


def test_failed_read_before_ref_update_is_not_maybe_committed(config):
    server = FakeGitHub({"a.md": b"A"})
    ref_reads = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET" and request.url.path == f"{API}/ref/heads/{BRANCH}":
            ref_reads.append(request)
            if len(ref_reads) > 1:
                return httpx.Response(500, json={"message": "Server Error"})
        return server.handler(request)

    store = MemoryStagingStore()
    store.stage(StagedChange(ChangeKind.CREATE, "b.md", body="B"))

    result = CommitTransactionExecutor(make_remote(handler), config).publish(store)

    assert result.history[-2:] == [TransactionState.UPDATE_REF, TransactionState.FAILED]
    assert not result.maybe_committed
    assert "maybeCommitted" not in result.to_response()
    assert all(request.method != "PATCH" for request in server.requests)
    assert "b.md" not in server.files()
