import hashlib
import threading
from dataclasses import dataclass, field
from typing import Any

from stage_plane.base import Author, Baseline, RemoteStore, StagedChange, StagingStore, TreeEntry
from stage_plane.errors import ConflictError, NotFoundError


class MemoryStagingStore(StagingStore):
    def __init__(self, entries: list[StagedChange] | None = None) -> None:
        super().__init__()
        self.entries: list[StagedChange] = list(entries or [])

    def _read(self) -> list[StagedChange]:
        return list(self.entries)

    def _write(self, entries: list[StagedChange]) -> None:
        self.entries = list(entries)


@dataclass
class MemoryCommit:
    tree: str
    parents: list[str]
    message: str
    author: Author


@dataclass
class MemoryRepository:
    objects: dict[str, Any] = field(default_factory=dict)
    refs: dict[str, str] = field(default_factory=dict)


MemoryRemoteData = dict[str, MemoryRepository]


def _hash(kind: str, payload: bytes) -> str:
    return hashlib.sha1(f"{kind} {len(payload)}\0".encode() + payload).hexdigest()


class MemoryRemoteStore(RemoteStore):
    """
    Content-addressable remote kept in a dict, shared between instances the
    same way several clients share one server.

    Blob references match git's blob ids; trees and commits are hashed over a
    canonical text form.
    """

    def __init__(self, data: MemoryRemoteData | None = None) -> None:
        self.data: MemoryRemoteData = data if data is not None else {}
        self._lock = threading.Lock()

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        if cycle:
            p.text("MemoryRemoteStore(...)")
        else:
            with p.group(4, "MemoryRemoteStore(", ")"):
                p.breakable()
                p.text(f"targets={sorted(self.data)},")
                p.breakable()

    def _repo(self, target: str) -> MemoryRepository:
        repo = self.data.get(target)
        if repo is None:
            raise NotFoundError(f"Repository '{target}' not found")
        return repo

    def seed(self, target: str, ref: str, files: dict[str, bytes], message: str = "Initial commit") -> str:
        """Create (or move) `ref` to a root commit holding `files`."""
        self.data.setdefault(target, MemoryRepository())
        entries = [TreeEntry(path, self.write_blob(target, content)) for path, content in files.items()]
        tree = self.create_tree(target, entries)
        revision = self.create_commit(target, tree, [], message, Author("seed", "seed@localhost"))
        self.data[target].refs[ref] = revision
        return revision

    def get_commit(self, target: str, revision: str) -> MemoryCommit:
        commit = self._repo(target).objects.get(revision)
        if not isinstance(commit, MemoryCommit):
            raise NotFoundError(f"Commit '{revision}' not found in {target}")
        return commit

    def read_baseline(self, target: str, ref: str) -> Baseline:
        repo = self._repo(target)
        head = repo.refs.get(ref)
        if head is None:
            raise NotFoundError(f"Branch '{ref}' not found in {target}")
        commit = self.get_commit(target, head)
        entries = {entry.path: entry for entry in repo.objects[commit.tree]}
        return Baseline(head_revision=head, root_tree=commit.tree, entries=entries)

    def write_blob(self, target: str, content: bytes) -> str:
        object_ref = _hash("blob", content)
        with self._lock:
            self._repo(target).objects[object_ref] = content
        return object_ref

    def read_blob(self, target: str, object_ref: str) -> bytes:
        content = self._repo(target).objects.get(object_ref)
        if not isinstance(content, bytes):
            raise NotFoundError(f"Blob '{object_ref}' not found in {target}")
        return content

    def create_tree(self, target: str, entries: list[TreeEntry]) -> str:
        repo = self._repo(target)
        ordered = sorted(entries, key=lambda entry: entry.path)
        for entry in ordered:
            if entry.type == "blob" and entry.object_ref not in repo.objects:
                raise NotFoundError(f"Object '{entry.object_ref}' for '{entry.path}' not found")

        payload = "".join(
            f"{entry.mode} {entry.type} {entry.object_ref}\t{entry.path}\n" for entry in ordered
        ).encode()
        tree = _hash("tree", payload)
        with self._lock:
            repo.objects[tree] = tuple(ordered)
        return tree

    def create_commit(
        self,
        target: str,
        tree: str,
        parents: list[str],
        message: str,
        author: Author,
    ) -> str:
        repo = self._repo(target)
        if tree not in repo.objects:
            raise NotFoundError(f"Tree '{tree}' not found in {target}")

        lines = [f"tree {tree}"] + [f"parent {parent}" for parent in parents]
        lines.append(f"author {author.name} <{author.email}>")
        payload = ("\n".join(lines) + "\n\n" + message).encode()
        revision = _hash("commit", payload)
        with self._lock:
            repo.objects[revision] = MemoryCommit(tree, list(parents), message, author)
        return revision

    def update_ref(self, target: str, ref: str, revision: str, expected: str) -> None:
        repo = self._repo(target)
        with self._lock:
            current = repo.refs.get(ref)
            if current is None:
                raise NotFoundError(f"Branch '{ref}' not found in {target}")
            if current != expected:
                raise ConflictError(
                    f"Branch '{ref}' moved from {expected[:7]} to {current[:7]}. "
                    f"Repository has been updated. Please refresh and try again."
                )
            repo.refs[ref] = revision


def create_memory_remote_store(data: MemoryRemoteData | None = None) -> MemoryRemoteStore:
    return MemoryRemoteStore(data)


def create_memory_staging_store(entries: list[StagedChange] | None = None) -> MemoryStagingStore:
    return MemoryStagingStore(entries)
