import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from stage_plane.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = "100644"


class ChangeKind(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RENAME = "rename"


@dataclass(frozen=True)
class StagedChange:
    """
    One pending mutation of a single file.

    `base_revision` is the object reference the client believes is at `path`
    (or `previous_path` for renames) and is checked again at publish time.
    """

    kind: ChangeKind
    path: str
    previous_path: str | None = None
    body: str | None = None
    base_revision: str | None = None
    note: str | None = None
    tags: dict = field(default_factory=dict)

    def touched_paths(self) -> set[str]:
        paths = {self.path}
        if self.previous_path:
            paths.add(self.previous_path)
        return paths

    def default_note(self) -> str:
        if self.kind is ChangeKind.RENAME:
            return f"Rename {self.previous_path} to {self.path}"
        return f"{self.kind.value.capitalize()} {self.path}"

    def check_shape(self) -> None:
        """Validate everything except the base revision requirement."""
        _check_path(self.path, "path")

        if self.kind is ChangeKind.RENAME:
            if not self.previous_path:
                raise ValidationError("previousPath is required for rename operations")
            _check_path(self.previous_path, "previousPath")
            if self.previous_path == self.path:
                raise ValidationError(f"Rename source and target are both '{self.path}'")
        elif self.previous_path is not None:
            raise ValidationError(
                f"previousPath is only allowed for rename operations, got {self.kind.value}"
            )

        if self.kind in (ChangeKind.CREATE, ChangeKind.UPDATE) and self.body is None:
            raise ValidationError("Content is required for create/update operations")
        if self.kind is ChangeKind.DELETE and self.body is not None:
            raise ValidationError("Content is not allowed for delete operations")

    def validate(self) -> None:
        self.check_shape()
        if self.kind is not ChangeKind.CREATE and not self.base_revision:
            raise ValidationError(
                f"baseRevision is required for {self.kind.value} operations ({self.path})"
            )

    def to_dict(self) -> dict:
        record: dict[str, Any] = {"kind": self.kind.value, "path": self.path}
        if self.previous_path is not None:
            record["previousPath"] = self.previous_path
        if self.body is not None:
            record["body"] = self.body
        if self.base_revision is not None:
            record["baseRevision"] = self.base_revision
        if self.note is not None:
            record["note"] = self.note
        if self.tags:
            record["tags"] = dict(self.tags)
        return record

    @classmethod
    def from_dict(cls, record: dict) -> "StagedChange":
        try:
            kind = ChangeKind(record.get("kind"))
        except ValueError:
            raise ValidationError(f"Unknown change kind: {record.get('kind')!r}")

        for name in ("path", "previousPath", "body", "baseRevision", "note"):
            value = record.get(name)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{name} must be a string, got {type(value).__name__}")
        tags = record.get("tags")
        if tags is not None and not isinstance(tags, dict):
            raise ValidationError(f"tags must be an object, got {type(tags).__name__}")

        return cls(
            kind=kind,
            path=record.get("path") or "",
            previous_path=record.get("previousPath"),
            body=record.get("body"),
            base_revision=record.get("baseRevision"),
            note=record.get("note"),
            tags=dict(tags or {}),
        )


def _check_path(path: str | None, name: str) -> None:
    if not path:
        raise ValidationError(f"Missing required field: {name}")
    if not isinstance(path, str):
        raise ValidationError(f"{name} must be a string")
    if path.startswith("/") or path.endswith("/"):
        raise ValidationError(f"Invalid {name} '{path}': must be relative to the repository root")
    if any(part in ("", ".", "..") for part in path.split("/")):
        raise ValidationError(f"Invalid {name} '{path}'")


@dataclass(frozen=True)
class TreeEntry:
    path: str
    object_ref: str
    mode: str = DEFAULT_FILE_MODE
    type: str = "blob"


@dataclass
class Baseline:
    """State of a branch tip: revision, root tree and the full recursive listing."""

    head_revision: str
    root_tree: str
    entries: dict[str, TreeEntry]


@dataclass(frozen=True)
class Author:
    name: str
    email: str


@dataclass
class CommitTransaction:
    """Unit of work for one publish call. Never persisted."""

    target: str
    ref: str
    changes: list[StagedChange]
    message: str
    parent_revision: str | None = None

    def changed_paths(self) -> list[str]:
        paths: list[str] = []
        for change in self.changes:
            for path in (change.previous_path, change.path):
                if path and path not in paths:
                    paths.append(path)
        return paths


def compose_message(changes: list[StagedChange]) -> str:
    return "\n".join(change.note or change.default_note() for change in changes)


def _may_share(earlier: StagedChange, later: StagedChange, path: str) -> bool:
    if later.kind is ChangeKind.CREATE and later.path == path:
        if earlier.kind is ChangeKind.DELETE:
            return True
        return earlier.kind is ChangeKind.RENAME and earlier.previous_path == path
    return earlier.kind is ChangeKind.CREATE and later.kind is ChangeKind.DELETE


def check_distinct_paths(changes: list[StagedChange]) -> None:
    """
    Reject change lists in which two changes touch the same path.

    The exceptions are a path freed by a delete or a rename that then receives
    a newly created file, and a create followed by a delete of the same path.
    """
    owners: dict[str, list[StagedChange]] = {}
    for change in changes:
        for path in sorted(change.touched_paths()):
            for other in owners.get(path, []):
                if not _may_share(other, change, path):
                    raise ValidationError(
                        f"'{path}' is touched by more than one change "
                        f"({other.kind.value} and {change.kind.value})"
                    )
            owners.setdefault(path, []).append(change)


Folded = tuple[StagedChange | None, StagedChange | None]


def _fold(pending: StagedChange, change: StagedChange) -> Folded:
    """
    Combine a pending entry with a newly staged change touching the same path.

    Returns the pending entry to keep (None to drop it) and the change to
    carry on with (None when the two cancel out).
    """
    if pending.kind is ChangeKind.RENAME:
        source = pending.previous_path
        # at the source path only changes made against the original file fold in;
        # anything else concerns a new file there
        same_file = change.path == pending.path or change.base_revision == pending.base_revision

        if change.kind is ChangeKind.RENAME and change.previous_path == pending.path:
            body = change.body if change.body is not None else pending.body
            if change.path == source:
                if body is None:
                    return None, None
                return None, StagedChange(
                    ChangeKind.UPDATE,
                    source,
                    body=body,
                    base_revision=pending.base_revision,
                    note=change.note or pending.note,
                    tags={**pending.tags, **change.tags},
                )
            return None, replace(
                change, previous_path=source, base_revision=pending.base_revision, body=body
            )
        if change.kind is ChangeKind.CREATE and change.path == source:
            return pending, change
        if not same_file:
            return pending, change

        if change.kind is ChangeKind.DELETE:
            return None, replace(
                change, path=source, previous_path=None, base_revision=pending.base_revision
            )
        if change.kind is ChangeKind.RENAME:
            if change.previous_path != source:
                return pending, change
            body = change.body if change.body is not None else pending.body
            return None, replace(change, body=body)
        return None, replace(
            pending,
            body=change.body,
            note=change.note or pending.note,
            tags={**pending.tags, **change.tags},
        )

    if change.kind is ChangeKind.RENAME and pending.path == change.previous_path:
        body = change.body if change.body is not None else pending.body
        if pending.kind is ChangeKind.CREATE:
            # never committed, so there is nothing remote to move
            return None, replace(
                pending, path=change.path, body=body, note=change.note or pending.note
            )
        if pending.kind is ChangeKind.UPDATE:
            return None, replace(change, body=body)

    return None, change


Observer = Callable[[list[StagedChange]], None]


class StagingStore:
    """
    Ordered set of pending changes keyed by path.

    At most one entry exists per path: staging a change for a path that a
    pending entry already touches replaces (or folds into) that entry. A path
    freed by a pending rename can still take a newly created file, which is
    kept as a separate entry. Every mutation is written through to the
    backend immediately.
    """

    def __init__(self) -> None:
        self._observers: list[Observer] = []

    def _read(self) -> list[StagedChange]:
        """Load all entries from the backend in insertion order."""
        raise NotImplementedError()

    def _write(self, entries: list[StagedChange]) -> None:
        """Replace the backend contents with `entries`."""
        raise NotImplementedError()

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        name = type(self).__name__
        if cycle:
            p.text(f"{name}(...)")
        else:
            with p.group(4, f"{name}(", ")"):
                p.breakable()
                p.text("entries=")
                p.pretty(self.list())
                p.breakable()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, entries: list[StagedChange]) -> None:
        for observer in list(self._observers):
            observer(list(entries))

    def stage(self, change: StagedChange) -> StagedChange | None:
        """
        Stage `change` and return the entry it became, or None when it cancelled
        a pending entry out (renaming a file back to where it was).
        """
        change.check_shape()

        carried: StagedChange | None = change
        kept: list[StagedChange] = []
        for entry in self._read():
            pending: StagedChange | None = entry
            if carried is not None and entry.touched_paths() & carried.touched_paths():
                pending, carried = _fold(entry, carried)
            if pending is not None:
                kept.append(pending)

        if carried is not None:
            carried.validate()
            kept.append(carried)
        check_distinct_paths(kept)

        self._write(kept)
        if carried is not None:
            logger.debug(f"Staged {carried.kind.value} {carried.path} ({len(kept)} pending)")
        else:
            logger.debug(f"Staging {change.path} cancelled a pending change ({len(kept)} pending)")
        self._notify(kept)
        return carried

    def unstage(self, path: str) -> None:
        entries = self._read()
        kept = [entry for entry in entries if path not in entry.touched_paths()]
        if len(kept) == len(entries):
            return
        self._write(kept)
        self._notify(kept)

    def list(self) -> list[StagedChange]:
        return list(self._read())

    def has(self, path: str) -> bool:
        return any(path in entry.touched_paths() for entry in self._read())

    def count(self) -> int:
        return len(self._read())

    def clear(self) -> None:
        self._write([])
        self._notify([])


class RemoteStore:
    """
    Content-addressable store holding the published corpus.

    Nothing written through `write_blob`, `create_tree` or `create_commit` is
    visible to readers until `update_ref` moves the branch onto it.
    """

    def close(self) -> None:
        """Release connections held by the store."""

    def __enter__(self) -> "RemoteStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def read_baseline(self, target: str, ref: str) -> Baseline:
        """Return the tip revision, root tree and full recursive listing of `ref`."""
        raise NotImplementedError()

    def write_blob(self, target: str, content: bytes) -> str:
        """Store `content` and return its object reference."""
        raise NotImplementedError()

    def read_blob(self, target: str, object_ref: str) -> bytes:
        """Return the content stored under `object_ref`."""
        raise NotImplementedError()

    def create_tree(self, target: str, entries: list[TreeEntry]) -> str:
        """Create a tree from the complete list of entries and return its reference."""
        raise NotImplementedError()

    def create_commit(
        self,
        target: str,
        tree: str,
        parents: list[str],
        message: str,
        author: Author,
    ) -> str:
        """Create a commit object and return its revision."""
        raise NotImplementedError()

    def update_ref(self, target: str, ref: str, revision: str, expected: str) -> None:
        """Point `ref` at `revision` only if it still points at `expected`."""
        raise NotImplementedError()
