import logging
from dataclasses import dataclass, replace

from stage_plane.base import (
    DEFAULT_FILE_MODE,
    Baseline,
    ChangeKind,
    StagedChange,
    TreeEntry,
    check_distinct_paths,
)
from stage_plane.errors import ConflictError, StaleChange, ValidationError

logger = logging.getLogger(__name__)

_APPLY_ORDER = {
    ChangeKind.DELETE: 0,
    ChangeKind.RENAME: 1,
    ChangeKind.CREATE: 2,
    ChangeKind.UPDATE: 2,
}


@dataclass
class TreePlan:
    """
    The new tree with content uploads still outstanding.

    Entries whose path is in `uploads` carry an empty object reference until
    `materialize` fills in what the object writer returned.
    """

    entries: dict[str, TreeEntry]
    uploads: dict[str, str]

    def materialize(self, written: dict[str, str]) -> list[TreeEntry]:
        missing = [path for path in self.uploads if path not in written]
        if missing:
            raise ValueError(f"No object reference written for: {', '.join(missing)}")
        return [
            replace(entry, object_ref=written[path]) if path in self.uploads else entry
            for path, entry in self.entries.items()
        ]


class ChangeReconciler:
    """
    Merges staged changes onto the baseline listing of a branch.

    With `create_wins_over_delete` the changes are applied deletes first, then
    renames, then creates/updates, so a delete and a create of the same path in
    one batch resolves as the create whatever the staging order. Without it the
    changes are applied in staging order.
    """

    def __init__(self, create_wins_over_delete: bool = True) -> None:
        self.create_wins_over_delete = create_wins_over_delete

    def find_stale(self, baseline: Baseline, changes: list[StagedChange]) -> list[StaleChange]:
        stale = []
        for change in changes:
            if not change.base_revision:
                continue

            path = change.previous_path if change.kind is ChangeKind.RENAME else change.path
            current = baseline.entries.get(path)
            actual = current.object_ref if current else None

            if change.kind is ChangeKind.DELETE and current is None:
                # already gone
                continue
            if actual != change.base_revision:
                stale.append(StaleChange(path, change.base_revision, actual))
        return stale

    def _ordered(self, changes: list[StagedChange]) -> list[StagedChange]:
        if not self.create_wins_over_delete:
            return list(changes)
        # sorted() is stable, so staging order is kept within each kind
        return sorted(changes, key=lambda change: _APPLY_ORDER[change.kind])

    def reconcile(self, baseline: Baseline, changes: list[StagedChange]) -> TreePlan:
        for change in changes:
            change.validate()
        check_distinct_paths(changes)

        stale = self.find_stale(baseline, changes)
        if stale:
            paths = ", ".join(item.path for item in stale)
            raise ConflictError(
                f"Files changed since they were staged: {paths}. "
                f"Please refresh and try again.",
                stale=stale,
            )

        tree = dict(baseline.entries)
        uploads: dict[str, str] = {}

        for change in self._ordered(changes):
            if change.kind is ChangeKind.DELETE:
                tree.pop(change.path, None)
                uploads.pop(change.path, None)

            elif change.kind is ChangeKind.RENAME:
                source = tree.pop(change.previous_path, None)
                if source is None:
                    raise ValidationError(
                        f"Cannot rename '{change.previous_path}': it is not in the tree"
                    )
                body = uploads.pop(change.previous_path, None)
                if change.body is not None:
                    body = change.body

                tree[change.path] = TreeEntry(
                    change.path, source.object_ref, source.mode, source.type
                )
                if body is not None:
                    uploads[change.path] = body
                else:
                    uploads.pop(change.path, None)

            else:
                existing = tree.get(change.path)
                mode = existing.mode if existing and existing.type == "blob" else DEFAULT_FILE_MODE
                tree[change.path] = TreeEntry(change.path, "", mode)
                uploads[change.path] = change.body

        self._check_layout(tree, [change.path for change in changes])
        logger.debug(
            f"Reconciled {len(changes)} changes: {len(tree)} entries, {len(uploads)} uploads"
        )
        return TreePlan(tree, uploads)

    def _check_layout(self, tree: dict[str, TreeEntry], paths: list[str]) -> None:
        for path in paths:
            if path not in tree:
                continue
            parts = path.split("/")
            for depth in range(1, len(parts)):
                parent = "/".join(parts[:depth])
                if parent in tree:
                    raise ValidationError(f"'{path}' would be nested under the file '{parent}'")
            prefix = path + "/"
            if any(other.startswith(prefix) for other in tree):
                raise ValidationError(f"'{path}' is already a directory")
