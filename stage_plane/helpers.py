"""Shortcuts for staging the content types the corpus holds."""

from stage_plane.base import ChangeKind, StagedChange, StagingStore


def stage_article_change(
    store: StagingStore,
    path: str,
    body: str,
    title: str,
    base_revision: str | None = None,
    note: str | None = None,
) -> StagedChange | None:
    is_new = base_revision is None
    return store.stage(
        StagedChange(
            kind=ChangeKind.CREATE if is_new else ChangeKind.UPDATE,
            path=path,
            body=body,
            base_revision=base_revision,
            note=note or f"{'Create' if is_new else 'Update'} article: {title}",
            tags={"category": "articles", "title": title},
        )
    )


def stage_video_change(
    store: StagingStore,
    path: str,
    body: str,
    title: str,
    video_id: str,
    base_revision: str | None = None,
    previous_path: str | None = None,
    note: str | None = None,
) -> StagedChange | None:
    """Stage a video file; a changed file name becomes a rename carrying the new body."""
    is_rename = bool(previous_path) and previous_path != path
    if is_rename:
        kind = ChangeKind.RENAME
    elif base_revision:
        kind = ChangeKind.UPDATE
    else:
        kind = ChangeKind.CREATE

    return store.stage(
        StagedChange(
            kind=kind,
            path=path,
            previous_path=previous_path if is_rename else None,
            body=body,
            base_revision=base_revision,
            note=note or f"{'Update' if base_revision else 'Create'} video: {title}",
            tags={"category": "videos", "title": title, "video_id": video_id},
        )
    )


def stage_delete_change(
    store: StagingStore,
    path: str,
    base_revision: str,
    title: str | None = None,
    note: str | None = None,
) -> StagedChange | None:
    tags = {"title": title} if title else {}
    return store.stage(
        StagedChange(
            kind=ChangeKind.DELETE,
            path=path,
            base_revision=base_revision,
            note=note or f"Delete: {title or path}",
            tags=tags,
        )
    )
