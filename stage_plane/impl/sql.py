from typing import Any, Callable

from sqlalchemy import JSON, Text, delete, insert, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from stage_plane.base import ChangeKind, StagedChange, StagingStore


class Base(DeclarativeBase):
    pass


class StagedChangeModel(Base):
    __tablename__ = "staged_changes"
    id: Mapped[int] = mapped_column(primary_key=True)
    session_name: Mapped[str] = mapped_column(index=True)
    position: Mapped[int]
    kind: Mapped[str]
    path: Mapped[str]
    previous_path: Mapped[str | None] = mapped_column(nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_revision: Mapped[str | None] = mapped_column(nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[dict] = mapped_column(JSON, default=dict)


class SqlStagingStore(StagingStore):
    """
    Staging store kept in a SQL table, one row per pending change.

    Several editing sessions can share a database; each sees only the rows
    carrying its own `session_name`.
    """

    def __init__(self, session_maker: Callable[[], Session], session_name: str = "default") -> None:
        super().__init__()
        self.session_maker = session_maker
        self.session_name = session_name

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        if cycle:
            p.text("SqlStagingStore(...)")
        else:
            with p.group(4, "SqlStagingStore(", ")"):
                p.breakable()
                p.text(f"session='{self.session_name}',")
                p.breakable()
                p.text(f"count={self.count()},")
                p.breakable()

    def _read(self) -> list[StagedChange]:
        stmt = (
            select(StagedChangeModel)
            .where(StagedChangeModel.session_name == self.session_name)
            .order_by(StagedChangeModel.position)
        )
        with self.session_maker() as session:
            return [
                StagedChange(
                    kind=ChangeKind(row.kind),
                    path=row.path,
                    previous_path=row.previous_path,
                    body=row.body,
                    base_revision=row.base_revision,
                    note=row.note,
                    tags=dict(row.tags or {}),
                )
                for row in session.execute(stmt).scalars()
            ]

    def _write(self, entries: list[StagedChange]) -> None:
        with self.session_maker() as session:
            session.execute(
                delete(StagedChangeModel).where(
                    StagedChangeModel.session_name == self.session_name
                )
            )
            if entries:
                session.execute(
                    insert(StagedChangeModel),
                    [
                        {
                            "session_name": self.session_name,
                            "position": position,
                            "kind": entry.kind.value,
                            "path": entry.path,
                            "previous_path": entry.previous_path,
                            "body": entry.body,
                            "base_revision": entry.base_revision,
                            "note": entry.note,
                            "tags": dict(entry.tags),
                        }
                        for position, entry in enumerate(entries)
                    ],
                )
            session.commit()


def create_sql_staging_store(
    session_maker: Callable[[], Session], session_name: str = "default"
) -> SqlStagingStore:
    return SqlStagingStore(session_maker, session_name=session_name)
