import json
import os
from pathlib import Path
from typing import Any

from stage_plane.base import StagedChange, StagingStore


class JsonFileStagingStore(StagingStore):
    """
    Staging store persisted as a JSON array of change records.

    The file is rewritten on every mutation through a temporary file and an
    atomic rename, so a crash leaves either the old or the new list.
    """

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)

    def _repr_pretty_(self, p: Any, cycle: bool) -> None:
        if cycle:
            p.text("JsonFileStagingStore(...)")
        else:
            p.text(f"JsonFileStagingStore(path={self.path}, count={self.count()})")

    def _read(self) -> list[StagedChange]:
        if not self.path.exists():
            return []
        records = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        return [StagedChange.from_dict(record) for record in records]

    def _write(self, entries: list[StagedChange]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(
            json.dumps([entry.to_dict() for entry in entries], indent=2),
            encoding="utf-8",
        )
        os.replace(tmp_path, self.path)


def create_file_staging_store(path: str | Path) -> JsonFileStagingStore:
    return JsonFileStagingStore(path)
