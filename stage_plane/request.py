"""
Transport-agnostic publish request handling.

A publish request carries the whole change list, so a stateless server can
commit on behalf of a client that keeps its staging store locally:

    {"target": "owner/repo", "ref": "main", "message": "...",
     "changes": [{"kind": "update", "path": "a.md", "body": "...",
                  "baseRevision": "..."}]}
"""

import logging
from dataclasses import dataclass
from typing import Any

from stage_plane.base import StagedChange, check_distinct_paths
from stage_plane.errors import ValidationError
from stage_plane.executor import CommitTransactionExecutor

logger = logging.getLogger(__name__)


@dataclass
class PublishRequest:
    target: str
    ref: str | None
    changes: list[StagedChange]
    message: str | None = None


def parse_publish_request(payload: Any) -> PublishRequest:
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be an object")

    missing = [name for name in ("target", "changes") if name not in payload or payload[name] is None]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    if not payload["target"]:
        raise ValidationError("target must not be empty")

    records = payload["changes"]
    if not isinstance(records, list):
        raise ValidationError("changes must be a list")
    if not records:
        raise ValidationError("No changes to commit")

    changes = []
    for index, record in enumerate(records):
        if not isinstance(record, dict):
            raise ValidationError(f"changes[{index}] must be an object")
        try:
            change = StagedChange.from_dict(record)
            change.validate()
        except ValidationError as e:
            raise ValidationError(f"changes[{index}]: {e.message}")
        changes.append(change)
    check_distinct_paths(changes)

    return PublishRequest(
        target=payload["target"],
        ref=payload.get("ref") or None,
        changes=changes,
        message=payload.get("message") or None,
    )


def handle_publish_request(payload: Any, executor: CommitTransactionExecutor) -> dict[str, Any]:
    """Validate `payload`, run it through `executor` and return the response body."""
    try:
        request = parse_publish_request(payload)
    except ValidationError as e:
        logger.info(f"Rejected publish request: {e}")
        return {"success": False, "error": e.kind, "message": e.message}

    transaction = executor.begin(request.changes, request.message, request.target, request.ref)
    return executor.execute(transaction).to_response()
