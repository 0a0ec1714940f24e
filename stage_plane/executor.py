"""
Commit transaction executor.

Publishing is several independent remote calls (read the branch, upload
blobs, create a tree, create a commit, move the ref). Only the last one is
visible to anyone else, so the sequence is modelled as a linear state
machine where every step either advances to the next state or ends in
Conflict/Failed, and the staging store is touched only after the ref update
has been confirmed:

    START -> READ_BASELINE -> RECONCILE -> WRITE_OBJECTS -> BUILD_TREE
          -> CREATE_COMMIT -> UPDATE_REF -> SUCCESS | CONFLICT | FAILED
"""

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from stage_plane.base import (
    Baseline,
    CommitTransaction,
    RemoteStore,
    StagedChange,
    StagingStore,
    TreeEntry,
    check_distinct_paths,
    compose_message,
)
from stage_plane.cache import CacheInvalidator
from stage_plane.config import PublishConfig
from stage_plane.errors import (
    CancelledError,
    ConflictError,
    RateLimitedError,
    StagePlaneError,
    StaleChange,
    TransportError,
    ValidationError,
)
from stage_plane.reconcile import ChangeReconciler, TreePlan
from stage_plane.writer import ObjectWriter

logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = "Repository has been updated. Please refresh and try again."


class TransactionState(enum.Enum):
    START = "start"
    READ_BASELINE = "read_baseline"
    RECONCILE = "reconcile"
    WRITE_OBJECTS = "write_objects"
    BUILD_TREE = "build_tree"
    CREATE_COMMIT = "create_commit"
    UPDATE_REF = "update_ref"
    SUCCESS = "success"
    CONFLICT = "conflict"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TransactionState.SUCCESS, TransactionState.CONFLICT, TransactionState.FAILED)


@dataclass
class PublishResult:
    state: TransactionState
    revision: str | None = None
    paths_changed: int = 0
    error: StagePlaneError | None = None
    history: list[TransactionState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state is TransactionState.SUCCESS

    @property
    def maybe_committed(self) -> bool:
        """True when the ref update was sent but its outcome is unknown."""
        return isinstance(self.error, TransportError) and bool(self.error.ambiguous)

    def to_response(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "revision": self.revision, "pathsChanged": self.paths_changed}

        response: dict[str, Any] = {"success": False}
        if self.state is TransactionState.CONFLICT:
            response["error"] = "conflict"
            response["message"] = self.error.message if self.error else CONFLICT_MESSAGE
            response["reload"] = True
            return response

        response["error"] = self.error.kind if self.error else "unknown"
        if self.error:
            response["message"] = self.error.message
        if isinstance(self.error, RateLimitedError) and self.error.retry_after is not None:
            response["retryAfter"] = self.error.retry_after
        if self.maybe_committed:
            response["maybeCommitted"] = True
        return response


@dataclass
class _Run:
    """Working state of one execution, discarded afterwards."""

    transaction: CommitTransaction
    cancel: threading.Event | None
    baseline: Baseline | None = None
    plan: TreePlan | None = None
    written: dict[str, str] = field(default_factory=dict)
    tree: str | None = None
    revision: str | None = None


class CommitTransactionExecutor:
    def __init__(
        self,
        remote: RemoteStore,
        config: PublishConfig,
        invalidator: CacheInvalidator | None = None,
    ) -> None:
        self.remote = remote
        self.config = config
        self.reconciler = ChangeReconciler(config.create_wins_over_delete)
        self.writer = ObjectWriter(remote, config.fan_out)
        self.invalidator = invalidator or CacheInvalidator(config.categories)

        self._steps: dict[TransactionState, Callable[[_Run], TransactionState]] = {
            TransactionState.START: self._start,
            TransactionState.READ_BASELINE: self._read_baseline,
            TransactionState.RECONCILE: self._reconcile,
            TransactionState.WRITE_OBJECTS: self._write_objects,
            TransactionState.BUILD_TREE: self._build_tree,
            TransactionState.CREATE_COMMIT: self._create_commit,
            TransactionState.UPDATE_REF: self._update_ref,
        }

    def begin(
        self,
        changes: list[StagedChange],
        message: str | None = None,
        target: str | None = None,
        ref: str | None = None,
    ) -> CommitTransaction:
        return CommitTransaction(
            target=target or self.config.target,
            ref=ref or self.config.branch,
            changes=list(changes),
            message=message or compose_message(changes),
        )

    def publish(
        self,
        store: StagingStore,
        message: str | None = None,
        target: str | None = None,
        ref: str | None = None,
        cancel: threading.Event | None = None,
    ) -> PublishResult:
        """Commit everything in `store`; the store is cleared only on success."""
        transaction = self.begin(store.list(), message, target, ref)
        return self.execute(transaction, cancel=cancel, store=store)

    def execute(
        self,
        transaction: CommitTransaction,
        cancel: threading.Event | None = None,
        store: StagingStore | None = None,
    ) -> PublishResult:
        run = _Run(transaction, cancel)
        state = TransactionState.START
        history = [state]
        error: StagePlaneError | None = None

        while not state.terminal:
            step = self._steps[state]
            try:
                if cancel is not None and cancel.is_set():
                    raise CancelledError(f"Publish cancelled before {state.value}")
                state = step(run)
            except ConflictError as e:
                logger.warning(f"Publish to {transaction.target}@{transaction.ref} conflicted: {e}")
                error = e
                state = TransactionState.CONFLICT
            except StagePlaneError as e:
                if (
                    state is TransactionState.UPDATE_REF
                    and isinstance(e, TransportError)
                    and e.ambiguous is None
                ):
                    e.ambiguous = True
                logger.error(
                    f"Publish to {transaction.target}@{transaction.ref} failed in {state.value}: {e}"
                )
                error = e
                state = TransactionState.FAILED
            except Exception as e:
                logger.exception(
                    f"Publish to {transaction.target}@{transaction.ref} failed in {state.value}"
                )
                error = TransportError(
                    f"Unexpected error in {state.value}: {e}",
                    ambiguous=state is TransactionState.UPDATE_REF,
                )
                state = TransactionState.FAILED
            history.append(state)

        result = PublishResult(
            state=state,
            revision=run.revision if state is TransactionState.SUCCESS else None,
            paths_changed=len(transaction.changes) if state is TransactionState.SUCCESS else 0,
            error=error,
            history=history,
        )
        if result.success:
            self._after_success(transaction, store)
        return result

    def preview(
        self,
        changes: list[StagedChange],
        target: str | None = None,
        ref: str | None = None,
    ) -> list[StaleChange]:
        """Report which staged changes would conflict, without writing anything."""
        baseline = self.remote.read_baseline(target or self.config.target, ref or self.config.branch)
        return self.reconciler.find_stale(baseline, changes)

    def _after_success(self, transaction: CommitTransaction, store: StagingStore | None) -> None:
        if store is not None:
            store.clear()
        try:
            self.invalidator.invalidate(transaction.changed_paths())
        except Exception:
            # the ref already moved; a stale cache must not turn into a failed publish
            logger.exception("Cache invalidation failed after publish")

    def _start(self, run: _Run) -> TransactionState:
        if not run.transaction.changes:
            raise ValidationError("No changes to commit")
        for change in run.transaction.changes:
            change.validate()
        check_distinct_paths(run.transaction.changes)
        return TransactionState.READ_BASELINE

    def _read_baseline(self, run: _Run) -> TransactionState:
        transaction = run.transaction
        run.baseline = self.remote.read_baseline(transaction.target, transaction.ref)
        transaction.parent_revision = run.baseline.head_revision
        logger.debug(
            f"Baseline {transaction.target}@{transaction.ref} is {run.baseline.head_revision} "
            f"with {len(run.baseline.entries)} entries"
        )
        return TransactionState.RECONCILE

    def _reconcile(self, run: _Run) -> TransactionState:
        run.plan = self.reconciler.reconcile(run.baseline, run.transaction.changes)
        return TransactionState.WRITE_OBJECTS

    def _write_objects(self, run: _Run) -> TransactionState:
        run.written = self.writer.write(run.transaction.target, run.plan.uploads, run.cancel)
        return TransactionState.BUILD_TREE

    def _build_tree(self, run: _Run) -> TransactionState:
        entries: list[TreeEntry] = run.plan.materialize(run.written)
        run.tree = self.remote.create_tree(run.transaction.target, entries)
        return TransactionState.CREATE_COMMIT

    def _create_commit(self, run: _Run) -> TransactionState:
        transaction = run.transaction
        run.revision = self.remote.create_commit(
            transaction.target,
            run.tree,
            [transaction.parent_revision],
            transaction.message,
            self.config.author,
        )
        return TransactionState.UPDATE_REF

    def _update_ref(self, run: _Run) -> TransactionState:
        transaction = run.transaction
        self.remote.update_ref(
            transaction.target, transaction.ref, run.revision, transaction.parent_revision
        )
        logger.info(
            f"Published {len(transaction.changes)} changes to "
            f"{transaction.target}@{transaction.ref} as {run.revision}"
        )
        return TransactionState.SUCCESS
