"""Sync engine: reconciles the local store with a remote store.

One pass per space:

1. list the remote files and compare tokens with the cached ones,
2. pull changed or new files (a dirty local copy makes it a conflict,
   resolved by keeping the remote version and forking the local one),
3. push the notes that were dirty when the pass started,
4. propagate trashed notes as conditional remote deletes.

Each note is handled independently; a failure for one is recorded in
the pass result and never aborts the others. Quota exhaustion suspends
the remaining work and an authentication failure halts it.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from marlin_sync.config import config
from marlin_sync.models.schema import (
    NetworkStatus,
    Note,
    SyncPhase,
    SyncResult,
    SyncState,
    SyncStatus,
    utc_now,
)
from marlin_sync.observability import metrics, timed_operation
from marlin_sync.remote.base import RemoteStore
from marlin_sync.remote.results import (
    AlreadyExists,
    Deleted,
    Listing,
    NotFound,
    QuotaExceeded,
    RemoteFile,
    TransientError,
    Unauthenticated,
    VersionConflict,
    Written,
    is_failure,
)
from marlin_sync.state import StatusBoard
from marlin_sync.storage.local_store import LocalStore
from marlin_sync.storage.markdown_parser import MarkdownParser, ParsedNote

logger = logging.getLogger(__name__)


class _Pass:
    """Mutable state of one running pass."""

    def __init__(self, space: str, cancel: threading.Event):
        self.space = space
        self.result = SyncResult(space=space)
        self.lock = threading.Lock()
        self.cancel = cancel
        self.stop = threading.Event()

    @property
    def stopped(self) -> bool:
        return self.stop.is_set() or self.cancel.is_set()

    def record(self, note_id: str, phase: SyncPhase, counter: Optional[str] = None) -> SyncPhase:
        with self.lock:
            self.result.outcomes[note_id] = phase
            if counter:
                setattr(self.result, counter, getattr(self.result, counter) + 1)
        return phase

    def halt(self, reason: str, suspended: bool = True) -> None:
        with self.lock:
            if not self.stop.is_set():
                self.result.reason = reason
                self.result.suspended = suspended
            self.stop.set()


class SyncEngine:
    """Runs sync passes between a LocalStore and a RemoteStore.

    The engine is the only writer of version tokens and revision
    bookkeeping. At most one pass per space runs at a time, and at most
    one remote operation per note is in flight; a second trigger for
    either is coalesced into a no-op.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteStore,
        status: Optional[StatusBoard] = None,
        parser: Optional[MarkdownParser] = None,
        monitor=None,
        batch_size: Optional[int] = None,
        limited_batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        conflict_suffix: Optional[str] = None,
        trash_grace_period: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the engine.

        Args:
            store: Local note cache.
            remote: Remote adapter.
            status: Process-wide status board; a private one if omitted.
            parser: Note file codec.
            monitor: Optional NetworkMonitor informed about quota exhaustion
                and authentication failures.
            batch_size: Parallel note operations per pass.
            limited_batch_size: Parallelism while the network is limited.
            max_attempts: Attempts per remote call for transient failures.
            backoff_base: First retry delay in seconds, doubled per attempt.
            conflict_suffix: Title annotation for conflicted copies.
            trash_grace_period: Seconds before a trashed note is deleted remotely.
            sleep: Delay function, replaceable in tests.
        """
        self.store = store
        self.remote = remote
        self.status = status or StatusBoard()
        self.parser = parser or MarkdownParser()
        self.monitor = monitor
        self.batch_size = batch_size or config.sync_batch_size
        self.limited_batch_size = limited_batch_size or config.limited_batch_size
        self.max_attempts = max_attempts or config.max_attempts
        self.backoff_base = config.backoff_base if backoff_base is None else backoff_base
        self.conflict_suffix = conflict_suffix or config.conflict_suffix
        self.trash_grace_period = (
            config.trash_grace_period if trash_grace_period is None else trash_grace_period
        )
        self._sleep = sleep

        self._lock = threading.Lock()
        self._pass_locks: Dict[str, threading.Lock] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._in_flight: Set[str] = set()

    # =========================================================================
    # Public API
    # =========================================================================

    def trigger_sync(self, space: str) -> SyncResult:
        """Run one sync pass for ``space`` and return its summary.

        Skips the pass when the network is offline (changes stay queued)
        or when a pass for the space is already running.
        """
        network = self.status.network_status
        if network == NetworkStatus.OFFLINE:
            logger.info("Skipping sync of %s: offline", space)
            return self._skipped(space, "offline")

        pass_lock = self._pass_lock(space)
        if not pass_lock.acquire(blocking=False):
            logger.debug("Sync of %s already running; coalesced", space)
            return self._skipped(space, "pass already running")

        cancel = threading.Event()
        with self._lock:
            self._cancel_events[space] = cancel
        ctx = _Pass(space, cancel)
        workers = (
            self.limited_batch_size if network == NetworkStatus.LIMITED else self.batch_size
        )
        self.status.set_space_status(space, SyncStatus.SYNCING)
        try:
            with timed_operation("sync_pass", space=space) as op:
                completed = self._run_pass(ctx, workers)
                op["pushed"] = ctx.result.pushed
                op["pulled"] = ctx.result.pulled
                op["outcome"] = ctx.result.status.value
            if ctx.cancel.is_set() and not ctx.stop.is_set():
                ctx.result.reason = "cancelled"
            if completed and not ctx.stopped:
                self.store.mark_space_synced(space)
        finally:
            ctx.result.finished_at = utc_now()
            with self._lock:
                if self._cancel_events.get(space) is cancel:
                    del self._cancel_events[space]
            pass_lock.release()
            self.status.set_space_status(space, ctx.result.status)

        result = ctx.result
        logger.info(
            "Sync %s: pushed=%d pulled=%d deleted=%d conflicted=%d failed=%d%s",
            space,
            result.pushed,
            result.pulled,
            result.deleted,
            result.conflicted,
            result.failed,
            f" ({result.reason})" if result.reason else "",
        )
        return result

    def sync_all(self, spaces: Optional[Iterable[str]] = None) -> Dict[str, SyncResult]:
        """Sync several spaces concurrently (all known spaces by default)."""
        names = list(spaces) if spaces is not None else [s.name for s in self.store.list_spaces()]
        if not names:
            return {}
        with ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="marlin-space") as pool:
            results = pool.map(self.trigger_sync, names)
            return dict(zip(names, results))

    def cancel(self, space: str) -> bool:
        """Cancel the running pass of ``space``. Returns True if one was running.

        Remote calls already in flight complete and their results are applied;
        work not yet started is skipped.
        """
        with self._lock:
            event = self._cancel_events.get(space)
        if event is None:
            return False
        event.set()
        logger.info("Cancelled sync pass for %s", space)
        return True

    def cancel_all(self, except_space: Optional[str] = None) -> List[str]:
        """Cancel running passes of every space other than ``except_space``."""
        with self._lock:
            spaces = [s for s in self._cancel_events if s != except_space]
        return [s for s in spaces if self.cancel(s)]

    def is_syncing(self, space: str) -> bool:
        with self._lock:
            return space in self._cancel_events

    # =========================================================================
    # Pass
    # =========================================================================

    def _run_pass(self, ctx: _Pass, workers: int) -> bool:
        """Execute the phases. Returns False if the remote listing failed."""
        space = ctx.space
        # Conflicted copies created during this pass wait for the next one
        dirty_snapshot = self.store.dirty_notes(space)

        listing = self._call(ctx, lambda: self.remote.list(space))
        if not isinstance(listing, Listing):
            self._listing_failed(ctx, listing)
            return False

        local = self.store.notes_by_id(space)
        pulls: List[Tuple[str, str]] = []
        push_ids: List[str] = []
        delete_ids: List[str] = []
        handled: Set[str] = set()

        for note_id, token in listing.entries.items():
            note = local.get(note_id)
            if note is not None and note.version_token == token:
                continue
            pulls.append((note_id, token))
            handled.add(note_id)

        for note_id, note in local.items():
            if note_id in listing.entries or note.version_token is None:
                continue
            # Known remotely before, absent now
            handled.add(note_id)
            if note.dirty:
                # A local edit beats a remote delete; a local trash converges
                (delete_ids if note.deleted else push_ids).append(note_id)
            else:
                self._run_item(ctx, note_id, lambda n=note: self._converge_remote_delete(ctx, n))

        for note in dirty_snapshot:
            if note.id in handled:
                continue
            (delete_ids if note.deleted else push_ids).append(note.id)

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"marlin-{space}")
        try:
            self._run_phase(ctx, pool, [
                (note_id, lambda i=note_id, t=token: self._pull(ctx, i, t))
                for note_id, token in pulls
            ])
            self._run_phase(ctx, pool, [
                (note_id, lambda i=note_id: self._push(ctx, i)) for note_id in push_ids
            ])
            self._run_phase(ctx, pool, [
                (note_id, lambda i=note_id: self._propagate_delete(ctx, i))
                for note_id in delete_ids
            ])
        finally:
            pool.shutdown(wait=True)
        return True

    def _run_phase(self, ctx: _Pass, pool: ThreadPoolExecutor, items) -> None:
        futures = [
            pool.submit(self._run_item, ctx, note_id, work) for note_id, work in items
        ]
        for future in futures:
            future.result()

    def _run_item(self, ctx: _Pass, note_id: str, work: Callable[[], SyncPhase]) -> None:
        if ctx.stopped:
            ctx.record(note_id, SyncPhase.SKIPPED)
            return
        if not self._claim(note_id):
            logger.debug("Note %s already in flight; coalesced", note_id)
            ctx.record(note_id, SyncPhase.SKIPPED)
            return
        try:
            work()
        except Exception as e:
            # Failure isolation: one note's error never aborts the pass
            logger.error("Sync of note %s in %s failed: %s", note_id, ctx.space, e, exc_info=True)
            self.store.set_sync_state(note_id, SyncState.ERROR, str(e)[:500])
            with ctx.lock:
                ctx.result.errors[note_id] = str(e)
            ctx.record(note_id, SyncPhase.FAILED, "failed")
        finally:
            self._release(note_id)

    # =========================================================================
    # Pull
    # =========================================================================

    def _pull(self, ctx: _Pass, note_id: str, listed_token: str) -> SyncPhase:
        local = self.store.get_note(note_id)
        if local is not None and local.version_token == listed_token:
            return ctx.record(note_id, SyncPhase.CLEAN)

        fetched = self._call(ctx, lambda: self.remote.fetch(ctx.space, note_id))
        if isinstance(fetched, NotFound):
            # Removed after the listing; the next pass sees the absence
            return ctx.record(note_id, SyncPhase.CLEAN)
        if not isinstance(fetched, RemoteFile):
            return self._failure(ctx, note_id, fetched)

        parsed = self.parser.parse_note(fetched.content)
        if local is None:
            self.store.apply_remote(ctx.space, note_id, parsed, fetched.version_token)
            return ctx.record(note_id, SyncPhase.MERGED, "pulled")

        if not local.dirty:
            applied = self.store.apply_remote(
                ctx.space, note_id, parsed, fetched.version_token,
                expected_revision=local.revision,
            )
            if applied is not None:
                return ctx.record(note_id, SyncPhase.MERGED, "pulled")
            # Edited locally while fetching
            local = self.store.get_note(note_id)

        return self._reconcile_dirty(ctx, local, parsed, fetched.version_token)

    def _reconcile_dirty(
        self, ctx: _Pass, local: Note, parsed: ParsedNote, token: str
    ) -> SyncPhase:
        """Local and remote both changed since the last sync."""
        note_id = local.id
        if local.deleted:
            # An edit beats a stale delete
            applied = self.store.apply_remote(
                ctx.space, note_id, parsed, token, expected_revision=local.revision
            )
            if applied is not None:
                logger.warning(
                    "Note %s was edited remotely after being trashed; restored", note_id
                )
                return ctx.record(note_id, SyncPhase.RESTORED, "conflicted")
            local = self.store.get_note(note_id)
            if local is None:
                return ctx.record(note_id, SyncPhase.CLEAN)

        if self._same_content(local, parsed):
            self.store.complete_push(note_id, token, local.revision)
            return ctx.record(note_id, SyncPhase.MERGED)

        copy = self.store.resolve_conflict(note_id, parsed, token, self.conflict_suffix)
        if copy is None:
            return ctx.record(note_id, SyncPhase.CLEAN)
        logger.warning(
            "Conflict on note %s in %s: kept remote version, local edits moved to %s",
            note_id,
            ctx.space,
            copy.id,
        )
        return ctx.record(note_id, SyncPhase.PULL_CONFLICT, "conflicted")

    # =========================================================================
    # Push
    # =========================================================================

    def _push(self, ctx: _Pass, note_id: str) -> SyncPhase:
        note = self.store.get_note(note_id)
        if note is None or not note.dirty:
            return ctx.record(note_id, SyncPhase.CLEAN)
        if note.deleted:
            return self._propagate_delete(ctx, note_id)

        self.store.set_sync_state(note_id, SyncState.SYNCING)
        rendered = self.parser.render_note(note)
        written = self._call(
            ctx, lambda: self.remote.put(ctx.space, note_id, rendered, note.version_token)
        )
        if isinstance(written, NotFound) and note.version_token is not None:
            # Removed remotely while edited locally: recreate it
            written = self._call(
                ctx, lambda: self.remote.put(ctx.space, note_id, rendered, None)
            )

        if isinstance(written, Written):
            self.store.complete_push(note_id, written.version_token, note.revision)
            return ctx.record(note_id, SyncPhase.PUSHED, "pushed")
        if isinstance(written, (VersionConflict, AlreadyExists)):
            return self._resolve_push_conflict(ctx, note, rendered)
        return self._failure(ctx, note_id, written)

    def _resolve_push_conflict(self, ctx: _Pass, note: Note, rendered: str) -> SyncPhase:
        """A concurrent remote write beat our push: refetch and reconcile."""
        note_id = note.id
        fetched = self._call(ctx, lambda: self.remote.fetch(ctx.space, note_id))
        if isinstance(fetched, NotFound):
            retried = self._call(
                ctx, lambda: self.remote.put(ctx.space, note_id, rendered, None)
            )
            if isinstance(retried, Written):
                self.store.complete_push(note_id, retried.version_token, note.revision)
                return ctx.record(note_id, SyncPhase.PUSHED, "pushed")
            if isinstance(retried, (AlreadyExists, VersionConflict)):
                fetched = self._call(ctx, lambda: self.remote.fetch(ctx.space, note_id))
            else:
                return self._failure(ctx, note_id, retried)

        if not isinstance(fetched, RemoteFile):
            if isinstance(fetched, NotFound):
                return self._failure(
                    ctx, note_id, TransientError("remote file kept changing during push")
                )
            return self._failure(ctx, note_id, fetched)

        parsed = self.parser.parse_note(fetched.content)
        current = self.store.get_note(note_id)
        if current is None:
            return ctx.record(note_id, SyncPhase.CLEAN)
        if self._same_content(current, parsed):
            self.store.complete_push(note_id, fetched.version_token, current.revision)
            return ctx.record(note_id, SyncPhase.PUSHED)

        copy = self.store.resolve_conflict(
            note_id, parsed, fetched.version_token, self.conflict_suffix
        )
        if copy is not None:
            logger.warning(
                "Push conflict on note %s in %s: kept remote version, local edits moved to %s",
                note_id,
                ctx.space,
                copy.id,
            )
        return ctx.record(note_id, SyncPhase.PUSH_CONFLICT, "conflicted")

    # =========================================================================
    # Deletes
    # =========================================================================

    def _propagate_delete(self, ctx: _Pass, note_id: str) -> SyncPhase:
        note = self.store.get_note(note_id)
        if note is None:
            return ctx.record(note_id, SyncPhase.CLEAN)
        if not note.deleted:
            return self._push(ctx, note_id)
        if not self._delete_due(note):
            return ctx.record(note_id, SyncPhase.SKIPPED)

        if note.version_token is None:
            # Never reached the remote
            self._purge(note)
            return ctx.record(note_id, SyncPhase.DELETED, "deleted")

        self.store.set_sync_state(note_id, SyncState.SYNCING)
        outcome = self._call(
            ctx, lambda: self.remote.delete(ctx.space, note_id, note.version_token)
        )
        if isinstance(outcome, (Deleted, NotFound)):
            self._purge(note)
            return ctx.record(note_id, SyncPhase.DELETED, "deleted")
        if isinstance(outcome, VersionConflict):
            fetched = self._call(ctx, lambda: self.remote.fetch(ctx.space, note_id))
            if isinstance(fetched, NotFound):
                self._purge(note)
                return ctx.record(note_id, SyncPhase.DELETED, "deleted")
            if not isinstance(fetched, RemoteFile):
                return self._failure(ctx, note_id, fetched)
            return self._reconcile_dirty(
                ctx, note, self.parser.parse_note(fetched.content), fetched.version_token
            )
        return self._failure(ctx, note_id, outcome)

    def _converge_remote_delete(self, ctx: _Pass, note: Note) -> SyncPhase:
        """The remote file of a clean note is gone: drop the local copy."""
        if self.store.purge(note.id, expected_revision=note.revision):
            return ctx.record(note.id, SyncPhase.DELETED, "deleted")
        # Edited meanwhile; pushed as a create next pass
        return ctx.record(note.id, SyncPhase.SKIPPED)

    def _purge(self, note: Note) -> None:
        if not self.store.purge(note.id, expected_revision=note.revision):
            # Restored or edited while the delete was in flight: keep it,
            # it is pushed again as a create
            logger.info("Note %s changed during remote delete; kept", note.id)

    def _delete_due(self, note: Note) -> bool:
        if note.purge_requested or note.deleted_at is None:
            return True
        age = (utc_now() - note.deleted_at).total_seconds()
        return age >= self.trash_grace_period

    # =========================================================================
    # Remote calls and failures
    # =========================================================================

    def _call(self, ctx: _Pass, fn: Callable[[], object]):
        """Call the remote, retrying transient errors with exponential backoff."""
        result = None
        for attempt in range(1, self.max_attempts + 1):
            started = time.perf_counter()
            result = fn()
            metrics.record_operation(
                "remote_call",
                (time.perf_counter() - started) * 1000,
                not is_failure(result),
                outcome=type(result).__name__,
            )
            if not isinstance(result, TransientError) or attempt == self.max_attempts:
                return result
            if ctx.stop.is_set():
                return result
            delay = self.backoff_base * (2 ** (attempt - 1))
            logger.debug(
                "Transient remote error in %s (attempt %d/%d): %s; retrying in %.2fs",
                ctx.space,
                attempt,
                self.max_attempts,
                result.message,
                delay,
            )
            if delay:
                self._sleep(delay)
        return result

    def _failure(self, ctx: _Pass, note_id: str, outcome: object) -> SyncPhase:
        if isinstance(outcome, (QuotaExceeded, Unauthenticated)):
            note = self.store.get_note(note_id)
            if note is not None and note.sync_state == SyncState.SYNCING:
                self.store.set_sync_state(note_id, SyncState.PENDING)
            if isinstance(outcome, QuotaExceeded):
                self._quota_exceeded(ctx, outcome)
            else:
                self._unauthenticated(ctx)
            return ctx.record(note_id, SyncPhase.SKIPPED)

        message = (
            outcome.message if isinstance(outcome, TransientError) else type(outcome).__name__
        ) or "remote error"
        logger.warning(
            "Sync of note %s in %s failed after %d attempts: %s",
            note_id,
            ctx.space,
            self.max_attempts,
            message,
        )
        self.store.set_sync_state(note_id, SyncState.ERROR, message)
        with ctx.lock:
            ctx.result.errors[note_id] = message
        return ctx.record(note_id, SyncPhase.FAILED, "failed")

    def _listing_failed(self, ctx: _Pass, outcome: object) -> None:
        if isinstance(outcome, QuotaExceeded):
            self._quota_exceeded(ctx, outcome)
        elif isinstance(outcome, Unauthenticated):
            self._unauthenticated(ctx)
        elif isinstance(outcome, NotFound):
            logger.error("Repository for space %s not found", ctx.space)
            with ctx.lock:
                ctx.result.reason = "repository not found"
                ctx.result.errors["*"] = "repository not found"
        else:
            message = getattr(outcome, "message", "") or "listing failed"
            logger.warning("Listing %s failed: %s", ctx.space, message)
            with ctx.lock:
                ctx.result.reason = "listing failed"
                ctx.result.errors["*"] = message

    def _quota_exceeded(self, ctx: _Pass, outcome: QuotaExceeded) -> None:
        if not ctx.stop.is_set():
            logger.warning(
                "API quota exhausted during sync of %s; suspending until %s",
                ctx.space,
                outcome.reset_at.isoformat() if outcome.reset_at else "reset",
            )
        ctx.halt("quota exceeded")
        if self.monitor is not None:
            self.monitor.report_quota_exceeded(outcome.reset_epoch)
        else:
            self.status.set_network_status(NetworkStatus.LIMITED)

    def _unauthenticated(self, ctx: _Pass) -> None:
        if not ctx.stop.is_set():
            logger.error("Remote rejected credentials; halting sync of %s", ctx.space)
        ctx.halt("unauthenticated")
        if self.monitor is not None:
            self.monitor.report_unauthenticated()
        else:
            self.status.set_network_status(NetworkStatus.OFFLINE)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _same_content(note: Note, parsed: ParsedNote) -> bool:
        return (
            note.title == parsed.title
            and note.content.strip() == parsed.content.strip()
            and note.deleted == parsed.deleted
        )

    def _skipped(self, space: str, reason: str) -> SyncResult:
        result = SyncResult(space=space, skipped=True, reason=reason)
        result.finished_at = result.started_at
        return result

    def _pass_lock(self, space: str) -> threading.Lock:
        with self._lock:
            if space not in self._pass_locks:
                self._pass_locks[space] = threading.Lock()
            return self._pass_locks[space]

    def _claim(self, note_id: str) -> bool:
        with self._lock:
            if note_id in self._in_flight:
                return False
            self._in_flight.add(note_id)
            return True

    def _release(self, note_id: str) -> None:
        with self._lock:
            self._in_flight.discard(note_id)
