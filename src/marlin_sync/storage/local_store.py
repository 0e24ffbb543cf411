"""Local store: the embedded note cache the UI reads from.

Every mutation commits to SQLite and notifies subscribers before it
returns, so local writes are visible immediately regardless of any remote
call in flight. Version tokens and revision bookkeeping are written only
through the engine-facing methods at the bottom of the class.
"""
import datetime
import logging
import threading
from datetime import timezone
from typing import Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marlin_sync.exceptions import (
    ErrorCode,
    NoteNotFoundError,
    SpaceNotFoundError,
    StorageError,
)
from marlin_sync.models.db_models import DBNote, DBSpace, get_session_factory, init_db
from marlin_sync.models.schema import (
    Note,
    Space,
    SyncState,
    ensure_timezone_aware,
    generate_id,
    utc_now,
)
from marlin_sync.storage.markdown_parser import ParsedNote
from marlin_sync.utils import escape_like_pattern

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, Set[str]], None]
NotesCallback = Callable[[List[Note]], None]
SpacesCallback = Callable[[List[Space]], None]


def _to_db(dt: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Normalize to UTC before storage; SQLite keeps no offset."""
    if dt is None:
        return None
    return ensure_timezone_aware(dt).astimezone(timezone.utc)


class _NotesSubscription:
    def __init__(
        self,
        space: str,
        callback: NotesCallback,
        include_deleted: bool,
        only_deleted: bool,
    ):
        self.space = space
        self.callback = callback
        self.include_deleted = include_deleted
        self.only_deleted = only_deleted


class LocalStore:
    """SQLite-backed cache of spaces and notes with live-query subscriptions.

    Thread-safe: writes are serialized by a reentrant lock, and subscriber
    notifications for a write are delivered before the next write starts,
    so subscribers observe mutations of a note in the order they were issued.
    """

    def __init__(self, engine: Optional[Engine] = None, db_url: Optional[str] = None):
        """Initialize the store.

        Args:
            engine: SQLAlchemy engine. If None, one is created from db_url
                or the configured database path.
            db_url: Database URL used when no engine is given.
        """
        self.engine = engine or init_db(db_url)
        self.session_factory = get_session_factory(self.engine)
        self._write_lock = threading.RLock()
        self._listeners: List[ChangeListener] = []
        self._note_subscriptions: List[_NotesSubscription] = []
        self._space_subscriptions: List[SpacesCallback] = []
        self._subscriptions_lock = threading.Lock()

    # =========================================================================
    # Spaces
    # =========================================================================

    def get(self, space: str) -> Optional[Space]:
        """Get a space by name."""
        return self.get_space(space)

    def get_space(self, name: str) -> Optional[Space]:
        with self.session_factory() as session:
            db_space = session.get(DBSpace, name)
            return self._db_space_to_model(db_space) if db_space else None

    def require_space(self, name: str) -> Space:
        space = self.get_space(name)
        if space is None:
            raise SpaceNotFoundError(name)
        return space

    def list_spaces(self) -> List[Space]:
        """All known spaces, most recently updated first."""
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBSpace).order_by(DBSpace.updated_at.desc(), DBSpace.name)
            ).all()
            return [self._db_space_to_model(row) for row in rows]

    def put_space(self, space: Space) -> Space:
        """Insert or replace a space record, keyed by name."""
        with self._write_lock:
            with self._write_session("put_space") as session:
                db_space = session.get(DBSpace, space.name)
                if db_space is None:
                    db_space = DBSpace(name=space.name)
                    session.add(db_space)
                db_space.repo_name = space.repo_name
                db_space.description = space.description
                db_space.is_private = space.is_private
                db_space.owner = space.owner
                db_space.updated_at = _to_db(utc_now())
                if space.last_synced_at is not None:
                    db_space.last_synced_at = _to_db(space.last_synced_at)
                session.commit()
                result = self._db_space_to_model(db_space)
            self._notify_spaces()
        return result

    def delete_space(self, name: str) -> int:
        """Forget a space and its cached notes. Returns notes removed.

        Only the local cache is affected; the remote repository is untouched.
        """
        with self._write_lock:
            with self._write_session("delete_space") as session:
                db_space = session.get(DBSpace, name)
                if db_space is None:
                    raise SpaceNotFoundError(name)
                ids = set(
                    session.scalars(select(DBNote.id).where(DBNote.space == name)).all()
                )
                session.query(DBNote).filter(DBNote.space == name).delete()
                session.delete(db_space)
                session.commit()
            self._notify(name, ids)
            self._notify_spaces()
        return len(ids)

    def mark_space_synced(
        self, name: str, when: Optional[datetime.datetime] = None
    ) -> None:
        """Record the per-space last-synced marker."""
        with self._write_lock:
            with self._write_session("mark_space_synced") as session:
                db_space = session.get(DBSpace, name)
                if db_space is None:
                    return
                db_space.last_synced_at = _to_db(when or utc_now())
                session.commit()
            self._notify_spaces()

    # =========================================================================
    # Notes: reads
    # =========================================================================

    def get_note(self, note_id: str) -> Optional[Note]:
        """Get a note by ID, including trashed notes."""
        with self.session_factory() as session:
            db_note = session.get(DBNote, note_id)
            return self._db_note_to_model(db_note) if db_note else None

    def require_note(self, note_id: str) -> Note:
        note = self.get_note(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note

    def list_notes(
        self,
        space: str,
        include_deleted: bool = False,
        only_deleted: bool = False,
    ) -> List[Note]:
        """Notes of a space, most recently modified first.

        ``only_deleted`` is the trash view, ordered by deletion time.
        """
        with self.session_factory() as session:
            query = select(DBNote).where(DBNote.space == space)
            if only_deleted:
                query = query.where(DBNote.deleted.is_(True)).order_by(
                    DBNote.deleted_at.desc(), DBNote.id.desc()
                )
            else:
                if not include_deleted:
                    query = query.where(DBNote.deleted.is_(False))
                query = query.order_by(DBNote.updated_at.desc(), DBNote.id.desc())
            return [self._db_note_to_model(row) for row in session.scalars(query).all()]

    def search_notes(self, space: str, query: str) -> List[Note]:
        """Case-insensitive substring search over title and body of active notes."""
        if not query:
            return self.list_notes(space)
        pattern = f"%{escape_like_pattern(query.lower())}%"
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBNote)
                .where(
                    DBNote.space == space,
                    DBNote.deleted.is_(False),
                    or_(
                        func.lower(DBNote.content).like(pattern, escape="\\"),
                        func.lower(DBNote.title).like(pattern, escape="\\"),
                    ),
                )
                .order_by(DBNote.updated_at.desc(), DBNote.id.desc())
            ).all()
            return [self._db_note_to_model(row) for row in rows]

    def count_unsynced(self, space: Optional[str] = None) -> int:
        """Number of notes whose local revision is ahead of the remote."""
        with self.session_factory() as session:
            query = select(func.count()).select_from(DBNote).where(
                DBNote.revision > DBNote.synced_revision
            )
            if space is not None:
                query = query.where(DBNote.space == space)
            return session.scalar(query) or 0

    # =========================================================================
    # Notes: user mutations
    # =========================================================================

    def upsert_note(self, note: Note) -> Note:
        """Create or update a note by ID.

        Idempotent: writing the same title and body again changes nothing.
        Sync bookkeeping fields on the passed note are ignored.
        """
        with self._write_lock:
            with self._write_session("upsert_note", note.id) as session:
                db_note = session.get(DBNote, note.id)
                now = _to_db(utc_now())
                if db_note is None:
                    db_note = DBNote(
                        id=note.id,
                        space=note.space,
                        title=note.title,
                        content=note.content,
                        created_at=_to_db(note.created_at),
                        updated_at=now,
                        deleted=False,
                        purge_requested=False,
                        version_token=None,
                        sync_state=SyncState.PENDING.value,
                        revision=1,
                        synced_revision=0,
                    )
                    session.add(db_note)
                else:
                    if db_note.space != note.space:
                        raise StorageError(
                            f"Note {note.id} belongs to space '{db_note.space}'",
                            operation="upsert_note",
                            note_id=note.id,
                            code=ErrorCode.NOTE_VALIDATION_FAILED,
                        )
                    if db_note.title == note.title and db_note.content == note.content:
                        return self._db_note_to_model(db_note)
                    db_note.title = note.title
                    db_note.content = note.content
                    self._touch(db_note, now)
                session.commit()
                result = self._db_note_to_model(db_note)
            self._notify(result.space, {result.id})
        return result

    def mark_deleted(self, note_id: str) -> Note:
        """Move a note to the trash (reversible)."""
        def apply(db_note: DBNote, now: datetime.datetime) -> bool:
            if db_note.deleted:
                return False
            db_note.deleted = True
            db_note.deleted_at = now
            return True

        return self._mutate(note_id, "mark_deleted", apply)

    def restore(self, note_id: str) -> Note:
        """Take a note out of the trash."""
        def apply(db_note: DBNote, now: datetime.datetime) -> bool:
            if not db_note.deleted:
                return False
            db_note.deleted = False
            db_note.deleted_at = None
            db_note.purge_requested = False
            return True

        return self._mutate(note_id, "restore", apply)

    def request_purge(self, note_id: str) -> Note:
        """Ask for permanent deletion on the next pass.

        The local record stays until the remote delete is confirmed.
        """
        def apply(db_note: DBNote, now: datetime.datetime) -> bool:
            if db_note.purge_requested:
                return False
            if not db_note.deleted:
                db_note.deleted = True
                db_note.deleted_at = now
            db_note.purge_requested = True
            return True

        return self._mutate(note_id, "request_purge", apply)

    def purge(self, note_id: str, expected_revision: Optional[int] = None) -> bool:
        """Physically remove a note. Returns False if nothing was removed.

        Only the sync engine calls this, after the remote confirmed the
        delete or reported the file missing. With ``expected_revision`` the
        note is kept if it was mutated since that revision was read.
        """
        with self._write_lock:
            with self._write_session("purge", note_id) as session:
                db_note = session.get(DBNote, note_id)
                if db_note is None:
                    return False
                if expected_revision is not None and db_note.revision != expected_revision:
                    return False
                space = db_note.space
                session.delete(db_note)
                session.commit()
            self._notify(space, {note_id})
        return True

    # =========================================================================
    # Notes: sync engine bookkeeping
    # =========================================================================

    def notes_by_id(self, space: str) -> Dict[str, Note]:
        """Every cached note of a space, trashed ones included."""
        return {n.id: n for n in self.list_notes(space, include_deleted=True)}

    def dirty_notes(self, space: str) -> List[Note]:
        """Notes with local mutations not yet reflected remotely (oldest first)."""
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBNote)
                .where(DBNote.space == space, DBNote.revision > DBNote.synced_revision)
                .order_by(DBNote.updated_at, DBNote.id)
            ).all()
            return [self._db_note_to_model(row) for row in rows]

    def set_sync_state(
        self, note_id: str, state: SyncState, error_message: Optional[str] = None
    ) -> Optional[Note]:
        """Update the display state. Does not touch content or revisions."""
        with self._write_lock:
            with self._write_session("set_sync_state", note_id) as session:
                db_note = session.get(DBNote, note_id)
                if db_note is None:
                    return None
                if (
                    db_note.sync_state == state.value
                    and db_note.error_message == error_message
                ):
                    return self._db_note_to_model(db_note)
                db_note.sync_state = state.value
                db_note.error_message = error_message
                session.commit()
                result = self._db_note_to_model(db_note)
            self._notify(result.space, {note_id})
        return result

    def complete_push(
        self, note_id: str, version_token: str, pushed_revision: int
    ) -> Optional[Note]:
        """Record a successful push of ``pushed_revision``.

        If the note was edited while the push was in flight, the new token is
        stored but the note stays dirty so the newer content is pushed next.
        """
        with self._write_lock:
            with self._write_session("complete_push", note_id) as session:
                db_note = session.get(DBNote, note_id)
                if db_note is None:
                    return None
                db_note.version_token = version_token
                db_note.synced_revision = max(db_note.synced_revision, pushed_revision)
                db_note.error_message = None
                db_note.sync_state = (
                    SyncState.SYNCED.value
                    if db_note.revision <= db_note.synced_revision
                    else SyncState.PENDING.value
                )
                session.commit()
                result = self._db_note_to_model(db_note)
            self._notify(result.space, {note_id})
        return result

    def apply_remote(
        self,
        space: str,
        note_id: str,
        parsed: ParsedNote,
        version_token: str,
        expected_revision: Optional[int] = None,
    ) -> Optional[Note]:
        """Overwrite (or create) the local note with remote content.

        Args:
            expected_revision: If given, apply only when the local revision
                still equals it; a local edit that raced the fetch wins and
                None is returned.

        Returns:
            The updated note, or None when skipped because of a racing edit.
        """
        with self._write_lock:
            with self._write_session("apply_remote", note_id) as session:
                db_note = session.get(DBNote, note_id)
                if db_note is None:
                    if expected_revision is not None:
                        return None
                    db_note = DBNote(id=note_id, space=space, revision=1)
                    session.add(db_note)
                elif expected_revision is not None and db_note.revision != expected_revision:
                    return None
                self._apply_parsed(db_note, parsed, version_token)
                session.commit()
                result = self._db_note_to_model(db_note)
            self._notify(space, {note_id})
        return result

    def resolve_conflict(
        self,
        note_id: str,
        parsed: ParsedNote,
        version_token: str,
        title_suffix: str,
    ) -> Optional[Note]:
        """Keep the remote version under the original ID and fork the local one.

        In one transaction: the local content is copied to a new note whose
        title carries ``title_suffix`` (never synced, so it is pushed on a
        later pass) and the original is overwritten with the remote content.

        Returns:
            The conflicted copy, or None if the note no longer exists.
        """
        with self._write_lock:
            with self._write_session("resolve_conflict", note_id) as session:
                db_note = session.get(DBNote, note_id)
                if db_note is None:
                    return None
                now = _to_db(utc_now())
                copy = DBNote(
                    id=generate_id(),
                    space=db_note.space,
                    title=f"{db_note.title or 'Untitled'} {title_suffix}".strip(),
                    content=db_note.content,
                    created_at=now,
                    updated_at=now,
                    deleted=False,
                    purge_requested=False,
                    version_token=None,
                    sync_state=SyncState.PENDING.value,
                    revision=1,
                    synced_revision=0,
                )
                session.add(copy)
                self._apply_parsed(db_note, parsed, version_token)
                session.commit()
                space = db_note.space
                result = self._db_note_to_model(copy)
            self._notify(space, {note_id, result.id})
        return result

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def add_change_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener(space, note_ids)`` after every committed note change."""
        with self._subscriptions_lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._subscriptions_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def subscribe_notes(
        self,
        space: str,
        callback: NotesCallback,
        include_deleted: bool = False,
        only_deleted: bool = False,
    ) -> Callable[[], None]:
        """Live query over ``list_notes``.

        The callback receives the current snapshot immediately and a fresh
        one after every change to the space's notes. Returns an unsubscribe
        function.
        """
        sub = _NotesSubscription(space, callback, include_deleted, only_deleted)
        with self._subscriptions_lock:
            self._note_subscriptions.append(sub)
        callback(self.list_notes(space, include_deleted, only_deleted))

        def unsubscribe() -> None:
            with self._subscriptions_lock:
                if sub in self._note_subscriptions:
                    self._note_subscriptions.remove(sub)

        return unsubscribe

    def subscribe_spaces(self, callback: SpacesCallback) -> Callable[[], None]:
        """Live query over ``list_spaces``."""
        with self._subscriptions_lock:
            self._space_subscriptions.append(callback)
        callback(self.list_spaces())

        def unsubscribe() -> None:
            with self._subscriptions_lock:
                if callback in self._space_subscriptions:
                    self._space_subscriptions.remove(callback)

        return unsubscribe

    # =========================================================================
    # Internals
    # =========================================================================

    def _write_session(self, operation: str, note_id: Optional[str] = None):
        return _WriteSession(self.session_factory, operation, note_id)

    def _mutate(
        self,
        note_id: str,
        operation: str,
        apply: Callable[[DBNote, datetime.datetime], bool],
    ) -> Note:
        with self._write_lock:
            with self._write_session(operation, note_id) as session:
                db_note = session.get(DBNote, note_id)
                if db_note is None:
                    raise NoteNotFoundError(note_id)
                now = _to_db(utc_now())
                if not apply(db_note, now):
                    return self._db_note_to_model(db_note)
                self._touch(db_note, now)
                session.commit()
                result = self._db_note_to_model(db_note)
            self._notify(result.space, {note_id})
        return result

    @staticmethod
    def _touch(db_note: DBNote, now: datetime.datetime) -> None:
        """Mark a user mutation: bump revision and timestamps."""
        db_note.updated_at = now
        db_note.revision = db_note.revision + 1
        if db_note.sync_state != SyncState.SYNCING.value:
            db_note.sync_state = SyncState.PENDING.value
        db_note.error_message = None

    @staticmethod
    def _apply_parsed(db_note: DBNote, parsed: ParsedNote, version_token: str) -> None:
        db_note.title = parsed.title
        db_note.content = parsed.content
        db_note.created_at = _to_db(parsed.created_at)
        db_note.updated_at = _to_db(parsed.updated_at)
        db_note.deleted = parsed.deleted
        db_note.deleted_at = _to_db(parsed.deleted_at) if parsed.deleted else None
        db_note.purge_requested = False
        db_note.version_token = version_token
        db_note.synced_revision = db_note.revision
        db_note.sync_state = SyncState.SYNCED.value
        db_note.error_message = None

    def _notify(self, space: str, note_ids: Iterable[str]) -> None:
        ids = set(note_ids)
        with self._subscriptions_lock:
            listeners = list(self._listeners)
            subs = [s for s in self._note_subscriptions if s.space == space]
        for listener in listeners:
            try:
                listener(space, ids)
            except Exception as e:
                logger.warning("Change listener failed for space %s: %s", space, e)
        for sub in subs:
            try:
                sub.callback(self.list_notes(space, sub.include_deleted, sub.only_deleted))
            except Exception as e:
                logger.warning("Note subscriber failed for space %s: %s", space, e)

    def _notify_spaces(self) -> None:
        with self._subscriptions_lock:
            callbacks = list(self._space_subscriptions)
        if not callbacks:
            return
        spaces = self.list_spaces()
        for callback in callbacks:
            try:
                callback(spaces)
            except Exception as e:
                logger.warning("Space subscriber failed: %s", e)

    @staticmethod
    def _db_note_to_model(db_note: DBNote) -> Note:
        return Note(
            id=db_note.id,
            space=db_note.space,
            title=db_note.title or "",
            content=db_note.content or "",
            created_at=ensure_timezone_aware(db_note.created_at),
            updated_at=ensure_timezone_aware(db_note.updated_at),
            deleted=bool(db_note.deleted),
            deleted_at=(
                ensure_timezone_aware(db_note.deleted_at) if db_note.deleted_at else None
            ),
            purge_requested=bool(db_note.purge_requested),
            version_token=db_note.version_token,
            sync_state=SyncState(db_note.sync_state),
            error_message=db_note.error_message,
            revision=db_note.revision,
            synced_revision=db_note.synced_revision,
        )

    @staticmethod
    def _db_space_to_model(db_space: DBSpace) -> Space:
        return Space(
            name=db_space.name,
            repo_name=db_space.repo_name,
            description=db_space.description,
            is_private=bool(db_space.is_private),
            owner=db_space.owner,
            updated_at=ensure_timezone_aware(db_space.updated_at),
            last_synced_at=(
                ensure_timezone_aware(db_space.last_synced_at)
                if db_space.last_synced_at
                else None
            ),
        )


class _WriteSession:
    """Session context that converts database failures into StorageError."""

    def __init__(self, session_factory, operation: str, note_id: Optional[str]):
        self._session_factory = session_factory
        self._operation = operation
        self._note_id = note_id
        self._session: Optional[Session] = None

    def __enter__(self) -> Session:
        self._session = self._session_factory()
        return self._session

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc is not None:
                self._session.rollback()
                if isinstance(exc, SQLAlchemyError):
                    logger.error(
                        "Local store %s failed for %s: %s",
                        self._operation,
                        self._note_id,
                        exc,
                    )
                    raise StorageError(
                        f"Local store operation '{self._operation}' failed",
                        operation=self._operation,
                        note_id=self._note_id,
                        original_error=exc,
                    ) from exc
            return False
        finally:
            self._session.close()
