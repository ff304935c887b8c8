"""
auth/store.py -- Refresh-token persistence with atomic rotation.

Pattern: Repository + Data Mapper. RefreshStore is the port (a Protocol);
InMemoryRefreshStore and SqlRefreshStore are the adapters. _row_to_record is
the mapper. Service code never touches SQL directly.

Rotation contract:
  rotate(old, new) revokes ``old`` and inserts ``new`` as ONE unit. If ``old``
  is absent, revoked, expired, or owned by someone else the call raises
  ConflictError and changes nothing. Two concurrent rotations of the same
  token id therefore produce exactly one success and one ConflictError.

  SqlRefreshStore implements this as a compare-and-swap: a conditional UPDATE
  (``WHERE token_id = :old AND revoked = 0 AND expires_at > :now AND
  username = :u``) whose rowcount must be 1, followed by the INSERT, inside a
  single transaction. The UPDATE is the first statement of the transaction so
  SQLite takes the write lock before reading anything. A per-lineage
  threading.Lock serializes rotations inside one process on top of that.

Timestamps are stored as integer epoch seconds so expiry comparisons can run
in SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import Boolean, Column, Index, Integer, MetaData, String, Table, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import ConflictError, StoreUnavailable
from auth.models import RefreshRecord

logger = logging.getLogger("sessionguard.store")

_DEFAULT_DB_URL = "sqlite:///sessionguard_auth.db"

# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------


class RefreshStore(Protocol):
    """Stateful store for refresh-token records.

    Every mutating method MUST be atomic per token id; rotate MUST be atomic
    across the old and the new record.
    """

    def insert(self, record: RefreshRecord) -> None:
        """Persist a brand-new record. Duplicate token ids raise ConflictError."""

    def find_active(self, token_id: str) -> RefreshRecord | None:
        """Return the record if it exists, is not revoked and has not expired."""

    def get(self, token_id: str) -> RefreshRecord | None:
        """Return the record in whatever state it is in."""

    def rotate(self, old_token_id: str, new_record: RefreshRecord) -> None:
        """Revoke ``old_token_id`` and insert ``new_record`` atomically, or raise ConflictError."""

    def revoke(self, token_id: str) -> bool:
        """Revoke one record. Returns True if a record changed state."""

    def revoke_lineage(self, username: str) -> int:
        """Revoke every record owned by ``username``. Returns the number changed."""

    def list_active(self, username: str) -> list[RefreshRecord]:
        """Return the active records owned by ``username``, oldest first."""

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete records whose expiry has passed. Returns the number deleted."""

    def ping(self) -> bool:
        """Return True if the backing storage is reachable."""

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _dt(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _short(token_id: str) -> str:
    """Truncated token id for log lines."""
    return token_id[:8] + "..."


class _LineageLocks:
    """A fixed set of lock stripes keyed by username hash.

    Rotations of the same lineage always take the same lock. Unrelated users
    only wait on each other when they share a stripe, and memory stays
    constant however many usernames pass through.
    """

    def __init__(self, stripes: int = 64) -> None:
        self._locks = tuple(threading.Lock() for _ in range(stripes))

    def lock_for(self, username: str) -> threading.Lock:
        return self._locks[hash(username) % len(self._locks)]

    @contextmanager
    def hold(self, username: str) -> Iterator[None]:
        with self.lock_for(username):
            yield


# ---------------------------------------------------------------------------
# In-memory adapter
# ---------------------------------------------------------------------------


class InMemoryRefreshStore:
    """Dict-backed store for tests and single-process development.

    Honors the same atomicity contract as SqlRefreshStore for the lifetime of
    the process; nothing survives a restart.
    """

    def __init__(self) -> None:
        self._records: dict[str, RefreshRecord] = {}
        self._lock = threading.Lock()

    def insert(self, record: RefreshRecord) -> None:
        with self._lock:
            if record.token_id in self._records:
                raise ConflictError(f"Refresh token id {_short(record.token_id)} already exists.")
            self._records[record.token_id] = record

    def find_active(self, token_id: str) -> RefreshRecord | None:
        with self._lock:
            record = self._records.get(token_id)
        if record is None or not record.is_active(_now()):
            return None
        return record

    def get(self, token_id: str) -> RefreshRecord | None:
        with self._lock:
            return self._records.get(token_id)

    def rotate(self, old_token_id: str, new_record: RefreshRecord) -> None:
        with self._lock:
            old = self._records.get(old_token_id)
            if old is None or not old.is_active(_now()) or old.username != new_record.username:
                raise ConflictError("Refresh token is no longer active.")
            if new_record.token_id in self._records:
                raise ConflictError(f"Refresh token id {_short(new_record.token_id)} already exists.")
            self._records[old_token_id] = _revoked(old)
            self._records[new_record.token_id] = new_record

    def revoke(self, token_id: str) -> bool:
        with self._lock:
            record = self._records.get(token_id)
            if record is None or record.revoked:
                return False
            self._records[token_id] = _revoked(record)
            return True

    def revoke_lineage(self, username: str) -> int:
        with self._lock:
            changed = [r for r in self._records.values() if r.username == username and not r.revoked]
            for record in changed:
                self._records[record.token_id] = _revoked(record)
        return len(changed)

    def list_active(self, username: str) -> list[RefreshRecord]:
        now = _now()
        with self._lock:
            records = [r for r in self._records.values() if r.username == username and r.is_active(now)]
        return sorted(records, key=lambda r: r.issued_at)

    def purge_expired(self, now: datetime | None = None) -> int:
        now = now or _now()
        with self._lock:
            expired = [tid for tid, r in self._records.items() if r.expires_at <= now]
            for tid in expired:
                del self._records[tid]
        return len(expired)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


def _revoked(record: RefreshRecord) -> RefreshRecord:
    return RefreshRecord(
        token_id=record.token_id,
        username=record.username,
        issued_at=record.issued_at,
        expires_at=record.expires_at,
        revoked=True,
    )


# ---------------------------------------------------------------------------
# SQL adapter
# ---------------------------------------------------------------------------

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token_id", String(64), primary_key=True),
    Column("username", String(255), nullable=False),
    Column("issued_at", Integer, nullable=False),  # epoch seconds, UTC
    Column("expires_at", Integer, nullable=False),  # epoch seconds, UTC
    Column("revoked", Boolean, nullable=False, default=False),
)

Index("ix_refresh_tokens_username", _refresh_tokens.c.username)


def _sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and a busy timeout on every new SQLite connection.

    WAL lets readers proceed during a rotation. busy_timeout makes a second
    writer wait for the first instead of failing immediately with
    "database is locked".
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class SqlRefreshStore:
    """Durable refresh-token store on SQLAlchemy Core.

    Usage:
        store = SqlRefreshStore("sqlite:///auth.db")
        store.insert(record)
        store.rotate(old_id, new_record)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        try:
            self.engine: Engine = create_engine(db_url, connect_args=connect_args)
            if db_url.startswith("sqlite"):
                event.listen(self.engine, "connect", _sqlite_pragmas)
            _metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Cannot open refresh store: {exc}") from exc
        self._lineage_locks = _LineageLocks()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Translate driver failures into StoreUnavailable."""
        try:
            yield
        except IntegrityError as exc:
            raise ConflictError("Refresh token id already exists.") from exc
        except SQLAlchemyError as exc:
            logger.error("Refresh store operation failed: %s", exc)
            raise StoreUnavailable("Refresh store unavailable.") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, record: RefreshRecord) -> None:
        with self._guard(), self.engine.begin() as conn:
            conn.execute(_refresh_tokens.insert().values(**_record_to_row(record)))

    def rotate(self, old_token_id: str, new_record: RefreshRecord) -> None:
        now_ts = _ts(_now())
        with self._lineage_locks.hold(new_record.username), self._guard(), self.engine.begin() as conn:
            # Compare-and-swap: only an active record owned by the same user
            # may be consumed. Raising inside begin() rolls the UPDATE back.
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_id == old_token_id)
                    & (_refresh_tokens.c.revoked == False)  # noqa: E712
                    & (_refresh_tokens.c.expires_at > now_ts)
                    & (_refresh_tokens.c.username == new_record.username)
                )
                .values(revoked=True)
            )
            if result.rowcount != 1:
                raise ConflictError("Refresh token is no longer active.")
            conn.execute(_refresh_tokens.insert().values(**_record_to_row(new_record)))
        logger.debug("Rotated %s -> %s", _short(old_token_id), _short(new_record.token_id))

    def revoke(self, token_id: str) -> bool:
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_id == token_id) & (_refresh_tokens.c.revoked == False))  # noqa: E712
                .values(revoked=True)
            )
        return result.rowcount > 0

    def revoke_lineage(self, username: str) -> int:
        with self._lineage_locks.hold(username), self._guard(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.username == username) & (_refresh_tokens.c.revoked == False))  # noqa: E712
                .values(revoked=True)
            )
        return result.rowcount

    def purge_expired(self, now: datetime | None = None) -> int:
        now_ts = _ts(now or _now())
        with self._guard(), self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= now_ts))
        if result.rowcount:
            logger.info("Purged %d expired refresh tokens", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, token_id: str) -> RefreshRecord | None:
        with self._guard(), self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_id == token_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def find_active(self, token_id: str) -> RefreshRecord | None:
        now_ts = _ts(_now())
        with self._guard(), self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.token_id == token_id)
                    & (_refresh_tokens.c.revoked == False)  # noqa: E712
                    & (_refresh_tokens.c.expires_at > now_ts)
                )
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_active(self, username: str) -> list[RefreshRecord]:
        now_ts = _ts(_now())
        with self._guard(), self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(
                    (_refresh_tokens.c.username == username)
                    & (_refresh_tokens.c.revoked == False)  # noqa: E712
                    & (_refresh_tokens.c.expires_at > now_ts)
                )
                .order_by(_refresh_tokens.c.issued_at)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(_refresh_tokens.select().limit(1))
            return True
        except SQLAlchemyError:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _record_to_row(record: RefreshRecord) -> dict:
    return {
        "token_id": record.token_id,
        "username": record.username,
        "issued_at": _ts(record.issued_at),
        "expires_at": _ts(record.expires_at),
        "revoked": record.revoked,
    }


def _row_to_record(row) -> RefreshRecord:
    return RefreshRecord(
        token_id=row.token_id,
        username=row.username,
        issued_at=_dt(row.issued_at),
        expires_at=_dt(row.expires_at),
        revoked=bool(row.revoked),
    )
