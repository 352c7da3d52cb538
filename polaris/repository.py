from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple
from contextlib import contextmanager

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from polaris.data_models import (
    Base,
    User,
    Library,
    Item,
    WatchHistorySession,
    ActivityLogEntry,
    SyncRun,
    ActiveRunMarker,
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    RUN_PENDING,
    RUN_RUNNING,
    RUN_SUCCEEDED,
    RUN_FAILED,
    RUN_CANCELLED,
)
from polaris.errors import ConflictError, SourceMalformed, StoreWriteFailed

logger = logging.getLogger(__name__)

ENTITY_KINDS = ("users", "libraries", "items", "sessions", "activity")

# An unkeyed live session seen again within this window is the same playback
SESSION_GAP_SECONDS = 600


def create_db_engine(database_url: str):
    """
    Engine factory shared by the stores. In-memory SQLite gets a single
    shared connection so background threads see the same database.
    """
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(database_url, future=True)


def _assign(obj: Any, values: Dict[str, Any]) -> bool:
    """
    Set attributes that differ. Returns True when anything changed.
    """
    changed = False
    for key, value in values.items():
        if getattr(obj, key) != value:
            setattr(obj, key, value)
            changed = True
    return changed


@dataclass
class PageResult:
    """
    Outcome of writing one page of mapped records.
    """
    upserted: int = 0
    skipped: int = 0
    failed: int = 0
    ids: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class Repository:
    """
    Data access layer for the reconciled store and sync run bookkeeping.
    """

    database_url: str = "sqlite:///polaris_data.db"

    def __post_init__(self) -> None:
        self.engine = create_db_engine(self.database_url)
        self.SessionLocal = sessionmaker(
            bind=self.engine, expire_on_commit=False
        )
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self):
        """Context manager for database sessions with auto-commit."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Reconciliation

    def upsert(
        self,
        entity_kind: str,
        server_id: int,
        record: Dict[str, Any]
    ) -> int:
        """
        Idempotently write one mapped remote record and return its local id.

        Applying the same record twice leaves the stored row unchanged.
        """
        with self._session() as session:
            entity_id, _ = self._apply(session, entity_kind, server_id, record, int(time.time()))
            return entity_id

    def upsert_page(
        self,
        entity_kind: str,
        server_id: int,
        records: List[Dict[str, Any]]
    ) -> PageResult:
        """
        Write a page of mapped records in one transaction.

        If the batch fails it is retried once; after that each record is
        written on its own so a single bad row only fails itself.
        """
        if entity_kind not in ENTITY_KINDS:
            raise ValueError(f"Unknown entity kind: {entity_kind}")
        if not records:
            return PageResult()

        for attempt in range(2):
            result = PageResult()
            now = int(time.time())
            try:
                with self._session() as session:
                    for record in records:
                        entity_id, outcome = self._apply(session, entity_kind, server_id, record, now)
                        session.flush()
                        result.ids.append(entity_id)
                        if outcome == "skipped":
                            result.skipped += 1
                        else:
                            result.upserted += 1
                return result
            except (SQLAlchemyError, SourceMalformed) as exc:
                logger.warning(
                    "Batch write of %d %s failed (attempt %d): %s",
                    len(records), entity_kind, attempt + 1, exc,
                )

        result = PageResult()
        for record in records:
            try:
                entity_id, outcome = self._write_one(entity_kind, server_id, record)
            except StoreWriteFailed as exc:
                result.failed += 1
                result.errors.append(str(exc))
                continue
            result.ids.append(entity_id)
            if outcome == "skipped":
                result.skipped += 1
            else:
                result.upserted += 1
        return result

    def _write_one(
        self,
        entity_kind: str,
        server_id: int,
        record: Dict[str, Any]
    ) -> Tuple[int, str]:
        try:
            with self._session() as session:
                entity_id, outcome = self._apply(session, entity_kind, server_id, record, int(time.time()))
                session.flush()
                return entity_id, outcome
        except (SQLAlchemyError, SourceMalformed) as exc:
            raise StoreWriteFailed(
                f"Failed to write {entity_kind} record "
                f"{record.get('remote_id') or record.get('session_key') or '?'}: {exc}",
                record,
            ) from exc

    def _apply(
        self,
        session: Session,
        entity_kind: str,
        server_id: int,
        record: Dict[str, Any],
        now: int
    ) -> Tuple[int, str]:
        if entity_kind != "sessions" and not record.get("remote_id"):
            raise SourceMalformed(f"{entity_kind} record without remote_id", record)
        if entity_kind == "users":
            return self._apply_user(session, server_id, record, now)
        if entity_kind == "libraries":
            return self._apply_library(session, server_id, record, now)
        if entity_kind == "items":
            return self._apply_item(session, server_id, record, now)
        if entity_kind == "sessions":
            return self._apply_session(session, server_id, record, now)
        if entity_kind == "activity":
            return self._apply_activity(session, server_id, record)
        raise ValueError(f"Unknown entity kind: {entity_kind}")

    # Users

    def _apply_user(self, session: Session, server_id: int, data: Dict[str, Any], now: int):
        user = session.query(User).filter_by(
            server_id=server_id, remote_id=data["remote_id"]
        ).first()

        values = {
            "name": data.get("name") or "Unknown",
            "is_administrator": bool(data.get("is_administrator", False)),
            "is_active": True,
        }
        if user:
            if _assign(user, values):
                user.updated_at = now
            return user.id, "updated"

        user = User(
            server_id=server_id,
            remote_id=data["remote_id"],
            created_at=now,
            updated_at=now,
            **values,
        )
        session.add(user)
        session.flush()
        return user.id, "inserted"

    def deactivate_missing_users(
        self, server_id: int, active_remote_ids: List[str]
    ) -> int:
        """
        Flag users that are no longer listed upstream. Rows stay for history.
        """
        if not active_remote_ids:
            return 0

        with self._session() as session:
            return (
                session.query(User)
                .filter(User.server_id == server_id)
                .filter(User.remote_id.notin_(active_remote_ids))
                .filter(User.is_active == True)
                .update(
                    {"is_active": False, "updated_at": int(time.time())},
                    synchronize_session=False,
                )
            )

    def list_users(
        self, server_id: int, include_inactive: bool = False
    ) -> List[Dict[str, Any]]:
        with self._session() as session:
            query = session.query(User).filter(User.server_id == server_id)
            if not include_inactive:
                query = query.filter(User.is_active == True)
            return [u.to_dict() for u in query.order_by(User.id).all()]

    # Libraries

    def _apply_library(self, session: Session, server_id: int, data: Dict[str, Any], now: int):
        lib = session.query(Library).filter_by(
            server_id=server_id, remote_id=data["remote_id"]
        ).first()

        values = {
            "name": data.get("name") or "Unknown",
            "type": data.get("type"),
            "archived": False,
        }
        if lib:
            if _assign(lib, values):
                lib.updated_at = now
            return lib.id, "updated"

        lib = Library(
            server_id=server_id,
            remote_id=data["remote_id"],
            created_at=now,
            updated_at=now,
            **values,
        )
        session.add(lib)
        session.flush()
        return lib.id, "inserted"

    def archive_missing_libraries(
        self, server_id: int, active_remote_ids: List[str]
    ) -> int:
        """
        Mark libraries as archived if not in active list.
        """
        if not active_remote_ids:
            return 0

        with self._session() as session:
            return (
                session.query(Library)
                .filter(Library.server_id == server_id)
                .filter(Library.remote_id.notin_(active_remote_ids))
                .filter(Library.archived == False)
                .update(
                    {"archived": True, "updated_at": int(time.time())},
                    synchronize_session=False,
                )
            )

    def list_libraries(
        self, server_id: int, include_archived: bool = False
    ) -> List[Dict[str, Any]]:
        with self._session() as session:
            query = session.query(Library).filter(Library.server_id == server_id)
            if not include_archived:
                query = query.filter(Library.archived == False)
            return [lib.to_dict() for lib in query.order_by(Library.id).all()]

    # Items

    def _apply_item(self, session: Session, server_id: int, data: Dict[str, Any], now: int):
        item = session.query(Item).filter_by(
            server_id=server_id, remote_id=data["remote_id"]
        ).first()

        values = {
            "name": data.get("name") or "Unknown",
            "type": data.get("type"),
            "parent_id": data.get("parent_id"),
            "series_id": data.get("series_id"),
            "season_id": data.get("season_id"),
            "series_name": data.get("series_name"),
            "index_number": data.get("index_number"),
            "parent_index_number": data.get("parent_index_number"),
            "production_year": data.get("production_year"),
            "runtime_seconds": int(data.get("runtime_seconds") or 0),
            "date_created": data.get("date_created"),
            "archived": False,
        }
        if data.get("library_id") is not None:
            values["library_id"] = data["library_id"]

        if item:
            if _assign(item, values):
                item.updated_at = now
            return item.id, "updated"

        item = Item(
            server_id=server_id,
            remote_id=data["remote_id"],
            created_at=now,
            updated_at=now,
            **values,
        )
        session.add(item)
        session.flush()
        return item.id, "inserted"

    def archive_missing_items(
        self, server_id: int, library_id: int, active_remote_ids: List[str]
    ) -> int:
        """
        Mark items as archived if not in active list for a library.
        """
        with self._session() as session:
            query = (
                session.query(Item)
                .filter(Item.server_id == server_id)
                .filter(Item.library_id == library_id)
                .filter(Item.archived == False)
            )
            if active_remote_ids:
                query = query.filter(Item.remote_id.notin_(active_remote_ids))
            return query.update(
                {"archived": True, "updated_at": int(time.time())},
                synchronize_session=False,
            )

    def get_item(self, server_id: int, remote_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            item = session.query(Item).filter_by(
                server_id=server_id, remote_id=remote_id
            ).first()
            return item.to_dict() if item else None

    def list_items(self, server_id: int, include_archived: bool = False) -> List[Dict[str, Any]]:
        with self._session() as session:
            query = session.query(Item).filter(Item.server_id == server_id)
            if not include_archived:
                query = query.filter(Item.archived == False)
            return [it.to_dict() for it in query.order_by(Item.id).all()]

    # Watch history

    def _apply_session(self, session: Session, server_id: int, data: Dict[str, Any], now: int):
        """
        Merge an observation of a playback session.

        Progress only moves forward: duration and percent never shrink,
        completed never reverts, and a completed session is frozen.
        """
        user_id = data.get("user_id")
        item_id = data.get("item_id")
        if not user_id or not item_id:
            raise SourceMalformed("Session record without user or item", data)

        session_key = data.get("session_key")
        live_key = data.get("live_key")
        observed_at = data.get("observed_at")
        start_time = data.get("start_time")
        if observed_at is None:
            observed_at = start_time if start_time is not None else now

        existing = None
        if session_key:
            existing = session.query(WatchHistorySession).filter_by(
                server_id=server_id, session_key=session_key
            ).first()
        elif live_key:
            existing = (
                session.query(WatchHistorySession)
                .filter(WatchHistorySession.server_id == server_id)
                .filter(WatchHistorySession.live_key == live_key)
                .filter(WatchHistorySession.end_time >= observed_at - SESSION_GAP_SECONDS)
                .order_by(WatchHistorySession.end_time.desc())
                .first()
            )
        else:
            if start_time is None:
                raise SourceMalformed("Session record without key or start_time", data)
            session_key = f"{user_id}|{item_id}|{int(start_time)}"
            existing = session.query(WatchHistorySession).filter_by(
                server_id=server_id, session_key=session_key
            ).first()

        reasons = data.get("transcoding_reasons")
        descriptive = {
            "user_name": data.get("user_name"),
            "item_name": data.get("item_name"),
            "series_id": data.get("series_id"),
            "runtime_ticks": data.get("runtime_ticks"),
            "position_ticks": data.get("position_ticks"),
            "client_name": data.get("client_name"),
            "device_id": data.get("device_id"),
            "device_name": data.get("device_name"),
            "play_method": data.get("play_method"),
            "is_paused": bool(data.get("is_paused", False)),
            "transcoding_audio_codec": data.get("transcoding_audio_codec"),
            "transcoding_video_codec": data.get("transcoding_video_codec"),
            "transcoding_container": data.get("transcoding_container"),
            "transcoding_is_video_direct": data.get("transcoding_is_video_direct"),
            "transcoding_is_audio_direct": data.get("transcoding_is_audio_direct"),
            "transcoding_bitrate": data.get("transcoding_bitrate"),
            "transcoding_width": data.get("transcoding_width"),
            "transcoding_height": data.get("transcoding_height"),
            "transcoding_audio_channels": data.get("transcoding_audio_channels"),
            "transcoding_hw_accel": data.get("transcoding_hw_accel"),
            "transcoding_reasons": json.dumps(reasons) if reasons else None,
        }
        percent = float(data.get("percent_complete") or 0.0)
        completed = bool(data.get("completed", False))

        if existing:
            if existing.completed:
                return existing.id, "skipped"

            last_seen = existing.end_time or existing.start_time
            if data.get("play_duration") is not None:
                duration = int(data["play_duration"])
            else:
                elapsed = min(max(0, observed_at - last_seen), SESSION_GAP_SECONDS)
                duration = (existing.play_duration or 0) + (0 if existing.is_paused else elapsed)

            values = {
                "play_duration": max(existing.play_duration or 0, duration),
                "percent_complete": max(existing.percent_complete or 0.0, percent),
                "completed": bool(existing.completed or completed),
                "end_time": max(last_seen, observed_at),
            }
            if observed_at >= last_seen:
                values.update({k: v for k, v in descriptive.items() if v is not None or k == "is_paused"})

            if _assign(existing, values):
                existing.updated_at = now
            return existing.id, "updated"

        start = int(start_time if start_time is not None else observed_at)
        if not session_key:
            session_key = f"{live_key}|{start}"

        duration = int(data.get("play_duration") or 0)
        row = WatchHistorySession(
            server_id=server_id,
            session_key=session_key,
            live_key=live_key,
            user_id=user_id,
            item_id=item_id,
            start_time=start,
            end_time=max(int(observed_at), start + duration),
            play_duration=duration,
            percent_complete=percent,
            completed=completed,
            created_at=now,
            updated_at=now,
            **descriptive,
        )
        session.add(row)
        session.flush()
        return row.id, "inserted"

    def get_session(self, server_id: int, session_key: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            row = session.query(WatchHistorySession).filter_by(
                server_id=server_id, session_key=session_key
            ).first()
            return row.to_dict() if row else None

    def list_sessions(self, server_id: int) -> List[Dict[str, Any]]:
        with self._session() as session:
            rows = (
                session.query(WatchHistorySession)
                .filter(WatchHistorySession.server_id == server_id)
                .order_by(WatchHistorySession.start_time, WatchHistorySession.id)
                .all()
            )
            return [r.to_dict() for r in rows]

    # Activity log

    def _apply_activity(self, session: Session, server_id: int, data: Dict[str, Any]):
        entry = session.query(ActivityLogEntry).filter_by(
            server_id=server_id, remote_id=data["remote_id"]
        ).first()

        values = {
            "name": data.get("name"),
            "type": data.get("type"),
            "short_overview": data.get("short_overview"),
            "user_id": data.get("user_id"),
            "item_id": data.get("item_id"),
            "severity": data.get("severity"),
            "occurred_at": int(data["occurred_at"]),
        }
        if entry:
            _assign(entry, values)
            return entry.id, "updated"

        entry = ActivityLogEntry(server_id=server_id, remote_id=data["remote_id"], **values)
        session.add(entry)
        session.flush()
        return entry.id, "inserted"

    def count_rows(self, entity_kind: str, server_id: int) -> int:
        model = {
            "users": User,
            "libraries": Library,
            "items": Item,
            "sessions": WatchHistorySession,
            "activity": ActivityLogEntry,
        }[entity_kind]
        with self._session() as session:
            return int(
                session.query(func.count(model.id))
                .filter(model.server_id == server_id)
                .scalar() or 0
            )

    # Sync runs

    def create_run(
        self,
        server_id: int,
        kind: str,
        trigger: str = "manual"
    ) -> Dict[str, Any]:
        """
        Create a pending run and take the server's active-run marker in the
        same transaction. Raises ConflictError carrying the active run when
        the marker is already held.
        """
        for _ in range(3):
            now = int(time.time())
            try:
                with self._session() as session:
                    run = SyncRun(
                        server_id=server_id,
                        kind=kind,
                        status=RUN_PENDING,
                        trigger=trigger,
                        created_at=now,
                    )
                    session.add(run)
                    session.flush()
                    session.add(ActiveRunMarker(server_id=server_id, run_id=run.id, acquired_at=now))
                    session.flush()
                    return run.to_dict()
            except IntegrityError:
                active = self.get_active_run(server_id)
                if active is not None:
                    raise ConflictError(active)
                # Marker was released between the insert and the lookup
                continue
        raise StoreWriteFailed(f"Could not acquire active-run marker for server {server_id}")

    def get_run(self, run_id: int) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            run = session.get(SyncRun, int(run_id))
            return run.to_dict() if run else None

    def list_runs(self, server_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Runs for a server, most recent first.
        """
        with self._session() as session:
            rows = (
                session.query(SyncRun)
                .filter(SyncRun.server_id == server_id)
                .order_by(SyncRun.created_at.desc(), SyncRun.id.desc())
                .limit(limit)
                .all()
            )
            return [r.to_dict() for r in rows]

    def get_active_run(self, server_id: int) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            marker = session.get(ActiveRunMarker, int(server_id))
            if marker is None:
                return None
            run = session.get(SyncRun, marker.run_id)
            return run.to_dict() if run else None

    def mark_running(
        self,
        run_id: int,
        watermark: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        """
        pending -> running. Returns None if the run is not pending any more.
        """
        with self._session() as session:
            updated = (
                session.query(SyncRun)
                .filter(SyncRun.id == run_id, SyncRun.status == RUN_PENDING)
                .update(
                    {
                        "status": RUN_RUNNING,
                        "started_at": int(time.time()),
                        "watermark": watermark,
                    },
                    synchronize_session=False,
                )
            )
            if not updated:
                return None
            return session.get(SyncRun, run_id).to_dict()

    def record_page(
        self,
        run_id: int,
        resource: str,
        processed: int = 0,
        upserted: int = 0,
        failed: int = 0,
        skipped: int = 0,
        api_requests: int = 0,
        pages: int = 1
    ) -> None:
        """
        Add one page's counters to a running run.
        """
        with self._session() as session:
            run = session.get(SyncRun, run_id)
            if run is None or run.status != RUN_RUNNING:
                return
            run.processed = (run.processed or 0) + processed
            run.upserted = (run.upserted or 0) + upserted
            run.failed = (run.failed or 0) + failed
            run.skipped = (run.skipped or 0) + skipped
            run.api_requests = (run.api_requests or 0) + api_requests
            run.pages = (run.pages or 0) + pages

            progress = json.loads(run.progress_json) if run.progress_json else {}
            entry = progress.setdefault(resource, {"processed": 0, "upserted": 0, "failed": 0, "skipped": 0})
            entry["processed"] += processed
            entry["upserted"] += upserted
            entry["failed"] += failed
            entry["skipped"] += skipped
            progress["current"] = resource
            run.progress_json = json.dumps(progress, sort_keys=True)

    def finish_run(
        self,
        run_id: int,
        status: str,
        last_error: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Move a run to a terminal state and release the server's marker.
        A run that is already terminal is returned unchanged.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")

        with self._session() as session:
            run = session.get(SyncRun, run_id)
            if run is None:
                return None
            if run.status in TERMINAL_STATUSES:
                return run.to_dict()

            run.status = status
            run.finished_at = int(time.time())
            run.last_error = last_error
            if run.started_at is None:
                run.started_at = run.finished_at
            if status == RUN_SUCCEEDED:
                progress = json.loads(run.progress_json) if run.progress_json else {}
                progress["completed"] = True
                run.progress_json = json.dumps(progress, sort_keys=True)

            session.query(ActiveRunMarker).filter(
                ActiveRunMarker.server_id == run.server_id,
                ActiveRunMarker.run_id == run.id,
            ).delete(synchronize_session=False)
            return run.to_dict()

    def request_cancel(self, run_id: int) -> Optional[Dict[str, Any]]:
        """
        Pending runs are cancelled on the spot; running runs get a flag the
        orchestrator checks between pages.
        """
        with self._session() as session:
            run = session.get(SyncRun, run_id)
            if run is None:
                return None
            if run.status == RUN_RUNNING:
                run.cancel_requested = True
                return run.to_dict()
            if run.status != RUN_PENDING:
                return run.to_dict()

        return self.finish_run(run_id, RUN_CANCELLED, "Cancelled before start")

    def is_cancel_requested(self, run_id: int) -> bool:
        with self._session() as session:
            run = session.get(SyncRun, run_id)
            return bool(run and run.cancel_requested)

    def get_last_successful_run(
        self,
        server_id: int,
        kinds: Optional[Tuple[str, ...]] = None
    ) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            query = session.query(SyncRun).filter(
                SyncRun.server_id == server_id,
                SyncRun.status == RUN_SUCCEEDED,
            )
            if kinds:
                query = query.filter(SyncRun.kind.in_(kinds))
            run = query.order_by(SyncRun.finished_at.desc(), SyncRun.id.desc()).first()
            return run.to_dict() if run else None

    def get_watermark(self, server_id: int) -> Optional[int]:
        """
        Start time of the latest successful full or partial run. Only a
        succeeded run can move it forward.
        """
        with self._session() as session:
            value = (
                session.query(func.max(SyncRun.started_at))
                .filter(
                    SyncRun.server_id == server_id,
                    SyncRun.status == RUN_SUCCEEDED,
                    SyncRun.kind.in_(("full", "partial")),
                )
                .scalar()
            )
            return int(value) if value is not None else None

    def reset_stale_runs(
        self,
        max_age_seconds: int = 3600,
        now: Optional[int] = None
    ) -> int:
        """
        Fail runs left pending/running by a crashed process and drop
        markers that point at finished runs.
        """
        now = int(now if now is not None else time.time())
        cutoff = now - int(max_age_seconds)

        with self._session() as session:
            stale = (
                session.query(SyncRun)
                .filter(SyncRun.status.in_(ACTIVE_STATUSES))
                .filter(func.coalesce(SyncRun.started_at, SyncRun.created_at) < cutoff)
                .all()
            )
            for run in stale:
                run.status = RUN_FAILED
                run.finished_at = now
                run.last_error = (
                    f"Run did not finish within {int(max_age_seconds)}s and was reset"
                )
                session.query(ActiveRunMarker).filter(
                    ActiveRunMarker.run_id == run.id
                ).delete(synchronize_session=False)

            terminal_ids = select(SyncRun.id).where(SyncRun.status.in_(TERMINAL_STATUSES))
            session.query(ActiveRunMarker).filter(
                ActiveRunMarker.run_id.in_(terminal_ids)
            ).delete(synchronize_session=False)

            if stale:
                logger.warning("Reset %d stale sync run(s)", len(stale))
            return len(stale)

    def list_servers_with_runs(self) -> List[int]:
        with self._session() as session:
            return [
                row[0]
                for row in session.query(SyncRun.server_id).distinct().order_by(SyncRun.server_id).all()
            ]

    # Backup

    def dump(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Every table's rows read inside one transaction.
        """
        out: Dict[str, List[Dict[str, Any]]] = {}
        with self._session() as session:
            for table in Base.metadata.sorted_tables:
                rows = session.execute(select(table).order_by(*table.primary_key.columns)).mappings().all()
                out[table.name] = [dict(r) for r in rows]
        return out

    # Statistics

    def get_item_statistics(self, server_id: int, item_id: str, tz: str = "UTC") -> Dict[str, Any]:
        from polaris.stats_aggregator import StatsAggregator

        with self._session() as session:
            return StatsAggregator.item_statistics(session, server_id, item_id, tz=tz)

    def get_user_watch_stats(self, server_id: int, user_id: str, tz: str = "UTC") -> Dict[str, Any]:
        from polaris.stats_aggregator import StatsAggregator

        with self._session() as session:
            return StatsAggregator.user_watch_stats(session, server_id, user_id, tz=tz)

    def get_most_popular_item(
        self,
        server_id: int,
        start: Optional[int] = None,
        end: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        from polaris.stats_aggregator import StatsAggregator

        with self._session() as session:
            return StatsAggregator.most_popular_item(session, server_id, start=start, end=end)

    def get_most_watched_items(self, server_id: int, limit: int = 10) -> Dict[str, List[Dict[str, Any]]]:
        from polaris.stats_aggregator import StatsAggregator

        with self._session() as session:
            return StatsAggregator.most_watched_items(session, server_id, limit=limit)

    def get_user_activity_per_day(self, server_id: int, start_date, end_date, tz: str = "UTC") -> List[Dict[str, Any]]:
        from polaris.stats_aggregator import StatsAggregator

        with self._session() as session:
            return StatsAggregator.user_activity_per_day(session, server_id, start_date, end_date, tz=tz)

    def get_watch_time_per_day(self, server_id: int, start_date, end_date, tz: str = "UTC") -> List[Dict[str, Any]]:
        from polaris.stats_aggregator import StatsAggregator

        with self._session() as session:
            return StatsAggregator.watch_time_per_day(session, server_id, start_date, end_date, tz=tz)

    def get_watch_time_per_weekday(self, server_id: int, tz: str = "UTC") -> List[Dict[str, Any]]:
        from polaris.stats_aggregator import StatsAggregator

        with self._session() as session:
            return StatsAggregator.watch_time_per_weekday(session, server_id, tz=tz)

    def get_watch_time_per_hour(self, server_id: int, tz: str = "UTC") -> List[Dict[str, Any]]:
        from polaris.stats_aggregator import StatsAggregator

        with self._session() as session:
            return StatsAggregator.watch_time_per_hour(session, server_id, tz=tz)

    def get_library_statistics(self, server_id: int) -> Dict[str, Any]:
        from polaris.stats_aggregator import StatsAggregator

        with self._session() as session:
            return StatsAggregator.library_statistics(session, server_id)
