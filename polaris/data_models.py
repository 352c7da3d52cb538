"""
Polaris reconciled store. Every row is scoped to the media server it was
pulled from; remote identifiers are only unique within one server.
"""

from __future__ import annotations
import json
from typing import Dict, Any

from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    BigInteger,
    Float,
    Text,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Sync run lifecycle
RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_SUCCEEDED = "succeeded"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"

ACTIVE_STATUSES = (RUN_PENDING, RUN_RUNNING)
TERMINAL_STATUSES = (RUN_SUCCEEDED, RUN_FAILED, RUN_CANCELLED)

SYNC_KINDS = ("full", "partial", "users", "libraries")


class User(Base):
    """
    Viewer account mirrored from the media server. Never deleted,
    only flagged inactive, so watch history keeps its owner.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    server_id = Column(Integer, nullable=False)
    remote_id = Column(String(128), nullable=False)
    name = Column(String(255), nullable=False)
    is_administrator = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("server_id", "remote_id", name="uq_user_server_remote"),
        Index("idx_user_server_active", "server_id", "is_active"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "remote_id": self.remote_id,
            "name": self.name,
            "is_administrator": self.is_administrator,
            "is_active": self.is_active,
        }


class Library(Base):
    """
    Media folder on the server.
    """
    __tablename__ = "libraries"

    id = Column(Integer, primary_key=True)
    server_id = Column(Integer, nullable=False)
    remote_id = Column(String(128), nullable=False)
    name = Column(String(255), nullable=False)
    type = Column(String(64), nullable=True)
    archived = Column(Boolean, default=False)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

    items = relationship("Item", back_populates="library")

    __table_args__ = (
        UniqueConstraint("server_id", "remote_id", name="uq_library_server_remote"),
        Index("idx_library_server_archived", "server_id", "archived"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "remote_id": self.remote_id,
            "name": self.name,
            "type": self.type,
            "archived": self.archived,
        }


class Item(Base):
    """
    Playable unit or container: movie, episode, series, season.
    """
    __tablename__ = "items"

    id = Column(Integer, primary_key=True)
    server_id = Column(Integer, nullable=False)
    remote_id = Column(String(128), nullable=False)
    library_id = Column(Integer, ForeignKey("libraries.id"), nullable=True)
    parent_id = Column(String(128), nullable=True)
    series_id = Column(String(128), nullable=True)
    season_id = Column(String(128), nullable=True)
    series_name = Column(String(512), nullable=True)
    name = Column(String(512), nullable=False)
    type = Column(String(64), nullable=True)
    index_number = Column(Integer, nullable=True)
    parent_index_number = Column(Integer, nullable=True)
    production_year = Column(Integer, nullable=True)
    runtime_seconds = Column(Integer, default=0)
    date_created = Column(BigInteger, nullable=True)
    archived = Column(Boolean, default=False)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

    library = relationship("Library", back_populates="items")

    __table_args__ = (
        UniqueConstraint("server_id", "remote_id", name="uq_item_server_remote"),
        Index("idx_item_library_id", "library_id"),
        Index("idx_item_server_type", "server_id", "type"),
        Index("idx_item_series_id", "server_id", "series_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "remote_id": self.remote_id,
            "library_id": self.library_id,
            "parent_id": self.parent_id,
            "series_id": self.series_id,
            "season_id": self.season_id,
            "series_name": self.series_name,
            "name": self.name,
            "type": self.type,
            "index_number": self.index_number,
            "parent_index_number": self.parent_index_number,
            "production_year": self.production_year,
            "runtime_seconds": self.runtime_seconds,
            "date_created": self.date_created,
            "archived": self.archived,
        }


class WatchHistorySession(Base):
    """
    One playback attempt. User and item are referenced by remote id so
    history survives the upstream deletion of either.
    """
    __tablename__ = "watch_history_sessions"

    id = Column(Integer, primary_key=True)
    server_id = Column(Integer, nullable=False)
    session_key = Column(String(512), nullable=False)
    live_key = Column(String(512), nullable=True)
    user_id = Column(String(128), nullable=False)
    item_id = Column(String(128), nullable=False)
    series_id = Column(String(128), nullable=True)
    user_name = Column(String(255), nullable=True)
    item_name = Column(String(512), nullable=True)
    start_time = Column(BigInteger, nullable=False)
    end_time = Column(BigInteger, nullable=True)
    play_duration = Column(Integer, default=0)
    percent_complete = Column(Float, default=0.0)
    completed = Column(Boolean, default=False)
    runtime_ticks = Column(BigInteger, nullable=True)
    position_ticks = Column(BigInteger, nullable=True)
    client_name = Column(String(255), nullable=True)
    device_id = Column(String(255), nullable=True)
    device_name = Column(String(255), nullable=True)
    play_method = Column(String(64), nullable=True)
    is_paused = Column(Boolean, default=False)

    # Transcoding
    transcoding_audio_codec = Column(String(64), nullable=True)
    transcoding_video_codec = Column(String(64), nullable=True)
    transcoding_container = Column(String(64), nullable=True)
    transcoding_is_video_direct = Column(Boolean, nullable=True)
    transcoding_is_audio_direct = Column(Boolean, nullable=True)
    transcoding_bitrate = Column(BigInteger, nullable=True)
    transcoding_width = Column(Integer, nullable=True)
    transcoding_height = Column(Integer, nullable=True)
    transcoding_audio_channels = Column(Integer, nullable=True)
    transcoding_hw_accel = Column(String(64), nullable=True)
    transcoding_reasons = Column(Text, nullable=True)

    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("server_id", "session_key", name="uq_session_server_key"),
        Index("idx_session_server_item", "server_id", "item_id"),
        Index("idx_session_server_user", "server_id", "user_id"),
        Index("idx_session_start_time", "start_time"),
        Index("idx_session_live_key", "server_id", "live_key"),
    )

    def to_dict(self) -> Dict[str, Any]:
        reasons = None
        if self.transcoding_reasons:
            try:
                reasons = json.loads(self.transcoding_reasons)
            except ValueError:
                reasons = [self.transcoding_reasons]

        return {
            "id": self.id,
            "server_id": self.server_id,
            "session_key": self.session_key,
            "user_id": self.user_id,
            "item_id": self.item_id,
            "series_id": self.series_id,
            "user_name": self.user_name,
            "item_name": self.item_name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "play_duration": self.play_duration,
            "percent_complete": self.percent_complete,
            "completed": self.completed,
            "client_name": self.client_name,
            "device_id": self.device_id,
            "device_name": self.device_name,
            "play_method": self.play_method,
            "is_paused": self.is_paused,
            "transcoding": {
                "audio_codec": self.transcoding_audio_codec,
                "video_codec": self.transcoding_video_codec,
                "container": self.transcoding_container,
                "is_video_direct": self.transcoding_is_video_direct,
                "is_audio_direct": self.transcoding_is_audio_direct,
                "bitrate": self.transcoding_bitrate,
                "width": self.transcoding_width,
                "height": self.transcoding_height,
                "audio_channels": self.transcoding_audio_channels,
                "hardware_acceleration": self.transcoding_hw_accel,
                "reasons": reasons,
            },
        }


class ActivityLogEntry(Base):
    """
    Server activity log line (logins, playback start/stop, etc).
    """
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True)
    server_id = Column(Integer, nullable=False)
    remote_id = Column(String(64), nullable=False)
    name = Column(String(1024), nullable=True)
    type = Column(String(128), nullable=True)
    short_overview = Column(Text, nullable=True)
    user_id = Column(String(128), nullable=True)
    item_id = Column(String(128), nullable=True)
    severity = Column(String(32), nullable=True)
    occurred_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("server_id", "remote_id", name="uq_activity_server_remote"),
        Index("idx_activity_occurred_at", "server_id", "occurred_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "remote_id": self.remote_id,
            "name": self.name,
            "type": self.type,
            "short_overview": self.short_overview,
            "user_id": self.user_id,
            "item_id": self.item_id,
            "severity": self.severity,
            "occurred_at": self.occurred_at,
        }


class SyncRun(Base):
    """
    One execution of a sync task. Only the orchestrator writes here and
    terminal rows are never modified again.
    """
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True)
    server_id = Column(Integer, nullable=False)
    kind = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=RUN_PENDING)
    trigger = Column(String(16), nullable=False, default="manual")
    created_at = Column(BigInteger, nullable=False)
    started_at = Column(BigInteger, nullable=True)
    finished_at = Column(BigInteger, nullable=True)
    watermark = Column(BigInteger, nullable=True)
    processed = Column(Integer, default=0)
    upserted = Column(Integer, default=0)
    failed = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    pages = Column(Integer, default=0)
    api_requests = Column(Integer, default=0)
    progress_json = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)
    cancel_requested = Column(Boolean, default=False)

    __table_args__ = (
        Index("idx_run_server_created", "server_id", "created_at"),
        Index("idx_run_server_status", "server_id", "status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        progress = {}
        if self.progress_json:
            try:
                progress = json.loads(self.progress_json)
            except ValueError:
                progress = {}

        duration_ms = None
        if self.started_at is not None and self.finished_at is not None:
            duration_ms = int((self.finished_at - self.started_at) * 1000)

        return {
            "id": self.id,
            "server_id": self.server_id,
            "kind": self.kind,
            "status": self.status,
            "trigger": self.trigger,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": duration_ms,
            "watermark": self.watermark,
            "counts": {
                "processed": self.processed or 0,
                "upserted": self.upserted or 0,
                "failed": self.failed or 0,
                "skipped": self.skipped or 0,
                "pages": self.pages or 0,
                "api_requests": self.api_requests or 0,
            },
            "progress": progress,
            "last_error": self.last_error,
            "cancel_requested": bool(self.cancel_requested),
        }


class ActiveRunMarker(Base):
    """
    At most one row per server: inserting it is the compare-and-swap
    that admits a new run.
    """
    __tablename__ = "active_run_markers"

    server_id = Column(Integer, primary_key=True, autoincrement=False)
    run_id = Column(Integer, ForeignKey("sync_runs.id"), nullable=False)
    acquired_at = Column(BigInteger, nullable=False)
