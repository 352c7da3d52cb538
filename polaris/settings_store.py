"""
Settings storage using SQLAlchemy with Fernet encryption for sensitive fields.

Holds the single application settings row and the registry of media
servers Polaris syncs from.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any, Iterator, List
from contextlib import contextmanager
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import Column, Integer, String, Float, Boolean, BigInteger, Text
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from cryptography.fernet import Fernet, InvalidToken

from polaris.errors import ServerNotFound
from polaris.repository import create_db_engine

Base = declarative_base()


def _default_timezone() -> str:
    tz = (os.getenv("TZ") or "").strip()
    return tz if _is_valid_timezone(tz) else "UTC"


def _is_valid_timezone(name: Any) -> bool:
    if not isinstance(name, str) or not name.strip():
        return False
    try:
        ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


# -------------------------
# ORM Models
# -------------------------

class Settings(Base):
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True)
    sync_interval = Column(Integer, default=1800)
    timezone = Column(String(64), default="UTC")
    max_retries = Column(Integer, default=3)
    retry_backoff_seconds = Column(Float, default=1.0)
    max_backoff_seconds = Column(Float, default=10.0)
    failure_threshold = Column(Float, default=0.1)
    item_page_size = Column(Integer, default=500)
    activity_page_size = Column(Integer, default=100)
    max_pages = Column(Integer, default=1000)
    request_timeout = Column(Float, default=60.0)
    stale_run_seconds = Column(Integer, default=3600)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sync_interval": self.sync_interval,
            "timezone": self.timezone,
            "max_retries": self.max_retries,
            "retry_backoff_seconds": self.retry_backoff_seconds,
            "max_backoff_seconds": self.max_backoff_seconds,
            "failure_threshold": self.failure_threshold,
            "item_page_size": self.item_page_size,
            "activity_page_size": self.activity_page_size,
            "max_pages": self.max_pages,
            "request_timeout": self.request_timeout,
            "stale_run_seconds": self.stale_run_seconds,
        }


class Server(Base):
    """
    One media server connection. The API key is stored encrypted.
    """
    __tablename__ = "servers"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    base_url = Column(String(1024), nullable=False)
    api_key_encrypted = Column(String(4096), nullable=True)
    timezone = Column(String(64), nullable=True)
    last_sync_ok = Column(Boolean, nullable=True)
    last_sync_error = Column(Text, nullable=True)
    last_sync_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)

    def to_dict(self, fernet: Optional[Fernet] = None) -> Dict[str, Any]:
        """
        Convert to dict. If fernet provided, decrypt api_key.
        """
        data = {
            "id": self.id,
            "name": self.name,
            "base_url": self.base_url,
            "timezone": self.timezone,
            "last_sync_ok": self.last_sync_ok,
            "last_sync_error": self.last_sync_error,
            "last_sync_at": self.last_sync_at,
            "has_api_key": bool(self.api_key_encrypted),
        }

        if fernet is not None:
            api_key_plain = None
            if self.api_key_encrypted:
                try:
                    api_key_plain = fernet.decrypt(
                        self.api_key_encrypted.encode("utf-8")
                    ).decode("utf-8")
                except InvalidToken:
                    api_key_plain = None
            data["api_key"] = api_key_plain

        return data


# -------------------------
# Service
# -------------------------

@dataclass
class SettingsService:
    database_url: str
    encryption_key_path: str

    def __post_init__(self) -> None:
        self.engine = create_db_engine(self.database_url)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
        )
        Base.metadata.create_all(self.engine)
        self.fernet = Fernet(self._load_or_create_key())

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """
        Context manager for database sessions with auto-commit.
        """
        session: Session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _load_or_create_key(self) -> bytes:
        """
        Load a Fernet key from disk, or create one if it does not exist.
        """
        if not self.encryption_key_path or self.encryption_key_path == ":memory:":
            return Fernet.generate_key()

        key_file = Path(self.encryption_key_path)
        if key_file.exists():
            return key_file.read_bytes()

        key = Fernet.generate_key()
        key_file.write_bytes(key)
        return key

    def _get_or_create_row(self, session: Session) -> Settings:
        """
        Retrieve the single Settings row, creating it if missing.
        """
        obj = session.query(Settings).first()
        if obj:
            return obj

        obj = Settings(timezone=_default_timezone())
        session.add(obj)
        session.flush()
        return obj

    def _encrypt(self, value: str) -> str:
        return self.fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    # -------------------------
    # Application settings
    # -------------------------

    def get(self) -> Dict[str, Any]:
        """
        Retrieve current settings.
        """
        with self._session() as session:
            settings = self._get_or_create_row(session)
            return settings.to_dict()

    def update(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update settings. Unknown keys and out-of-range values are ignored.
        """
        positive_ints = {
            "sync_interval",
            "item_page_size",
            "activity_page_size",
            "max_pages",
            "stale_run_seconds",
        }
        non_negative_floats = {
            "retry_backoff_seconds",
            "max_backoff_seconds",
            "request_timeout",
        }

        with self._session() as session:
            settings = self._get_or_create_row(session)

            if "max_retries" in values:
                try:
                    retries = int(values["max_retries"])
                    if retries >= 0:
                        settings.max_retries = retries
                except (TypeError, ValueError):
                    pass

            for key in positive_ints:
                if key not in values:
                    continue
                try:
                    val = int(values[key])
                except (TypeError, ValueError):
                    continue
                if val > 0:
                    setattr(settings, key, val)

            for key in non_negative_floats:
                if key not in values:
                    continue
                try:
                    val = float(values[key])
                except (TypeError, ValueError):
                    continue
                if val >= 0:
                    setattr(settings, key, val)

            if "failure_threshold" in values:
                try:
                    ratio = float(values["failure_threshold"])
                    if 0.0 <= ratio <= 1.0:
                        settings.failure_threshold = ratio
                except (TypeError, ValueError):
                    pass

            if _is_valid_timezone(values.get("timezone")):
                settings.timezone = values["timezone"].strip()

            return settings.to_dict()

    # -------------------------
    # Server registry
    # -------------------------

    def add_server(
        self,
        name: str,
        base_url: str,
        api_key: str,
        timezone: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Register a media server. The API key is encrypted before storage.
        """
        base_url = (base_url or "").strip().rstrip("/")
        if not base_url:
            raise ValueError("base_url is required")

        with self._session() as session:
            server = Server(
                name=(name or base_url).strip(),
                base_url=base_url,
                api_key_encrypted=self._encrypt(api_key.strip()) if api_key and api_key.strip() else None,
                timezone=timezone.strip() if _is_valid_timezone(timezone) else None,
                created_at=int(time.time()),
            )
            session.add(server)
            session.flush()
            return server.to_dict()

    def get_server(
        self, server_id: int, include_secret: bool = False
    ) -> Dict[str, Any]:
        """
        Fetch one server, optionally with its decrypted API key.

        Raises ServerNotFound for unknown ids.
        """
        with self._session() as session:
            server = session.get(Server, int(server_id))
            if server is None:
                raise ServerNotFound(f"Unknown server {server_id}")
            return server.to_dict(self.fernet if include_secret else None)

    def list_servers(self) -> List[Dict[str, Any]]:
        with self._session() as session:
            return [
                s.to_dict()
                for s in session.query(Server).order_by(Server.id).all()
            ]

    def find_server_by_url(self, base_url: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            server = (
                session.query(Server)
                .filter_by(base_url=(base_url or "").strip().rstrip("/"))
                .first()
            )
            return server.to_dict() if server else None

    def server_timezone(self, server_id: int) -> str:
        """
        Server-configured timezone, else the global setting, else UTC.
        """
        with self._session() as session:
            server = session.get(Server, int(server_id))
            if server is not None and _is_valid_timezone(server.timezone):
                return server.timezone
            settings = self._get_or_create_row(session)
            if _is_valid_timezone(settings.timezone):
                return settings.timezone
            return "UTC"

    def record_connectivity(
        self,
        server_id: int,
        ok: bool,
        error: Optional[str] = None,
        at: Optional[int] = None,
    ) -> None:
        """
        Store the outcome of the latest sync against a server.
        """
        with self._session() as session:
            server = session.get(Server, int(server_id))
            if server is None:
                return
            server.last_sync_ok = bool(ok)
            server.last_sync_error = None if ok else error
            server.last_sync_at = int(at if at is not None else time.time())
