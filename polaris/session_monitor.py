"""
Live view of what is playing right now. Nothing here is persisted.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from polaris.errors import SourceError
from polaris.jellyfin import Cursor, MediaServerClient, create_client
from polaris.mappers import (
    map_transcoding,
    session_live_key,
    ticks_to_seconds,
)
from polaris.settings_store import SettingsService

logger = logging.getLogger(__name__)


def format_duration(seconds: int) -> str:
    """HH:MM:SS"""
    seconds = max(0, int(seconds or 0))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def map_active_session(jf_session: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Normalize one /Sessions entry. Returns None for entries without a
    user or a now-playing item.
    """
    item = jf_session.get("NowPlayingItem") or {}
    user_id = jf_session.get("UserId")
    item_id = item.get("Id")
    if not user_id or not item_id:
        return None

    play_state = jf_session.get("PlayState") or {}
    position = ticks_to_seconds(play_state.get("PositionTicks"))
    runtime = ticks_to_seconds(item.get("RunTimeTicks"))
    progress = round(position / runtime * 100.0, 2) if runtime else 0.0

    transcoding = {
        key.replace("transcoding_", ""): value
        for key, value in map_transcoding(jf_session).items()
    }

    return {
        "session_key": session_live_key(user_id, jf_session.get("DeviceId"), item_id, item.get("SeriesId")),
        "user": {"id": user_id, "name": jf_session.get("UserName")},
        "item": {
            "id": item_id,
            "name": item.get("Name"),
            "type": item.get("Type"),
            "series_id": item.get("SeriesId"),
            "series_name": item.get("SeriesName"),
            "season": item.get("ParentIndexNumber"),
            "episode": item.get("IndexNumber"),
        },
        "client": jf_session.get("Client"),
        "device_name": jf_session.get("DeviceName"),
        "device_id": jf_session.get("DeviceId"),
        "position_seconds": position,
        "formatted_position": format_duration(position),
        "runtime_seconds": runtime,
        "formatted_runtime": format_duration(runtime),
        "progress_percent": min(progress, 100.0),
        "is_paused": bool(play_state.get("IsPaused", False)),
        "play_method": play_state.get("PlayMethod"),
        "transcoding": transcoding,
        "ip_address": jf_session.get("RemoteEndPoint"),
    }


class SessionMonitor:
    """
    Best-effort passthrough to the media server's /Sessions.
    """

    def __init__(
        self,
        settings_service: SettingsService,
        client_factory: Callable[[Dict[str, Any], Dict[str, Any]], MediaServerClient] = create_client,
    ) -> None:
        self.settings_service = settings_service
        self.client_factory = client_factory

    def list_active_sessions(self, server_id: int) -> Dict[str, Any]:
        """
        :returns dict: {"sessions": [...], "warning": None or message}
        :raises ServerNotFound: unknown server id
        """
        server = self.settings_service.get_server(server_id, include_secret=True)
        client = self.client_factory(server, self.settings_service.get())

        try:
            page = client.fetch_page("sessions", Cursor.begin())
        except SourceError as exc:
            logger.warning("Active sessions unavailable for server %s: %s", server_id, exc)
            return {
                "sessions": [],
                "warning": f"Could not reach {server.get('name') or 'media server'}: {exc}",
            }

        sessions: List[Dict[str, Any]] = []
        for raw in page.records:
            mapped = map_active_session(raw)
            if mapped is not None:
                sessions.append(mapped)
        sessions.sort(key=lambda s: s["session_key"])
        return {"sessions": sessions, "warning": None}
