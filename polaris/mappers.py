"""
Translate raw Jellyfin payloads into row dicts for the reconciled store.

Mappers raise SourceMalformed when a record lacks the fields that identify
it; the orchestrator counts those records as failed and keeps going.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from polaris.errors import SourceMalformed

TICKS_PER_SECOND = 10_000_000
SYSTEM_USER_ID = "00000000000000000000000000000000"
COMPLETION_PERCENT = 90.0


def _require_id(record: Any, key: str, kind: str) -> str:
    if not isinstance(record, dict):
        raise SourceMalformed(f"{kind} record is not an object", record)
    value = record.get(key)
    if value is None or not str(value).strip():
        raise SourceMalformed(f"{kind} record has no {key}", record)
    return str(value).strip()


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_timestamp(value: Any) -> Optional[int]:
    """
    Convert an ISO-8601 string or epoch number into unix seconds.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        ts = int(value)
        if ts > 10**12: # Epoch milliseconds
            ts = int(ts / 1000)
        return ts
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    # Jellyfin emits 7 fractional digits; fromisoformat accepts at most 6
    if "." in s:
        head, _, rest = s.partition(".")
        frac = ""
        tail = ""
        for i, ch in enumerate(rest):
            if not ch.isdigit():
                tail = rest[i:]
                break
            frac += ch
        s = f"{head}.{frac[:6]}{tail}" if frac else f"{head}{tail}"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def ticks_to_seconds(ticks: Any) -> int:
    # 1 second = 10_000_000 .NET ticks
    try:
        return int(int(ticks or 0) / TICKS_PER_SECOND)
    except (TypeError, ValueError):
        return 0


# Users

def map_user(jf_user: Dict[str, Any]) -> Dict[str, Any]:
    remote_id = _require_id(jf_user, "Id", "User")
    name = _opt_str(jf_user.get("Name"))
    if not name:
        raise SourceMalformed(f"User {remote_id} has no Name", jf_user)

    policy = jf_user.get("Policy") or {}
    return {
        "remote_id": remote_id,
        "name": name,
        "is_administrator": bool(policy.get("IsAdministrator", False)),
    }


# Libraries

def map_library(jf_library: Dict[str, Any]) -> Dict[str, Any]:
    remote_id = _require_id(jf_library, "Id", "Library")
    return {
        "remote_id": remote_id,
        "name": _opt_str(jf_library.get("Name")) or "Unknown",
        "type": _opt_str(jf_library.get("CollectionType") or jf_library.get("Type")),
    }


# Items

def map_item(
    jf_item: Dict[str, Any],
    library_internal_id: Optional[int] = None
) -> Dict[str, Any]:
    """
    Transform a Jellyfin item into an Item row dict.
    """
    remote_id = _require_id(jf_item, "Id", "Item")
    name = _opt_str(jf_item.get("Name"))
    if not name:
        raise SourceMalformed(f"Item {remote_id} has no Name", jf_item)

    return {
        "remote_id": remote_id,
        "library_id": library_internal_id,
        "parent_id": _opt_str(jf_item.get("ParentId")),
        "series_id": _opt_str(jf_item.get("SeriesId")),
        "season_id": _opt_str(jf_item.get("SeasonId")),
        "series_name": _opt_str(jf_item.get("SeriesName")),
        "name": name,
        "type": _opt_str(jf_item.get("Type")),
        "index_number": _opt_int(jf_item.get("IndexNumber")),
        "parent_index_number": _opt_int(jf_item.get("ParentIndexNumber")),
        "production_year": _opt_int(jf_item.get("ProductionYear")),
        "runtime_seconds": ticks_to_seconds(jf_item.get("RunTimeTicks")),
        "date_created": parse_timestamp(jf_item.get("DateCreated")),
    }


# Playback sessions

def session_live_key(
    user_id: str,
    device_id: Optional[str],
    item_id: str,
    series_id: Optional[str] = None
) -> str:
    parts = [user_id, device_id or ""]
    if series_id:
        parts.append(series_id)
    parts.append(item_id)
    return "|".join(parts)


def map_transcoding(
    jf_session: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Flatten TranscodingInfo into the transcoding_* columns.
    """
    info = jf_session.get("TranscodingInfo") or {}
    if not isinstance(info, dict):
        info = {}

    reasons = info.get("TranscodeReasons")
    if isinstance(reasons, str):
        reasons = [r.strip() for r in reasons.split(",") if r.strip()]
    elif not isinstance(reasons, list):
        reasons = None

    def _opt_bool(key: str) -> Optional[bool]:
        return bool(info[key]) if key in info and info[key] is not None else None

    return {
        "transcoding_audio_codec": _opt_str(info.get("AudioCodec")),
        "transcoding_video_codec": _opt_str(info.get("VideoCodec")),
        "transcoding_container": _opt_str(info.get("Container")),
        "transcoding_is_video_direct": _opt_bool("IsVideoDirect"),
        "transcoding_is_audio_direct": _opt_bool("IsAudioDirect"),
        "transcoding_bitrate": _opt_int(info.get("Bitrate")),
        "transcoding_width": _opt_int(info.get("Width")),
        "transcoding_height": _opt_int(info.get("Height")),
        "transcoding_audio_channels": _opt_int(info.get("AudioChannels")),
        "transcoding_hw_accel": _opt_str(info.get("HardwareAccelerationType")),
        "transcoding_reasons": reasons or None,
    }


def map_session(
    jf_session: Dict[str, Any],
    observed_at: Optional[int] = None
) -> Dict[str, Any]:
    """
    Transform a live /Sessions entry into a WatchHistorySession row dict.

    The play duration is left unset: the store accumulates it from
    successive observations of the same session.
    """
    if not isinstance(jf_session, dict):
        raise SourceMalformed("Session record is not an object", jf_session)

    user_id = _require_id(jf_session, "UserId", "Session")
    item = jf_session.get("NowPlayingItem")
    item_id = _require_id(item, "Id", "NowPlayingItem")

    observed_at = int(observed_at if observed_at is not None else time.time())
    play_state = jf_session.get("PlayState") or {}
    position_ticks = _opt_int(play_state.get("PositionTicks")) or 0
    runtime_ticks = _opt_int(item.get("RunTimeTicks")) or 0

    percent = 0.0
    if runtime_ticks > 0:
        percent = min(100.0, max(0.0, position_ticks / runtime_ticks * 100.0))

    device_id = _opt_str(jf_session.get("DeviceId"))
    series_id = _opt_str(item.get("SeriesId"))
    play_session_id = _opt_str(
        play_state.get("PlaySessionId") or jf_session.get("PlaySessionId")
    )

    row = {
        "session_key": play_session_id,
        "live_key": session_live_key(user_id, device_id, item_id, series_id),
        "user_id": user_id,
        "item_id": item_id,
        "series_id": series_id,
        "user_name": _opt_str(jf_session.get("UserName")),
        "item_name": _opt_str(item.get("Name")),
        "observed_at": observed_at,
        "play_duration": None,
        "percent_complete": round(percent, 2),
        "completed": percent > COMPLETION_PERCENT,
        "runtime_ticks": runtime_ticks or None,
        "position_ticks": position_ticks,
        "client_name": _opt_str(jf_session.get("Client")),
        "device_id": device_id,
        "device_name": _opt_str(jf_session.get("DeviceName")),
        "play_method": _opt_str(play_state.get("PlayMethod")),
        "is_paused": bool(play_state.get("IsPaused", False)),
    }
    row.update(map_transcoding(jf_session))
    return row


# Activity log

def map_activity(jf_entry: Dict[str, Any]) -> Dict[str, Any]:
    remote_id = _require_id(jf_entry, "Id", "Activity")
    occurred_at = parse_timestamp(jf_entry.get("Date"))
    if occurred_at is None:
        raise SourceMalformed(f"Activity {remote_id} has no usable Date", jf_entry)

    user_id = _opt_str(jf_entry.get("UserId"))
    if user_id == SYSTEM_USER_ID:
        user_id = None

    return {
        "remote_id": remote_id,
        "name": _opt_str(jf_entry.get("Name")),
        "type": _opt_str(jf_entry.get("Type")),
        "short_overview": _opt_str(jf_entry.get("ShortOverview") or jf_entry.get("Overview")),
        "user_id": user_id,
        "item_id": _opt_str(jf_entry.get("ItemId")),
        "severity": _opt_str(jf_entry.get("Severity")),
        "occurred_at": occurred_at,
    }


MAPPERS = {
    "users": map_user,
    "libraries": map_library,
    "activity": map_activity,
}


def map_records(
    resource_kind: str,
    records: List[Dict[str, Any]],
    **kwargs: Any
) -> List[Any]:
    """
    Map a page of raw records. Each slot holds either the row dict or the
    SourceMalformed raised for that record, so one bad record does not
    hide the rest of the page.
    """
    if resource_kind == "items":
        fn = lambda r: map_item(r, kwargs.get("library_internal_id"))
    elif resource_kind == "sessions":
        fn = lambda r: map_session(r, kwargs.get("observed_at"))
    else:
        fn = MAPPERS[resource_kind]

    results: List[Any] = []
    for raw in records or []:
        try:
            results.append(fn(raw))
        except SourceMalformed as exc:
            results.append(exc)
    return results
