"""
Jellyfin client used by the sync engine and the live session view.

Every resource is read through fetch_page(), which returns one page of raw
records plus an opaque cursor for the next page. The client keeps no state
between pages, so any page can be fetched again after a transient failure.
"""

from __future__ import annotations

import base64
import json
import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.request import Request, urlopen
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urlparse

from polaris.errors import SourceAuthFailed, SourceUnavailable

logger = logging.getLogger(__name__)

RESOURCE_KINDS = ("users", "libraries", "items", "sessions", "activity")

EXCLUDED_COLLECTION_TYPES = ("boxsets", "playlists")
EXCLUDED_EXTRA_TYPES = ("trailer", "preroll")

ITEM_TYPES = "Movie,Episode,Series,Season,Audio,MusicVideo"
ITEM_FIELDS = "DateCreated,ProductionYear,ParentId,SeriesId,SeasonId,SeriesName"


# -------------------------
# Cursor
# -------------------------

@dataclass(frozen=True)
class Cursor:
    """
    Position in a paged resource. Either a concrete position (an opaque
    token) or the done sentinel. Callers must not look inside the token.
    """
    token: Optional[str] = None
    is_done: bool = False

    @classmethod
    def begin(cls) -> "Cursor":
        return cls(token=_encode_position(0))

    @classmethod
    def done(cls) -> "Cursor":
        return cls(token=None, is_done=True)

    def __repr__(self) -> str:
        return "Cursor(done)" if self.is_done else f"Cursor({self.token})"


def _encode_position(start_index: int) -> str:
    raw = json.dumps({"s": int(start_index)}).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _decode_position(cursor: Cursor) -> int:
    if cursor.is_done or not cursor.token:
        raise ValueError("Cannot fetch past the end of a resource")
    try:
        payload = json.loads(base64.urlsafe_b64decode(cursor.token.encode("ascii")))
        return max(0, int(payload["s"]))
    except (ValueError, KeyError, TypeError) as exc:
        raise ValueError(f"Invalid cursor token: {cursor.token!r}") from exc


@dataclass
class Page:
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Cursor = field(default_factory=Cursor.done)
    total: Optional[int] = None


# -------------------------
# Client
# -------------------------

class MediaServerClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 60.0,
        item_page_size: int = 500,
        activity_page_size: int = 100,
    ) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self.api_key = (api_key or "").strip()
        self.timeout = float(timeout)
        self.item_page_size = int(item_page_size)
        self.activity_page_size = int(activity_page_size)

    def _build_url(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Construct a full URL for a given Jellyfin path.

        :param path: API path
        :param params: Query parameters, None values dropped
        :returns str: Full URL
        """
        parsed = urlparse(self.base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise SourceAuthFailed(
                f"Server URL {self.base_url!r} is not a valid http(s) URL"
            )

        if not path.startswith("/"): # Ensure leading slash for URL path
            path = f"/{path}"

        url = f"{self.base_url}{path}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if query:
            url = f"{url}?{urlencode(query)}"
        return url

    def _is_transient_error(self, exc: Exception) -> bool:
        """
        Determine if an error is transient and should be retried.

        :param exc: Exception raised during HTTP or network operation
        :returns bool: True if error is retryable, False otherwise
        """
        if isinstance(exc, HTTPError):
            return exc.code in (408, 429, 500, 502, 503, 504) # Retryable HTTP status codes
        if isinstance(exc, (URLError, socket.timeout, TimeoutError, ConnectionError)):
            return True
        return False

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Perform a single GET request and return the decoded JSON body.

        :param path: API path to request
        :param params: Query parameters
        :returns Any: Parsed JSON payload
        :raises SourceAuthFailed: 401/403 or no API key configured
        :raises SourceUnavailable: network failure, timeout, non-auth HTTP error
        """
        if not self.api_key:
            raise SourceAuthFailed("No API key configured for this server")

        url = self._build_url(path, params)
        req = Request(url, method="GET")
        req.add_header("X-Emby-Token", self.api_key)
        req.add_header("Accept", "application/json")
        logger.debug("GET %s", path)

        try:
            with urlopen(req, timeout=self.timeout) as resp: # Execute HTTP request
                body = resp.read()
        except HTTPError as he:
            if he.code in (401, 403):
                raise SourceAuthFailed(
                    f"Jellyfin rejected credentials ({he.code})", status=he.code
                ) from he
            kind = "transient" if self._is_transient_error(he) else "unexpected"
            raise SourceUnavailable(
                f"HTTP error from Jellyfin ({he.code}, {kind}): {he.reason or 'Unknown'}",
                status=he.code,
            ) from he
        except URLError as ue:
            reason = getattr(ue, "reason", "Unknown")
            raise SourceUnavailable(f"Network error: {reason}") from ue
        except (socket.timeout, TimeoutError, ConnectionError) as exc:
            raise SourceUnavailable(f"Request to {path} timed out or dropped: {exc}") from exc

        if not body:
            return None
        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            # Treated like a dropped connection
            raise SourceUnavailable(f"Unparsable response from {path}") from exc

    # -------------------------
    # Paged resources
    # -------------------------

    def fetch_page(
        self,
        resource_kind: str,
        cursor: Optional[Cursor] = None,
        library_id: Optional[str] = None,
        min_date: Optional[str] = None,
    ) -> Page:
        """
        Fetch one page of a resource.

        :param resource_kind: One of RESOURCE_KINDS
        :param cursor: Position to read from, Cursor.begin() when None
        :param library_id: Remote library id (items only)
        :param min_date: ISO timestamp lower bound (items and activity)
        :returns Page: Raw records and the cursor for the next page
        """
        if resource_kind not in RESOURCE_KINDS:
            raise ValueError(f"Unknown resource kind: {resource_kind}")

        start_index = _decode_position(cursor or Cursor.begin())

        if resource_kind == "users":
            return self._single_page(self._get("/Users"))

        if resource_kind == "libraries":
            data = self._get("/Library/MediaFolders")
            page = self._single_page(data)
            page.records = [
                lib for lib in page.records
                if str(lib.get("CollectionType") or "").lower() not in EXCLUDED_COLLECTION_TYPES
            ]
            return page

        if resource_kind == "sessions":
            page = self._single_page(self._get("/Sessions"))
            page.records = [s for s in page.records if _is_trackable_session(s)]
            return page

        if resource_kind == "items":
            if not library_id:
                raise ValueError("items pages require a library_id")
            data = self._get(
                "/Items",
                {
                    "ParentId": library_id,
                    "Recursive": "true",
                    "IncludeItemTypes": ITEM_TYPES,
                    "Fields": ITEM_FIELDS,
                    "StartIndex": start_index,
                    "Limit": self.item_page_size,
                    "MinDateLastSaved": min_date,
                },
            )
            return self._offset_page(data, start_index, self.item_page_size)

        data = self._get(
            "/System/ActivityLog/Entries",
            {
                "startIndex": start_index,
                "limit": self.activity_page_size,
                "minDate": min_date,
            },
        )
        return self._offset_page(data, start_index, self.activity_page_size)

    def _single_page(self, data: Any) -> Page:
        records = _records_of(data)
        return Page(records=records, next_cursor=Cursor.done(), total=len(records))

    def _offset_page(self, data: Any, start_index: int, page_size: int) -> Page:
        records = _records_of(data)
        total = data.get("TotalRecordCount") if isinstance(data, dict) else None
        try:
            total = int(total) if total is not None else None
        except (TypeError, ValueError):
            total = None

        consumed = start_index + len(records)
        finished = (
            not records
            or len(records) < page_size
            or (total is not None and consumed >= total)
        )
        next_cursor = Cursor.done() if finished else Cursor(token=_encode_position(consumed))
        return Page(records=records, next_cursor=next_cursor, total=total)

    # -------------------------
    # Misc
    # -------------------------

    def system_info(self) -> Dict[str, Any]:
        """
        Returns Jellyfin system info; doubles as a connectivity check.
        """
        data = self._get("/System/Info")
        return data if isinstance(data, dict) else {}


def _records_of(data: Any) -> List[Dict[str, Any]]:
    """
    Jellyfin returns either a bare list or an {"Items": [...]} envelope.
    """
    if isinstance(data, list):
        rows = data
    elif isinstance(data, dict):
        rows = data.get("Items") or []
    else:
        rows = []
    return [r for r in rows if isinstance(r, dict)]


def _is_trackable_session(session: Dict[str, Any]) -> bool:
    item = session.get("NowPlayingItem")
    if not isinstance(item, dict):
        return False
    extra = str(item.get("ExtraType") or "").lower()
    item_type = str(item.get("Type") or "").lower()
    return extra not in EXCLUDED_EXTRA_TYPES and item_type not in EXCLUDED_EXTRA_TYPES


def create_client(
    server: Dict[str, Any],
    settings: Optional[Dict[str, Any]] = None,
) -> MediaServerClient:
    """
    Factory to create a client for one registered server.

    :param server: Server dict including the decrypted api_key
    :param settings: Application settings dict (timeouts, page sizes)
    :returns MediaServerClient: Initialized client instance
    """
    settings = settings or {}
    return MediaServerClient(
        base_url=server.get("base_url") or "",
        api_key=server.get("api_key"),
        timeout=settings.get("request_timeout") or 60.0,
        item_page_size=settings.get("item_page_size") or 500,
        activity_page_size=settings.get("activity_page_size") or 100,
    )
