from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from polaris.data_models import (
    SYNC_KINDS,
    RUN_RUNNING,
    RUN_SUCCEEDED,
    RUN_FAILED,
    RUN_CANCELLED,
)
from polaris.errors import (
    ConflictError,
    RunNotFound,
    SourceAuthFailed,
    SourceMalformed,
    SourceUnavailable,
)
from polaris.jellyfin import Cursor, MediaServerClient, Page, create_client
from polaris.mappers import map_records
from polaris.repository import Repository
from polaris.settings_store import SettingsService

logger = logging.getLogger(__name__)

# Resources each task kind walks, in order
RESOURCE_PLAN = {
    "full": ("users", "libraries", "items", "sessions", "activity"),
    "partial": ("items", "sessions"),
    "users": ("users",),
    "libraries": ("libraries",),
}


class RunCancelled(Exception):
    """Raised inside a run when a cancel request is seen at a page boundary."""


class RunAborted(Exception):
    """
    Raised inside a run whose stored status left `running` while it was
    executing, for example when it was reset as stale.
    """


@dataclass
class RunContext:
    """
    Mutable state of one executing run.
    """
    run_id: int
    server_id: int
    kind: str
    watermark: Optional[int]
    settings: Dict[str, Any]
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def min_date(self) -> Optional[str]:
        if self.kind != "partial" or self.watermark is None:
            return None
        return _ts_to_iso(self.watermark)

    def failure_ratio(self) -> float:
        return self.failed / self.processed if self.processed else 0.0


def _ts_to_iso(ts: int) -> str:
    """
    Convert epoch seconds to Jellyfin-compatible ISO UTC string.
    """
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _background(fn: Callable[[], Any]) -> None:
    thread = threading.Thread(target=fn, daemon=True)
    thread.start()


@dataclass
class SyncService:
    """
    Sync orchestrator. Owns the lifecycle of every SyncRun:
    pending -> running -> succeeded | failed | cancelled.
    """
    repository: Repository
    settings_service: SettingsService
    client_factory: Callable[[Dict[str, Any], Dict[str, Any]], MediaServerClient] = create_client
    dispatcher: Callable[[Callable[[], Any]], None] = _background
    sleep: Callable[[float], None] = time.sleep
    statistics: Any = None

    # -------------------------
    # Triggering
    # -------------------------

    def trigger(
        self,
        server_id: int,
        kind: str,
        trigger: str = "manual"
    ) -> Dict[str, Any]:
        """
        Create a pending run for the server and hand it to the dispatcher.

        :raises ValueError: unknown kind
        :raises ServerNotFound: unknown server
        :raises ConflictError: a run for this server is already pending or running
        """
        if kind not in SYNC_KINDS:
            raise ValueError(f"Unknown sync kind {kind!r}; expected one of {', '.join(SYNC_KINDS)}")

        self.settings_service.get_server(server_id)
        run = self.repository.create_run(server_id, kind, trigger=trigger)
        logger.info("Queued %s sync run %s for server %s", kind, run["id"], server_id)

        run_id = run["id"]
        self.dispatcher(lambda: self.execute(run_id))
        return self.repository.get_run(run_id) or run

    def cancel(self, server_id: int, run_id: int) -> Dict[str, Any]:
        """
        Request cancellation. Running runs stop at the next page boundary.
        """
        run = self.repository.get_run(run_id)
        if run is None or run["server_id"] != int(server_id):
            raise RunNotFound(f"Run {run_id} not found for server {server_id}")
        result = self.repository.request_cancel(run_id)
        logger.info("Cancel requested for run %s (status=%s)", run_id, result["status"])
        return result

    def sync_periodic(self) -> List[Dict[str, Any]]:
        """
        Scheduler entry point: one run per registered server. Servers that
        never completed a sync get a full run, the rest a partial one.
        """
        settings = self.settings_service.get()
        self.repository.reset_stale_runs(settings.get("stale_run_seconds") or 3600)

        started: List[Dict[str, Any]] = []
        for server in self.settings_service.list_servers():
            server_id = server["id"]
            kind = "partial" if self.repository.get_watermark(server_id) is not None else "full"
            try:
                started.append(self.trigger(server_id, kind, trigger="scheduled"))
            except ConflictError as exc:
                logger.info("Skipping scheduled sync for server %s: run %s still active", server_id, exc.run_id)
        return started

    # -------------------------
    # Execution
    # -------------------------

    def execute(self, run_id: int) -> Dict[str, Any]:
        """
        Drive one run to a terminal state. Always returns the final run.
        """
        run = self.repository.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found")

        server_id = run["server_id"]
        kind = run["kind"]
        watermark = self.repository.get_watermark(server_id) if kind == "partial" else None

        if self.repository.mark_running(run_id, watermark=watermark) is None:
            # Cancelled (or reset) before it started
            return self.repository.get_run(run_id)

        settings = self.settings_service.get()
        ctx = RunContext(
            run_id=run_id,
            server_id=server_id,
            kind=kind,
            watermark=watermark,
            settings=settings,
        )
        logger.info("Starting %s sync run %s for server %s (watermark=%s)", kind, run_id, server_id, watermark)

        status = RUN_SUCCEEDED
        error: Optional[str] = None
        try:
            server = self.settings_service.get_server(server_id, include_secret=True)
            client = self.client_factory(server, settings)
            for resource in RESOURCE_PLAN[kind]:
                self._sync_resource(ctx, client, resource)

            threshold = float(settings.get("failure_threshold", 0.1))
            if ctx.failure_ratio() > threshold:
                status = RUN_FAILED
                error = (
                    f"{ctx.failed} of {ctx.processed} records failed "
                    f"({ctx.failure_ratio():.1%}), above the {threshold:.1%} threshold"
                )
        except RunCancelled:
            status = RUN_CANCELLED
        except RunAborted as exc:
            logger.warning("Sync run %s stopped: %s", run_id, exc)
            status = RUN_FAILED
            error = str(exc)
        except SourceAuthFailed as exc:
            status = RUN_FAILED
            error = f"Authentication with the media server failed: {exc}"
        except SourceUnavailable as exc:
            status = RUN_FAILED
            error = f"Media server unavailable: {exc}"
        except Exception as exc:
            logger.exception("Sync run %s crashed", run_id)
            status = RUN_FAILED
            error = f"Unexpected error: {exc}"

        # A run finished elsewhere keeps its stored outcome
        final = self.repository.finish_run(run_id, status, error)
        if final is not None:
            status = final["status"]
            error = final.get("last_error")
        if status != RUN_CANCELLED:
            self.settings_service.record_connectivity(server_id, ok=(status == RUN_SUCCEEDED), error=error)
        if self.statistics is not None:
            self.statistics.invalidate(server_id)

        log = logger.info if status == RUN_SUCCEEDED else logger.warning
        log(
            "Sync run %s for server %s finished: %s (processed=%s failed=%s)%s",
            run_id, server_id, status, ctx.processed, ctx.failed,
            f" error={error}" if error else "",
        )
        return final

    def _check_cancel(self, ctx: RunContext) -> None:
        """
        Page boundary check: stop on a cancel request, or when the stored
        run is no longer running.
        """
        run = self.repository.get_run(ctx.run_id)
        if run is None or run["status"] != RUN_RUNNING:
            raise RunAborted(
                f"run is {run['status'] if run else 'gone'} in the store"
            )
        if run.get("cancel_requested"):
            raise RunCancelled()

    def _fetch_with_retry(
        self,
        ctx: RunContext,
        client: MediaServerClient,
        resource: str,
        cursor: Cursor,
        **filters: Any
    ) -> Tuple[Page, int]:
        """
        Fetch a page, retrying SourceUnavailable with exponential backoff.

        :returns Tuple[Page, int]: the page and the number of requests made
        """
        max_retries = int(ctx.settings.get("max_retries", 3))
        backoff = float(ctx.settings.get("retry_backoff_seconds", 1.0))
        max_backoff = float(ctx.settings.get("max_backoff_seconds", 10.0))

        attempt = 0
        while True:
            try:
                return client.fetch_page(resource, cursor, **filters), attempt + 1
            except SourceUnavailable as exc:
                if attempt >= max_retries:
                    raise
                delay = min(backoff * (2 ** attempt), max_backoff)
                logger.warning(
                    "Fetching %s for run %s failed (%s); retry %d/%d in %.1fs",
                    resource, ctx.run_id, exc, attempt + 1, max_retries, delay,
                )
                self.sleep(delay)
                attempt += 1

    def _drain(
        self,
        ctx: RunContext,
        client: MediaServerClient,
        resource: str,
        fetch_filters: Optional[Dict[str, Any]] = None,
        map_kwargs: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[str], bool]:
        """
        Walk every page of a resource, writing each page before asking for
        the next. Returns the remote ids written and whether every record
        of every page was written.
        """
        max_pages = int(ctx.settings.get("max_pages", 1000))
        cursor = Cursor.begin()
        pages = 0
        seen: List[str] = []
        clean = True

        while not cursor.is_done:
            if pages >= max_pages:
                logger.warning("Run %s hit the %d page cap for %s", ctx.run_id, max_pages, resource)
                clean = False
                break
            self._check_cancel(ctx)

            page, requests = self._fetch_with_retry(ctx, client, resource, cursor, **(fetch_filters or {}))
            kwargs = dict(map_kwargs or {})
            if resource == "sessions":
                kwargs.setdefault("observed_at", int(time.time()))
            mapped = map_records(resource, page.records, **kwargs)

            good = [m for m in mapped if not isinstance(m, SourceMalformed)]
            malformed = [m for m in mapped if isinstance(m, SourceMalformed)]
            for exc in malformed:
                logger.warning("Skipping malformed %s record in run %s: %s", resource, ctx.run_id, exc)

            result = self.repository.upsert_page(resource, ctx.server_id, good)
            failed = len(malformed) + result.failed
            self.repository.record_page(
                ctx.run_id,
                resource,
                processed=len(mapped),
                upserted=result.upserted,
                failed=failed,
                skipped=result.skipped,
                api_requests=requests,
            )

            ctx.processed += len(mapped)
            ctx.failed += failed
            ctx.errors.extend(result.errors)
            if failed:
                clean = False
            seen.extend(r["remote_id"] for r in good if r.get("remote_id"))

            cursor = page.next_cursor
            pages += 1

        return seen, clean

    def _sync_resource(self, ctx: RunContext, client: MediaServerClient, resource: str) -> None:
        if resource == "users":
            seen, clean = self._drain(ctx, client, "users")
            if clean and seen:
                self.repository.deactivate_missing_users(ctx.server_id, seen)
            return

        if resource == "libraries":
            seen, clean = self._drain(ctx, client, "libraries")
            if clean and seen:
                self.repository.archive_missing_libraries(ctx.server_id, seen)
            return

        if resource == "items":
            for lib in self.repository.list_libraries(ctx.server_id):
                seen, clean = self._drain(
                    ctx,
                    client,
                    "items",
                    fetch_filters={"library_id": lib["remote_id"], "min_date": ctx.min_date},
                    map_kwargs={"library_internal_id": lib["id"]},
                )
                # Only a complete, unfiltered listing says what is gone
                if clean and ctx.min_date is None:
                    self.repository.archive_missing_items(ctx.server_id, lib["id"], seen)
            return

        if resource == "sessions":
            self._drain(ctx, client, "sessions")
            return

        if resource == "activity":
            self._drain(ctx, client, "activity", fetch_filters={"min_date": ctx.min_date})
            return

        raise ValueError(f"Unknown resource {resource}")
