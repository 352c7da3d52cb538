"""
Provides an application factory that constructs and configures the Flask
instance serving the Polaris sync and statistics API.
"""

from typing import Optional, Dict, Any, Tuple
from datetime import date, timedelta
import atexit
import logging

try:
    from flask import Flask, Response, jsonify, request
except Exception as exc:
    raise RuntimeError(
        "Flask is required to run the Polaris API. "
        "Install with: pip install Flask"
    ) from exc

from polaris.errors import ConflictError, RunNotFound, ServerNotFound

logger = logging.getLogger(__name__)


def _ok(data: Any, status: int = 200) -> Tuple[Response, int]:
    return jsonify({"ok": True, "data": data}), status


def _error(message: str, status: int, data: Any = None) -> Tuple[Response, int]:
    body: Dict[str, Any] = {"ok": False, "message": message}
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def _int_arg(name: str) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    return int(raw)


def create_app(test_config: Optional[Dict] = None) -> "Flask":
    """
    Create and configure the Polaris Flask application.
    """
    app = Flask(__name__)

    app.config.setdefault("DEBUG", False)
    app.config.setdefault("PORT", 2929)
    app.config.setdefault("DATABASE_URL", "sqlite:///polaris.db")
    app.config.setdefault("ENCRYPTION_KEY_PATH", "secret.key")
    app.config.setdefault("DATA_DATABASE_URL", "sqlite:///polaris_data.db")
    app.config.setdefault("SEED_SERVER", None)

    if test_config:
        app.config.update(test_config)
        if app.config.get("DEBUG", False):
            if "DATABASE_URL" not in test_config:
                app.config["DATABASE_URL"] = "sqlite:///:memory:"
            if "ENCRYPTION_KEY_PATH" not in test_config:
                app.config["ENCRYPTION_KEY_PATH"] = ":memory:"
            if "DATA_DATABASE_URL" not in test_config:
                app.config["DATA_DATABASE_URL"] = "sqlite:///:memory:"

    from polaris.settings_store import SettingsService
    svc = SettingsService(
        database_url=app.config["DATABASE_URL"],
        encryption_key_path=app.config["ENCRYPTION_KEY_PATH"],
    )

    from polaris.repository import Repository
    repo = Repository(
        database_url=app.config["DATA_DATABASE_URL"]
    )

    seed = app.config.get("SEED_SERVER")
    if seed and seed.get("base_url") and not svc.find_server_by_url(seed["base_url"]):
        svc.add_server(
            name=seed.get("name") or seed["base_url"],
            base_url=seed["base_url"],
            api_key=seed.get("api_key") or "",
            timezone=seed.get("timezone"),
        )

    from polaris.stats_aggregator import StatisticsService
    stats = StatisticsService(repository=repo, settings_service=svc)

    from polaris.jellyfin import create_client
    client_factory = app.config.get("CLIENT_FACTORY") or create_client

    from polaris.sync_service import SyncService
    sync_kwargs: Dict[str, Any] = {}
    if app.config.get("SYNC_DISPATCHER") is not None:
        sync_kwargs["dispatcher"] = app.config["SYNC_DISPATCHER"]
    if app.config.get("SYNC_SLEEP") is not None:
        sync_kwargs["sleep"] = app.config["SYNC_SLEEP"]
    sync = SyncService(
        repository=repo,
        settings_service=svc,
        client_factory=client_factory,
        statistics=stats,
        **sync_kwargs,
    )

    from polaris.job_status import JobStatusService
    jobs = JobStatusService(repository=repo, settings_service=svc)

    from polaris.session_monitor import SessionMonitor
    monitor = SessionMonitor(settings_service=svc, client_factory=client_factory)

    repo.reset_stale_runs(svc.get()["stale_run_seconds"])

    from polaris.sync_scheduler import SyncScheduler
    sync_scheduler = SyncScheduler(
        sync_service=sync,
        interval_seconds=svc.get()["sync_interval"]
    )

    if not app.config.get("DEBUG"):
        sync_scheduler.start()

    app.extensions["polaris"] = {
        "settings": svc,
        "repository": repo,
        "sync": sync,
        "jobs": jobs,
        "statistics": stats,
        "sessions": monitor,
        "scheduler": sync_scheduler,
    }

    def cleanup():
        """
        Cleanup function called when app shuts down.
        """
        sync_scheduler.stop()
        svc.engine.dispose()
        repo.engine.dispose()

    atexit.register(cleanup)

    # -------------------------
    # Error mapping
    # -------------------------

    @app.errorhandler(ServerNotFound)
    def _server_not_found(exc: ServerNotFound):
        return _error(str(exc), 404)

    @app.errorhandler(RunNotFound)
    def _run_not_found(exc: RunNotFound):
        return _error(str(exc), 404)

    @app.errorhandler(ConflictError)
    def _conflict(exc: ConflictError):
        return _error(
            str(exc),
            409,
            {"run_id": exc.run_id, "status": exc.active_run.get("status"), "run": exc.active_run},
        )

    # -------------------------
    # Settings
    # -------------------------

    @app.get("/api/settings")
    def get_settings():
        return _ok(svc.get())

    @app.put("/api/settings")
    def update_settings():
        payload = request.get_json(silent=True) or {}
        return _ok(svc.update(payload))

    @app.get("/api/servers")
    def list_servers():
        return _ok(svc.list_servers())

    # -------------------------
    # Sync tasks
    # -------------------------

    @app.post("/sync/<int:server_id>/tasks")
    def trigger_sync(server_id: int):
        payload = request.get_json(silent=True) or {}
        kind = str(payload.get("kind") or "").strip().lower()
        try:
            run = sync.trigger(server_id, kind)
        except ValueError as exc:
            return _error(str(exc), 400)
        return _ok({"run_id": run["id"], "status": run["status"], "run": run}, 202)

    @app.get("/sync/<int:server_id>/tasks")
    def list_sync_runs(server_id: int):
        svc.get_server(server_id)
        try:
            limit = _int_arg("limit") or 50
        except ValueError:
            return _error("limit must be an integer", 400)
        return _ok(jobs.list_runs(server_id, limit=max(1, min(limit, 500))))

    @app.get("/sync/<int:server_id>/tasks/<int:run_id>")
    def get_sync_run(server_id: int, run_id: int):
        return _ok(jobs.get_run(server_id, run_id))

    @app.post("/sync/<int:server_id>/tasks/<int:run_id>/cancel")
    def cancel_sync_run(server_id: int, run_id: int):
        return _ok(sync.cancel(server_id, run_id))

    @app.get("/sync/<int:server_id>/status")
    def sync_status(server_id: int):
        svc.get_server(server_id)
        return _ok(jobs.summary(server_id))

    @app.get("/jobs/server-status")
    def server_status():
        return _ok(jobs.server_status())

    # -------------------------
    # Live sessions
    # -------------------------

    @app.get("/sessions")
    def active_sessions():
        try:
            server_id = _int_arg("serverId")
        except ValueError:
            return _error("serverId must be an integer", 400)
        if server_id is None:
            return _error("serverId is required", 400)
        return _ok(monitor.list_active_sessions(server_id))

    # -------------------------
    # Statistics
    # -------------------------

    def _stats_server() -> int:
        server_id = _int_arg("serverId")
        if server_id is None:
            raise ValueError("serverId is required")
        svc.get_server(server_id)
        return server_id

    def _date_range() -> Tuple[date, date]:
        end_raw = request.args.get("end")
        start_raw = request.args.get("start")
        end = date.fromisoformat(end_raw) if end_raw else date.today()
        start = date.fromisoformat(start_raw) if start_raw else end - timedelta(days=29)
        if start > end:
            raise ValueError("start must not be after end")
        return start, end

    def _optional_date_range() -> Tuple[Optional[date], Optional[date]]:
        start_raw = request.args.get("start")
        end_raw = request.args.get("end")
        start = date.fromisoformat(start_raw) if start_raw else None
        end = date.fromisoformat(end_raw) if end_raw else None
        if start and end and start > end:
            raise ValueError("start must not be after end")
        return start, end

    @app.get("/statistics/items")
    def item_statistics():
        try:
            server_id = _stats_server()
            start, end = _optional_date_range()
        except ValueError as exc:
            return _error(str(exc), 400)

        item_id = request.args.get("itemId")
        if item_id:
            return _ok(stats.item_statistics(server_id, item_id))
        return _ok({
            "most_popular": stats.most_popular_between(server_id, start, end),
            "most_watched": stats.most_watched_items(server_id),
        })

    @app.get("/statistics/users/<user_id>")
    def user_statistics(user_id: str):
        try:
            server_id = _stats_server()
        except ValueError as exc:
            return _error(str(exc), 400)
        return _ok(stats.user_watch_stats(server_id, user_id))

    @app.get("/statistics/user-activity")
    def user_activity():
        try:
            server_id = _stats_server()
            start, end = _date_range()
        except ValueError as exc:
            return _error(str(exc), 400)
        return _ok(stats.user_activity_per_day(server_id, start, end))

    @app.get("/statistics/watch-time")
    def watch_time():
        try:
            server_id = _stats_server()
            start, end = _date_range()
        except ValueError as exc:
            return _error(str(exc), 400)
        return _ok({
            "per_day": stats.watch_time_per_day(server_id, start, end),
            "per_weekday": stats.watch_time_per_weekday(server_id),
            "per_hour": stats.watch_time_per_hour(server_id),
        })

    @app.get("/statistics/library")
    def library_statistics():
        try:
            server_id = _stats_server()
        except ValueError as exc:
            return _error(str(exc), 400)
        return _ok(stats.library_statistics(server_id))

    return app
