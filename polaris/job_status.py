"""
Read-only views over sync runs for status pollers.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from polaris.data_models import (
    RUN_PENDING,
    RUN_RUNNING,
    RUN_SUCCEEDED,
    RUN_FAILED,
    RUN_CANCELLED,
)
from polaris.errors import RunNotFound
from polaris.repository import Repository
from polaris.settings_store import SettingsService

# A server whose last success is older than this is flagged
STALE_SUCCESS_SECONDS = 24 * 3600


@dataclass
class JobStatusService:
    repository: Repository
    settings_service: SettingsService

    def get_run(self, server_id: int, run_id: int) -> Dict[str, Any]:
        run = self.repository.get_run(run_id)
        if run is None or run["server_id"] != int(server_id):
            raise RunNotFound(f"Run {run_id} not found for server {server_id}")
        return run

    def list_runs(self, server_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Most recent first.
        """
        return self.repository.list_runs(server_id, limit=limit)

    def get_active_run(self, server_id: int) -> Optional[Dict[str, Any]]:
        return self.repository.get_active_run(server_id)

    def summary(self, server_id: int, now: Optional[int] = None) -> Dict[str, Any]:
        """
        What a poller needs to pick a message: never synced, running,
        last run failed (with its error), or succeeded N minutes ago.
        """
        now = int(now if now is not None else time.time())
        active = self.get_active_run(server_id)
        latest = self.repository.list_runs(server_id, limit=1)
        last_success = self.repository.get_last_successful_run(server_id)

        if active is not None:
            state = RUN_RUNNING if active["status"] == RUN_RUNNING else RUN_PENDING
        elif not latest:
            state = "never_run"
        else:
            state = latest[0]["status"]

        last_run = latest[0] if latest else None
        last_success_at = last_success["finished_at"] if last_success else None

        return {
            "server_id": int(server_id),
            "state": state,
            "active_run": active,
            "last_run": last_run,
            "last_error": last_run["last_error"] if last_run and last_run["status"] == RUN_FAILED else None,
            "last_success_at": last_success_at,
            "minutes_since_success": (
                int((now - last_success_at) // 60) if last_success_at is not None else None
            ),
        }

    def server_status(self, now: Optional[int] = None, recent: int = 5) -> Dict[str, Any]:
        """
        Health overview of every registered server.
        """
        now = int(now if now is not None else time.time())
        grouped: Dict[str, List[Dict[str, Any]]] = {
            "never_run": [],
            RUN_PENDING: [],
            RUN_RUNNING: [],
            RUN_SUCCEEDED: [],
            RUN_FAILED: [],
            RUN_CANCELLED: [],
        }
        issues: List[str] = []
        warnings: List[str] = []
        servers: List[Dict[str, Any]] = []

        for server in self.settings_service.list_servers():
            summary = self.summary(server["id"], now=now)
            runs = self.repository.list_runs(server["id"], limit=recent)

            needs_attention = summary["state"] in (RUN_FAILED, "never_run")
            stale = (
                summary["last_success_at"] is not None
                and now - summary["last_success_at"] > STALE_SUCCESS_SECONDS
            )
            entry = {
                "id": server["id"],
                "name": server["name"],
                "state": summary["state"],
                "is_healthy": summary["state"] in (RUN_SUCCEEDED, RUN_RUNNING, RUN_PENDING) and not stale,
                "needs_attention": needs_attention,
                "last_error": summary["last_error"],
                "last_success_at": summary["last_success_at"],
                "minutes_since_success": summary["minutes_since_success"],
                "active_run": summary["active_run"],
                "recent_runs": runs,
            }
            servers.append(entry)
            grouped.setdefault(summary["state"], []).append(entry)

            if summary["state"] == RUN_FAILED:
                issues.append(f"{server['name']}: last sync failed: {summary['last_error']}")
            elif summary["state"] == "never_run":
                warnings.append(f"{server['name']}: has never been synced")
            if stale:
                warnings.append(f"{server['name']}: no successful sync in over 24 hours")

        if issues:
            overall = "unhealthy"
        elif warnings:
            overall = "warning"
        else:
            overall = "healthy"

        return {
            "servers": servers,
            "by_state": {state: [s["id"] for s in entries] for state, entries in grouped.items()},
            "totals": {state: len(entries) for state, entries in grouped.items()},
            "system_health": {
                "overall": overall,
                "issues": issues,
                "warnings": warnings,
            },
            "timestamp": now,
        }
