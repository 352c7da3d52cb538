"""
Orchestrator tests against an in-memory store and a scripted media server.
"""

import time

import pytest

from polaris.data_models import SyncRun
from polaris.errors import ConflictError, SourceAuthFailed, SourceUnavailable
from polaris.jellyfin import Cursor, Page
from polaris.repository import Repository
from polaris.settings_store import SettingsService
from polaris.sync_service import SyncService


USERS = [
    {"Id": "u1", "Name": "alice", "Policy": {"IsAdministrator": True}},
    {"Id": "u2", "Name": "bob"},
]
LIBRARIES = [{"Id": "lib1", "Name": "Movies", "CollectionType": "movies"}]
ITEMS = [
    {"Id": f"m{i}", "Name": f"Movie {i}", "Type": "Movie", "RunTimeTicks": 60_000_000_000}
    for i in range(5)
]
LIVE = [
    {
        "UserId": "u1",
        "UserName": "alice",
        "DeviceId": "tv",
        "Client": "Jellyfin Web",
        "NowPlayingItem": {"Id": "m1", "Name": "Movie 1", "RunTimeTicks": 60_000_000_000},
        "PlayState": {"PositionTicks": 30_000_000_000, "PlaySessionId": "ps-1", "PlayMethod": "DirectPlay"},
    }
]
ACTIVITY = [
    {"Id": 10, "Name": "alice logged in", "Type": "SessionStarted", "UserId": "u1", "Date": "2024-01-01T10:00:00Z"},
    {"Id": 11, "Name": "system", "Type": "TaskCompleted", "UserId": "00000000000000000000000000000000", "Date": "2024-01-01T11:00:00Z"},
]


class FakeMediaServer:
    """
    Pages every list resource two records at a time. Failures can be
    scripted per resource as a list of exceptions raised in order.
    """

    def __init__(self, page_size=2, items=None, failures=None, on_fetch=None):
        self.page_size = page_size
        self.data = {
            "users": list(USERS),
            "libraries": list(LIBRARIES),
            "items": list(ITEMS if items is None else items),
            "sessions": list(LIVE),
            "activity": list(ACTIVITY),
        }
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.on_fetch = on_fetch
        self.calls = []

    def fetch_page(self, resource_kind, cursor=None, library_id=None, min_date=None):
        self.calls.append((resource_kind, cursor.token if cursor else None, library_id, min_date))
        if self.on_fetch:
            self.on_fetch(resource_kind, len(self.calls))
        pending = self.failures.get(resource_kind)
        if pending:
            raise pending.pop(0)

        rows = self.data[resource_kind]
        if resource_kind in ("users", "libraries", "sessions"):
            return Page(records=rows, next_cursor=Cursor.done(), total=len(rows))

        start = 0 if cursor is None or cursor.token in (None, Cursor.begin().token) else int(cursor.token)
        chunk = rows[start:start + self.page_size]
        end = start + len(chunk)
        nxt = Cursor.done() if end >= len(rows) else Cursor(token=str(end))
        return Page(records=chunk, next_cursor=nxt, total=len(rows))


def _services(fake, dispatcher=None, **settings):
    repo = Repository(database_url="sqlite:///:memory:")
    svc = SettingsService(database_url="sqlite:///:memory:", encryption_key_path=":memory:")
    svc.update(dict({"retry_backoff_seconds": 1.0, "max_backoff_seconds": 10.0}, **settings))
    server = svc.add_server("Home", "http://jellyfin.local:8096", "key")
    delays = []
    sync = SyncService(
        repository=repo,
        settings_service=svc,
        client_factory=lambda server, settings: fake,
        dispatcher=dispatcher or (lambda fn: fn()),
        sleep=delays.append,
    )
    return repo, svc, sync, server["id"], delays


def test_full_sync_reconciles_everything() -> None:
    fake = FakeMediaServer()
    repo, svc, sync, server_id, _ = _services(fake)

    run = sync.trigger(server_id, "full")

    assert run["status"] == "succeeded"
    assert repo.count_rows("users", server_id) == 2
    assert repo.count_rows("libraries", server_id) == 1
    assert repo.count_rows("items", server_id) == 5
    assert repo.count_rows("sessions", server_id) == 1
    assert repo.count_rows("activity", server_id) == 2

    counts = run["counts"]
    assert counts["processed"] == 2 + 1 + 5 + 1 + 2
    assert counts["failed"] == 0
    # users, libraries, 3 item pages, sessions, 1 activity page
    assert counts["pages"] == 7
    assert run["progress"]["completed"] is True
    assert svc.get_server(server_id)["last_sync_ok"] is True
    assert repo.get_active_run(server_id) is None


def test_repeated_full_sync_is_idempotent() -> None:
    fake = FakeMediaServer()
    repo, _, sync, server_id, _ = _services(fake)

    sync.trigger(server_id, "full")
    before = repo.dump()
    sync.trigger(server_id, "full")
    after = repo.dump()

    for table in ("users", "libraries", "items", "activity_log"):
        assert len(after[table]) == len(before[table])


def test_trigger_while_active_returns_conflict_with_existing_run() -> None:
    queued = []
    fake = FakeMediaServer()
    repo, _, sync, server_id, _ = _services(fake, dispatcher=queued.append)

    full = sync.trigger(server_id, "full")
    assert full["status"] == "pending"

    with pytest.raises(ConflictError) as info:
        sync.trigger(server_id, "partial")
    assert info.value.run_id == full["id"]

    queued[0]()
    assert repo.get_run(full["id"])["status"] == "succeeded"
    assert len(repo.list_runs(server_id)) == 1


def test_unknown_kind_is_rejected() -> None:
    repo, _, sync, server_id, _ = _services(FakeMediaServer())
    with pytest.raises(ValueError):
        sync.trigger(server_id, "everything")
    assert repo.list_runs(server_id) == []


def test_transient_failures_are_retried_with_backoff() -> None:
    fake = FakeMediaServer(failures={"users": [SourceUnavailable("503"), SourceUnavailable("503")]})
    repo, _, sync, server_id, delays = _services(fake)

    run = sync.trigger(server_id, "users")

    assert run["status"] == "succeeded"
    assert delays == [1.0, 2.0]
    assert run["counts"]["api_requests"] == 3
    assert repo.count_rows("users", server_id) == 2


def test_exhausted_retries_fail_the_run() -> None:
    fake = FakeMediaServer(failures={"users": [SourceUnavailable("down")] * 10})
    _, svc, sync, server_id, delays = _services(fake, max_retries=3)

    run = sync.trigger(server_id, "users")

    assert run["status"] == "failed"
    assert "unavailable" in run["last_error"]
    assert len(delays) == 3
    assert len(fake.calls) == 4
    assert svc.get_server(server_id)["last_sync_ok"] is False


def test_auth_failure_is_not_retried() -> None:
    fake = FakeMediaServer(failures={"users": [SourceAuthFailed("401", status=401)]})
    _, _, sync, server_id, delays = _services(fake)

    run = sync.trigger(server_id, "full")

    assert run["status"] == "failed"
    assert "Authentication" in run["last_error"]
    assert delays == []
    assert len(fake.calls) == 1


def test_malformed_records_below_threshold_are_skipped() -> None:
    items = list(ITEMS) + [{"Name": "no id"}]
    fake = FakeMediaServer(items=items)
    repo, _, sync, server_id, _ = _services(fake, failure_threshold=0.5)

    run = sync.trigger(server_id, "full")

    assert run["status"] == "succeeded"
    assert run["counts"]["failed"] == 1
    assert repo.count_rows("items", server_id) == 5


def test_failure_ratio_above_threshold_fails_the_run() -> None:
    items = [{"Name": f"broken {i}"} for i in range(6)]
    fake = FakeMediaServer(items=items)
    _, _, sync, server_id, _ = _services(fake, failure_threshold=0.1)

    run = sync.trigger(server_id, "full")

    assert run["status"] == "failed"
    assert "threshold" in run["last_error"]
    assert run["counts"]["failed"] == 6


def test_cancel_is_observed_at_next_page_boundary() -> None:
    holder = {}

    def cancel_during_first_item_page(resource, call_no):
        if resource == "items" and "cancelled" not in holder:
            holder["cancelled"] = True
            holder["sync"].cancel(holder["server_id"], holder["run_id"])

    fake = FakeMediaServer(on_fetch=cancel_during_first_item_page)
    queued = []
    repo, _, sync, server_id, _ = _services(fake, dispatcher=queued.append)
    run = sync.trigger(server_id, "full")
    holder.update(sync=sync, server_id=server_id, run_id=run["id"])

    queued[0]()

    final = repo.get_run(run["id"])
    assert final["status"] == "cancelled"
    # The page being fetched when the cancel arrived is still written
    assert repo.count_rows("items", server_id) == 2
    assert [c[0] for c in fake.calls].count("items") == 1
    assert repo.get_active_run(server_id) is None


def test_cancel_pending_run_never_starts() -> None:
    queued = []
    fake = FakeMediaServer()
    repo, _, sync, server_id, _ = _services(fake, dispatcher=queued.append)

    run = sync.trigger(server_id, "full")
    assert sync.cancel(server_id, run["id"])["status"] == "cancelled"

    queued[0]()
    assert fake.calls == []
    assert repo.get_run(run["id"])["status"] == "cancelled"


def test_partial_watermark_only_advances_on_success() -> None:
    fake = FakeMediaServer()
    repo, _, sync, server_id, _ = _services(fake, max_retries=0)

    full = sync.trigger(server_id, "full")
    assert full["status"] == "succeeded"

    # Pin the full run to a known start so later runs are distinguishable
    with repo._session() as session:
        session.get(SyncRun, full["id"]).started_at = 1_600_000_000
    assert repo.get_watermark(server_id) == 1_600_000_000

    fake.failures["items"] = [SourceUnavailable("down")]
    failed = sync.trigger(server_id, "partial")
    assert failed["status"] == "failed"
    assert failed["watermark"] == 1_600_000_000
    assert repo.get_watermark(server_id) == 1_600_000_000

    fake.calls.clear()
    retried = sync.trigger(server_id, "partial")
    assert retried["status"] == "succeeded"
    item_calls = [c for c in fake.calls if c[0] == "items"]
    assert item_calls and all(c[3] == "2020-09-13T12:26:40Z" for c in item_calls)
    assert repo.get_watermark(server_id) == retried["started_at"]


def test_partial_only_touches_items_and_sessions() -> None:
    fake = FakeMediaServer()
    _, _, sync, server_id, _ = _services(fake)
    sync.trigger(server_id, "full")
    fake.calls.clear()

    sync.trigger(server_id, "partial")

    assert {c[0] for c in fake.calls} == {"items", "sessions"}


def test_users_missing_upstream_are_deactivated() -> None:
    fake = FakeMediaServer()
    repo, _, sync, server_id, _ = _services(fake)
    sync.trigger(server_id, "users")

    fake.data["users"] = [USERS[0]]
    sync.trigger(server_id, "users")

    active = [u["remote_id"] for u in repo.list_users(server_id)]
    assert active == ["u1"]
    assert repo.count_rows("users", server_id) == 2


def test_sync_periodic_picks_full_then_partial() -> None:
    fake = FakeMediaServer()
    repo, _, sync, server_id, _ = _services(fake)

    first = sync.sync_periodic()
    second = sync.sync_periodic()

    assert [r["kind"] for r in first] == ["full"]
    assert [r["kind"] for r in second] == ["partial"]
    assert all(r["trigger"] == "scheduled" for r in first + second)


def test_run_reset_as_stale_stops_at_next_page_boundary() -> None:
    holder = {}

    def reset_during_first_item_page(resource, call_no):
        if resource == "items" and "reset" not in holder:
            holder["reset"] = True
            repo = holder["repo"]
            repo.reset_stale_runs(now=int(time.time()) + 7200)
            holder["replacement"] = repo.create_run(holder["server_id"], "partial")

    fake = FakeMediaServer(on_fetch=reset_during_first_item_page)
    queued = []
    repo, svc, sync, server_id, _ = _services(fake, dispatcher=queued.append)
    run = sync.trigger(server_id, "full")
    holder.update(repo=repo, server_id=server_id)

    final = queued[0]()

    assert final["status"] == "failed"
    assert "reset" in final["last_error"]
    assert [c[0] for c in fake.calls].count("items") == 1
    assert not {"sessions", "activity"} & {c[0] for c in fake.calls}
    assert repo.get_run(run["id"])["status"] == "failed"

    server = svc.get_server(server_id)
    assert server["last_sync_ok"] is False
    assert repo.get_active_run(server_id)["id"] == holder["replacement"]["id"]
    assert repo.get_run(holder["replacement"]["id"])["status"] == "pending"
