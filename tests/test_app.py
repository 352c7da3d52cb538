"""
Pytest integration tests for the HTTP surface: sync task lifecycle,
status polling, live sessions and statistics routes.
"""

from typing import Generator

import pytest
from app import create_app
from polaris.errors import SourceUnavailable
from polaris.jellyfin import Cursor, Page


class FakeClient:
    """
    Minimal media server: one user, one library, one movie, one live session.
    """

    def __init__(self):
        self.sessions_error = None

    def fetch_page(self, resource_kind, cursor=None, library_id=None, min_date=None):
        if resource_kind == "sessions" and self.sessions_error:
            raise self.sessions_error
        records = {
            "users": [{"Id": "u1", "Name": "alice"}],
            "libraries": [{"Id": "lib1", "Name": "Movies", "CollectionType": "movies"}],
            "items": [{"Id": "m1", "Name": "Heat", "Type": "Movie", "RunTimeTicks": 60_000_000_000}],
            "sessions": [{
                "UserId": "u1",
                "UserName": "alice",
                "DeviceId": "tv",
                "NowPlayingItem": {"Id": "m1", "Name": "Heat", "RunTimeTicks": 60_000_000_000},
                "PlayState": {"PositionTicks": 6_000_000_000, "PlaySessionId": "ps-1"},
            }],
            "activity": [],
        }[resource_kind]
        return Page(records=records, next_cursor=Cursor.done(), total=len(records))


@pytest.fixture()
def fake() -> FakeClient:
    return FakeClient()


@pytest.fixture()
def queued() -> list:
    return []


@pytest.fixture()
def app(fake, queued):
    """
    App with in-memory stores. Sync runs are queued instead of started so
    tests decide when they execute.
    """
    app = create_app({
        "DEBUG": True,
        "CLIENT_FACTORY": lambda server, settings: fake,
        "SYNC_DISPATCHER": queued.append,
    })
    app.extensions["polaris"]["settings"].add_server("Home", "http://jf.local:8096", "secret")
    return app


@pytest.fixture()
def client(app) -> Generator:
    with app.test_client() as client:
        yield client


def _run_queued(queued) -> None:
    while queued:
        queued.pop(0)()


def test_unknown_route_returns_404(client) -> None:
    resp = client.get("/not-found")
    assert resp.status_code == 404


def test_api_settings_roundtrip(client) -> None:
    """
    First GET creates defaults; PUT persists validated values.
    """
    body = client.get("/api/settings").get_json()
    assert body["ok"] is True
    assert body["data"]["sync_interval"] == 1800

    put = client.put("/api/settings", json={"sync_interval": 900, "failure_threshold": "oops"})
    assert put.status_code == 200
    assert put.get_json()["data"]["sync_interval"] == 900
    assert client.get("/api/settings").get_json()["data"]["failure_threshold"] == 0.1


def test_servers_never_expose_api_key(client) -> None:
    servers = client.get("/api/servers").get_json()["data"]
    assert [s["name"] for s in servers] == ["Home"]
    assert "api_key" not in servers[0]


def test_trigger_returns_202_with_run_id(client, queued) -> None:
    resp = client.post("/sync/1/tasks", json={"kind": "full"})

    assert resp.status_code == 202
    body = resp.get_json()
    assert body["ok"] is True
    assert body["data"]["status"] == "pending"
    run_id = body["data"]["run_id"]

    _run_queued(queued)

    got = client.get(f"/sync/1/tasks/{run_id}").get_json()["data"]
    assert got["status"] == "succeeded"
    assert got["counts"]["upserted"] > 0


def test_second_trigger_while_running_is_409(app, client) -> None:
    first = client.post("/sync/1/tasks", json={"kind": "full"}).get_json()["data"]
    app.extensions["polaris"]["repository"].mark_running(first["run_id"])

    resp = client.post("/sync/1/tasks", json={"kind": "partial"})

    assert resp.status_code == 409
    body = resp.get_json()
    assert body["ok"] is False
    assert body["data"]["run_id"] == first["run_id"]
    assert body["data"]["status"] == "running"


def test_bad_kind_is_400(client) -> None:
    resp = client.post("/sync/1/tasks", json={"kind": "everything"})
    assert resp.status_code == 400
    assert resp.get_json()["ok"] is False


def test_unknown_server_and_run_are_404(client) -> None:
    assert client.post("/sync/99/tasks", json={"kind": "full"}).status_code == 404
    assert client.get("/sync/1/tasks/12345").status_code == 404
    assert client.get("/sync/99/status").status_code == 404


def test_cancel_pending_run(client, queued, fake) -> None:
    run_id = client.post("/sync/1/tasks", json={"kind": "full"}).get_json()["data"]["run_id"]

    resp = client.post(f"/sync/1/tasks/{run_id}/cancel")

    assert resp.status_code == 200
    assert resp.get_json()["data"]["status"] == "cancelled"
    _run_queued(queued)
    assert client.get(f"/sync/1/tasks/{run_id}").get_json()["data"]["status"] == "cancelled"


def test_list_runs_and_status(client, queued) -> None:
    status = client.get("/sync/1/status").get_json()["data"]
    assert status["state"] == "never_run"

    client.post("/sync/1/tasks", json={"kind": "users"})
    _run_queued(queued)

    runs = client.get("/sync/1/tasks").get_json()["data"]
    assert [r["kind"] for r in runs] == ["users"]
    status = client.get("/sync/1/status").get_json()["data"]
    assert status["state"] == "succeeded"
    assert status["minutes_since_success"] == 0

    assert client.get("/sync/1/tasks?limit=abc").status_code == 400


def test_server_status_overview(client) -> None:
    resp = client.get("/jobs/server-status")

    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["totals"]["never_run"] == 1
    assert data["system_health"]["overall"] == "warning"


def test_sessions_passthrough_and_warning(client, fake) -> None:
    data = client.get("/sessions?serverId=1").get_json()["data"]
    assert data["warning"] is None
    assert data["sessions"][0]["progress_percent"] == 10.0

    fake.sessions_error = SourceUnavailable("connection refused")
    resp = client.get("/sessions?serverId=1")
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["sessions"] == []
    assert data["warning"]

    assert client.get("/sessions").status_code == 400


def test_statistics_routes(client, queued) -> None:
    client.post("/sync/1/tasks", json={"kind": "full"})
    _run_queued(queued)

    library = client.get("/statistics/library?serverId=1").get_json()["data"]
    assert library["movies_count"] == 1
    assert library["users_count"] == 1

    item = client.get("/statistics/items?serverId=1&itemId=m1").get_json()["data"]
    assert item["total_views"] == 1
    assert item["item"]["name"] == "Heat"

    overview = client.get("/statistics/items?serverId=1").get_json()["data"]
    assert overview["most_popular"]["item_id"] == "m1"
    assert [m["item_id"] for m in overview["most_watched"]["Movie"]] == ["m1"]

    since = client.get("/statistics/items?serverId=1&start=2024-01-01").get_json()["data"]
    assert since["most_popular"]["item_id"] == "m1"
    before = client.get("/statistics/items?serverId=1&start=2024-01-01&end=2024-01-02").get_json()["data"]
    assert before["most_popular"] is None

    user = client.get("/statistics/users/u1?serverId=1").get_json()["data"]
    assert user["user"]["name"] == "alice"

    activity = client.get(
        "/statistics/user-activity?serverId=1&start=2024-01-01&end=2024-01-03"
    ).get_json()["data"]
    assert [d["date"] for d in activity] == ["2024-01-01", "2024-01-02", "2024-01-03"]

    watch = client.get("/statistics/watch-time?serverId=1&start=2024-01-01&end=2024-01-01").get_json()["data"]
    assert len(watch["per_day"]) == 1
    assert len(watch["per_weekday"]) == 7
    assert len(watch["per_hour"]) == 24


def test_statistics_argument_errors(client) -> None:
    assert client.get("/statistics/library").status_code == 400
    assert client.get("/statistics/library?serverId=99").status_code == 404
    resp = client.get("/statistics/user-activity?serverId=1&start=2024-01-05&end=2024-01-01")
    assert resp.status_code == 400
    assert client.get("/statistics/items?serverId=1&start=2024-01-05&end=2024-01-01").status_code == 400
    assert client.get("/statistics/items?serverId=1&start=soon").status_code == 400
