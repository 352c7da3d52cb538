import json

import pytest

from polaris.repository import Repository
from polaris.stats_aggregator import StatisticsService


SERVER = 1

# 2024-01-01T00:00:00Z
JAN_1 = 1_704_067_200
DAY = 86_400


def _repo() -> Repository:
    """
    Two users, two movies and a two-season show with three episodes.
    """
    repo = Repository(database_url="sqlite:///:memory:")
    repo.upsert_page("users", SERVER, [
        {"remote_id": "u1", "name": "alice"},
        {"remote_id": "u2", "name": "bob"},
    ])
    lib = repo.upsert("libraries", SERVER, {"remote_id": "lib1", "name": "Media", "type": "mixed"})
    repo.upsert_page("items", SERVER, [
        {"remote_id": "m1", "library_id": lib, "name": "Heat", "type": "Movie"},
        {"remote_id": "m2", "library_id": lib, "name": "Ronin", "type": "Movie"},
        {"remote_id": "s1", "library_id": lib, "name": "Show", "type": "Series"},
        {"remote_id": "e1", "library_id": lib, "name": "Ep 1", "type": "Episode", "series_id": "s1", "season_id": "sea1"},
        {"remote_id": "e2", "library_id": lib, "name": "Ep 2", "type": "Episode", "series_id": "s1", "season_id": "sea1"},
        {"remote_id": "e3", "library_id": lib, "name": "Ep 3", "type": "Episode", "series_id": "s1", "season_id": "sea2"},
    ])
    return repo


def _play(repo, key, user_id, item_id, start, duration, completed=False, series_id=None, server_id=SERVER):
    repo.upsert("sessions", server_id, {
        "session_key": key,
        "user_id": user_id,
        "item_id": item_id,
        "series_id": series_id,
        "start_time": start,
        "play_duration": duration,
        "percent_complete": 95.0 if completed else 20.0,
        "completed": completed,
    })


def test_item_statistics_three_sessions() -> None:
    repo = _repo()
    _play(repo, "a", "u1", "m1", JAN_1 + 3600, 1200, completed=True)
    _play(repo, "b", "u2", "m1", JAN_1 + 7200, 300)
    _play(repo, "c", "u1", "m1", JAN_1 + DAY, 1200, completed=True)

    stats = repo.get_item_statistics(SERVER, "m1")

    assert stats["total_views"] == 3
    assert stats["total_watch_time"] == 2700
    assert stats["completion_rate"] == pytest.approx(2 / 3)
    assert [u["user_id"] for u in stats["users_watched"]] == ["u1", "u2"]
    assert stats["users_watched"][0]["watch_count"] == 2
    assert stats["users_watched"][0]["completion_rate"] == 1.0
    assert [h["start_time"] for h in stats["watch_history"]] == [JAN_1 + DAY, JAN_1 + 7200, JAN_1 + 3600]
    assert stats["first_watched"] == JAN_1 + 3600
    assert stats["last_watched"] == JAN_1 + DAY


def test_item_without_sessions_reports_zero() -> None:
    repo = _repo()

    stats = repo.get_item_statistics(SERVER, "m2")

    assert stats["total_views"] == 0
    assert stats["total_watch_time"] == 0
    assert stats["completion_rate"] == 0.0
    assert stats["users_watched"] == []
    assert stats["first_watched"] is None


def test_statistics_are_deterministic() -> None:
    repo = _repo()
    _play(repo, "a", "u1", "m1", JAN_1, 600, completed=True)
    _play(repo, "b", "u2", "m1", JAN_1, 600)

    first = repo.get_item_statistics(SERVER, "m1")
    second = repo.get_item_statistics(SERVER, "m1")

    assert json.dumps(first, sort_keys=True) == json.dumps(second, sort_keys=True)


def test_month_buckets_follow_timezone() -> None:
    repo = _repo()
    # 2024-01-31T23:30:00Z is already February in Tokyo
    _play(repo, "late", "u1", "m2", 1_706_743_800, 900)

    utc = repo.get_item_statistics(SERVER, "m2", tz="UTC")
    tokyo = repo.get_item_statistics(SERVER, "m2", tz="Asia/Tokyo")

    assert [m["month"] for m in utc["watch_count_by_month"]] == ["2024-01"]
    assert [m["month"] for m in tokyo["watch_count_by_month"]] == ["2024-02"]
    assert tokyo["watch_count_by_month"][0]["unique_users"] == 1


def test_user_activity_per_day_fills_gaps() -> None:
    repo = _repo()
    _play(repo, "a", "u1", "m1", JAN_1 + 36_000, 100)
    _play(repo, "b", "u2", "m2", JAN_1 + 40_000, 200)
    _play(repo, "c", "u1", "m1", JAN_1 + 2 * DAY + 36_000, 300)

    activity = repo.get_user_activity_per_day(SERVER, "2024-01-01", "2024-01-03")

    assert activity == [
        {"date": "2024-01-01", "active_users": 2},
        {"date": "2024-01-02", "active_users": 0},
        {"date": "2024-01-03", "active_users": 1},
    ]

    watch = repo.get_watch_time_per_day(SERVER, "2024-01-01", "2024-01-03")
    assert [d["watch_time"] for d in watch] == [300, 0, 300]
    assert [d["play_count"] for d in watch] == [2, 0, 1]


def test_reversed_date_range_is_rejected() -> None:
    repo = _repo()
    with pytest.raises(ValueError):
        repo.get_user_activity_per_day(SERVER, "2024-01-03", "2024-01-01")


def test_most_popular_item_tie_breaks() -> None:
    repo = _repo()
    assert repo.get_most_popular_item(SERVER) is None

    # Same watch time: more plays wins
    _play(repo, "a", "u1", "m1", JAN_1, 600)
    _play(repo, "b", "u1", "m2", JAN_1, 300)
    _play(repo, "c", "u2", "m2", JAN_1 + 10, 300)
    assert repo.get_most_popular_item(SERVER)["item_id"] == "m2"

    # Same watch time and plays: lowest item id wins
    _play(repo, "d", "u2", "m1", JAN_1 + 20, 0)
    popular = repo.get_most_popular_item(SERVER)
    assert popular["item_id"] == "m1"
    assert popular["play_count"] == 2

    # Range filter
    assert repo.get_most_popular_item(SERVER, start=JAN_1 + 5)["item_id"] == "m2"


def test_orphan_sessions_are_skipped() -> None:
    repo = _repo()
    _play(repo, "a", "u1", "m1", JAN_1, 600)
    _play(repo, "ghost-user", "ghost", "m1", JAN_1, 600)
    _play(repo, "ghost-item", "u1", "gone", JAN_1, 600)

    assert repo.get_item_statistics(SERVER, "m1")["total_views"] == 1
    assert repo.get_item_statistics(SERVER, "gone")["total_views"] == 0
    lib = repo.get_library_statistics(SERVER)
    assert lib["total_play_count"] == 1
    assert lib["total_watch_time"] == 600


def test_user_watch_stats_streak() -> None:
    repo = _repo()
    for offset in (0, 1, 2, 4):
        _play(repo, f"p{offset}", "u1", "m1", JAN_1 + offset * DAY + 3600, 100)
    # A zero-length play on day 4 neither counts nor bridges the gap
    _play(repo, "zero", "u1", "m2", JAN_1 + 3 * DAY + 3600, 0)

    stats = repo.get_user_watch_stats(SERVER, "u1")

    assert stats["user"]["name"] == "alice"
    assert stats["total_plays"] == 4
    assert stats["total_watch_time"] == 400
    assert stats["longest_streak_days"] == 3
    assert stats["most_recent_session"]["start_time"] == JAN_1 + 4 * DAY + 3600


def test_user_without_history() -> None:
    repo = _repo()
    stats = repo.get_user_watch_stats(SERVER, "u2")

    assert stats["total_plays"] == 0
    assert stats["most_recent_session"] is None
    assert stats["longest_streak_days"] == 0


def test_series_aggregates_its_episodes() -> None:
    repo = _repo()
    _play(repo, "a", "u1", "e1", JAN_1, 1000, completed=True, series_id="s1")
    _play(repo, "b", "u2", "e3", JAN_1 + 60, 500, series_id="s1")

    stats = repo.get_item_statistics(SERVER, "s1")

    assert stats["total_views"] == 2
    assert stats["total_watch_time"] == 1500
    assert stats["series"] == {
        "total_episodes": 3,
        "total_seasons": 2,
        "watched_episodes": 2,
        "watched_seasons": 2,
    }

    top = repo.get_most_watched_items(SERVER)
    assert top["Series"][0]["item_id"] == "s1"
    assert top["Series"][0]["name"] == "Show"
    assert top["Series"][0]["total_watch_time"] == 1500
    assert [e["item_id"] for e in top["Episode"]] == ["e1", "e3"]
    assert top["Movie"] == []


def test_weekday_and_hour_buckets() -> None:
    repo = _repo()
    # 2024-01-01 was a Monday
    _play(repo, "a", "u1", "m1", JAN_1 + 3 * 3600, 120)

    weekdays = repo.get_watch_time_per_weekday(SERVER)
    hours = repo.get_watch_time_per_hour(SERVER)

    assert len(weekdays) == 7
    assert weekdays[0] == {"day": "Monday", "watch_time": 120}
    assert len(hours) == 24
    assert hours[3]["watch_time"] == 120
    assert sum(h["watch_time"] for h in hours) == 120


def test_library_statistics_counts() -> None:
    repo = _repo()
    _play(repo, "a", "u1", "m1", JAN_1, 600)

    stats = repo.get_library_statistics(SERVER)

    assert stats["movies_count"] == 2
    assert stats["episodes_count"] == 3
    assert stats["series_count"] == 1
    assert stats["libraries_count"] == 1
    assert stats["users_count"] == 2
    assert stats["total_items"] == 6


def test_statistics_service_caches_until_invalidated() -> None:
    repo = _repo()
    stats = StatisticsService(repo)
    _play(repo, "a", "u1", "m1", JAN_1, 600)

    assert stats.item_statistics(SERVER, "m1")["total_views"] == 1

    _play(repo, "b", "u2", "m1", JAN_1 + 60, 600)
    assert stats.item_statistics(SERVER, "m1")["total_views"] == 1

    stats.invalidate(SERVER)
    assert stats.item_statistics(SERVER, "m1")["total_views"] == 2


def test_statistics_service_misses_after_successful_run() -> None:
    repo = _repo()
    stats = StatisticsService(repo)
    assert stats.library_statistics(SERVER)["total_play_count"] == 0

    _play(repo, "a", "u1", "m1", JAN_1, 600)
    run = repo.create_run(SERVER, "partial")
    repo.mark_running(run["id"])
    repo.finish_run(run["id"], "succeeded")

    assert stats.library_statistics(SERVER)["total_play_count"] == 1


def test_most_popular_between_whole_days() -> None:
    repo = _repo()
    stats = StatisticsService(repo)
    _play(repo, "a", "u1", "m1", JAN_1 + 3600, 900)
    _play(repo, "b", "u1", "m2", JAN_1 + DAY + 3600, 600)
    _play(repo, "c", "u2", "m2", JAN_1 + DAY + 7200, 600)

    assert stats.most_popular_between(SERVER)["item_id"] == "m2"
    assert stats.most_popular_between(SERVER, end_date="2024-01-01")["item_id"] == "m1"
    assert stats.most_popular_between(SERVER, start_date="2024-01-02")["item_id"] == "m2"
    assert stats.most_popular_between(SERVER, "2024-01-03", "2024-01-04") is None
