"""
Statistics aggregation over reconciled watch history.

Everything here is a read: functions take an open session, never call the
media server and never raise for missing data (they return zeros or empty
lists). Output ordering is fixed so identical data gives identical results.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import date, datetime, time as dtime, timedelta
from typing import Dict, Any, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from polaris.data_models import (
    User,
    Item,
    Library,
    WatchHistorySession,
)

WATCH_HISTORY_LIMIT = 50
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

DateLike = Union[date, str]


def _zone(tz: Optional[str]) -> ZoneInfo:
    return ZoneInfo(tz or "UTC")


def _local(ts: int, zone: ZoneInfo) -> datetime:
    return datetime.fromtimestamp(int(ts), zone)


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def _day_bounds(start: date, end: date, zone: ZoneInfo) -> Tuple[int, int]:
    """
    Unix seconds [start-of-start, start-of-day-after-end) in the zone.
    """
    lo = datetime.combine(start, dtime.min, tzinfo=zone)
    hi = datetime.combine(end + timedelta(days=1), dtime.min, tzinfo=zone)
    return int(lo.timestamp()), int(hi.timestamp())


def _sessions_query(session: Session, server_id: int):
    """
    Sessions joined to their user and item. Sessions whose user or item
    no longer exists drop out of the join.
    """
    return (
        session.query(WatchHistorySession, User, Item)
        .join(
            User,
            and_(
                User.server_id == WatchHistorySession.server_id,
                User.remote_id == WatchHistorySession.user_id,
            ),
        )
        .join(
            Item,
            and_(
                Item.server_id == WatchHistorySession.server_id,
                Item.remote_id == WatchHistorySession.item_id,
            ),
        )
        .filter(WatchHistorySession.server_id == server_id)
    )


def _ordered(rows):
    return sorted(rows, key=lambda r: (r[0].start_time, r[0].id))


def _rate(completed: int, total: int) -> float:
    return completed / total if total else 0.0


def _history_entry(ws: WatchHistorySession, user: User, item: Item) -> Dict[str, Any]:
    return {
        "session_id": ws.id,
        "user_id": ws.user_id,
        "user_name": user.name,
        "item_id": ws.item_id,
        "item_name": item.name,
        "start_time": ws.start_time,
        "play_duration": ws.play_duration or 0,
        "percent_complete": ws.percent_complete or 0.0,
        "completed": bool(ws.completed),
        "client_name": ws.client_name,
        "device_name": ws.device_name,
        "play_method": ws.play_method,
    }


class StatsAggregator:

    @staticmethod
    def item_statistics(
        session: Session,
        server_id: int,
        item_id: str,
        tz: str = "UTC"
    ) -> Dict[str, Any]:
        """
        Views, watch time, completion and per-user/per-month breakdown for
        one item. A series aggregates over all of its episodes.
        """
        zone = _zone(tz)
        item = session.query(Item).filter_by(server_id=server_id, remote_id=item_id).first()

        query = _sessions_query(session, server_id)
        if item is not None and (item.type or "").lower() == "series":
            query = query.filter(
                (WatchHistorySession.series_id == item_id)
                | (WatchHistorySession.item_id == item_id)
            )
        else:
            query = query.filter(WatchHistorySession.item_id == item_id)
        rows = _ordered(query.all())

        total_views = len(rows)
        total_watch_time = sum(ws.play_duration or 0 for ws, _, _ in rows)
        completed = sum(1 for ws, _, _ in rows if ws.completed)

        per_user: Dict[str, Dict[str, Any]] = {}
        per_month: Dict[str, Dict[str, Any]] = {}
        for ws, user, _ in rows:
            u = per_user.setdefault(ws.user_id, {
                "user_id": ws.user_id,
                "user_name": user.name,
                "watch_count": 0,
                "total_watch_time": 0,
                "completed": 0,
                "first_watched": ws.start_time,
                "last_watched": ws.start_time,
            })
            u["watch_count"] += 1
            u["total_watch_time"] += ws.play_duration or 0
            u["completed"] += 1 if ws.completed else 0
            u["first_watched"] = min(u["first_watched"], ws.start_time)
            u["last_watched"] = max(u["last_watched"], ws.start_time)

            month = _local(ws.start_time, zone).strftime("%Y-%m")
            m = per_month.setdefault(month, {"month": month, "watch_count": 0, "users": set(), "total_watch_time": 0})
            m["watch_count"] += 1
            m["users"].add(ws.user_id)
            m["total_watch_time"] += ws.play_duration or 0

        users_watched = []
        for u in per_user.values():
            u["completion_rate"] = _rate(u.pop("completed"), u["watch_count"])
            users_watched.append(u)
        users_watched.sort(key=lambda u: (-u["total_watch_time"], -u["watch_count"], u["user_id"]))

        by_month = [
            {
                "month": m["month"],
                "watch_count": m["watch_count"],
                "unique_users": len(m["users"]),
                "total_watch_time": m["total_watch_time"],
            }
            for _, m in sorted(per_month.items())
        ]

        history = [
            _history_entry(ws, user, it)
            for ws, user, it in sorted(rows, key=lambda r: (r[0].start_time, r[0].id), reverse=True)[:WATCH_HISTORY_LIMIT]
        ]

        stats = {
            "item": item.to_dict() if item else None,
            "total_views": total_views,
            "total_watch_time": total_watch_time,
            "completion_rate": _rate(completed, total_views),
            "first_watched": rows[0][0].start_time if rows else None,
            "last_watched": max(ws.start_time for ws, _, _ in rows) if rows else None,
            "users_watched": users_watched,
            "watch_history": history,
            "watch_count_by_month": by_month,
        }

        if item is not None and (item.type or "").lower() == "series":
            stats["series"] = StatsAggregator._series_episode_stats(session, server_id, item_id, rows)

        return stats

    @staticmethod
    def _series_episode_stats(session: Session, server_id: int, series_id: str, rows) -> Dict[str, Any]:
        episodes = (
            session.query(Item)
            .filter(Item.server_id == server_id, Item.series_id == series_id)
            .filter(func.lower(Item.type) == "episode")
            .filter(Item.archived == False)
            .all()
        )
        season_of = {ep.remote_id: ep.season_id or ep.parent_index_number for ep in episodes}
        watched = {ws.item_id for ws, _, _ in rows if ws.item_id in season_of}
        return {
            "total_episodes": len(episodes),
            "total_seasons": len({s for s in season_of.values() if s is not None}),
            "watched_episodes": len(watched),
            "watched_seasons": len({season_of[i] for i in watched if season_of[i] is not None}),
        }

    @staticmethod
    def user_watch_stats(
        session: Session,
        server_id: int,
        user_id: str,
        tz: str = "UTC"
    ) -> Dict[str, Any]:
        """
        Plays, watch time, latest session and longest daily streak for one user.
        """
        zone = _zone(tz)
        user = session.query(User).filter_by(server_id=server_id, remote_id=user_id).first()
        rows = _ordered(
            _sessions_query(session, server_id)
            .filter(WatchHistorySession.user_id == user_id)
            .all()
        )

        played = [r for r in rows if (r[0].play_duration or 0) > 0]
        most_recent = None
        if rows:
            ws, u, it = max(rows, key=lambda r: (r[0].start_time, r[0].id))
            most_recent = _history_entry(ws, u, it)

        days = sorted({_local(ws.start_time, zone).date() for ws, _, _ in played})
        longest = 0
        current = 0
        previous = None
        for d in days:
            current = current + 1 if previous is not None and d - previous == timedelta(days=1) else 1
            longest = max(longest, current)
            previous = d

        return {
            "user": user.to_dict() if user else None,
            "total_plays": len(played),
            "total_watch_time": sum(ws.play_duration or 0 for ws, _, _ in rows),
            "most_recent_session": most_recent,
            "longest_streak_days": longest,
        }

    @staticmethod
    def most_popular_item(
        session: Session,
        server_id: int,
        start: Optional[int] = None,
        end: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Item with the highest total watch time in [start, end]; ties go to
        the higher play count, then the lower item id.
        """
        query = _sessions_query(session, server_id)
        if start is not None:
            query = query.filter(WatchHistorySession.start_time >= int(start))
        if end is not None:
            query = query.filter(WatchHistorySession.start_time <= int(end))

        totals: Dict[str, Dict[str, Any]] = {}
        for ws, _, item in query.all():
            t = totals.setdefault(ws.item_id, {
                "item_id": ws.item_id,
                "name": item.name,
                "type": item.type,
                "total_watch_time": 0,
                "play_count": 0,
            })
            t["total_watch_time"] += ws.play_duration or 0
            t["play_count"] += 1

        if not totals:
            return None
        return min(
            totals.values(),
            key=lambda t: (-t["total_watch_time"], -t["play_count"], t["item_id"]),
        )

    @staticmethod
    def most_watched_items(
        session: Session,
        server_id: int,
        limit: int = 10
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Top movies, episodes and series by watch time. Series totals come
        from their episodes.
        """
        buckets: Dict[str, Dict[str, Dict[str, Any]]] = {"Movie": {}, "Episode": {}, "Series": {}}

        def _add(bucket: str, key: str, name: Optional[str], ws: WatchHistorySession) -> None:
            entry = buckets[bucket].setdefault(key, {
                "item_id": key,
                "name": name,
                "type": bucket,
                "total_watch_time": 0,
                "play_count": 0,
            })
            entry["total_watch_time"] += ws.play_duration or 0
            entry["play_count"] += 1

        series_names = dict(
            session.query(Item.remote_id, Item.name)
            .filter(Item.server_id == server_id, func.lower(Item.type) == "series")
            .all()
        )

        for ws, _, item in _sessions_query(session, server_id).all():
            item_type = (item.type or "").lower()
            if item_type == "movie":
                _add("Movie", item.remote_id, item.name, ws)
            elif item_type == "episode":
                _add("Episode", item.remote_id, item.name, ws)
                if item.series_id:
                    _add("Series", item.series_id, series_names.get(item.series_id) or item.series_name, ws)

        return {
            bucket: sorted(
                entries.values(),
                key=lambda e: (-e["total_watch_time"], -e["play_count"], e["item_id"]),
            )[:limit]
            for bucket, entries in buckets.items()
        }

    @staticmethod
    def _daily_buckets(
        session: Session,
        server_id: int,
        start_date: DateLike,
        end_date: DateLike,
        tz: str
    ) -> List[Dict[str, Any]]:
        start = _as_date(start_date)
        end = _as_date(end_date)
        if start > end:
            raise ValueError(f"start date {start} is after end date {end}")

        zone = _zone(tz)
        lo, hi = _day_bounds(start, end, zone)
        rows = (
            _sessions_query(session, server_id)
            .filter(WatchHistorySession.start_time >= lo)
            .filter(WatchHistorySession.start_time < hi)
            .all()
        )

        users: Dict[date, set] = defaultdict(set)
        watch_time: Dict[date, int] = defaultdict(int)
        plays: Dict[date, int] = defaultdict(int)
        for ws, _, _ in rows:
            day = _local(ws.start_time, zone).date()
            users[day].add(ws.user_id)
            watch_time[day] += ws.play_duration or 0
            plays[day] += 1

        out = []
        day = start
        while day <= end:
            out.append({
                "date": day.isoformat(),
                "active_users": len(users.get(day, ())),
                "watch_time": watch_time.get(day, 0),
                "play_count": plays.get(day, 0),
            })
            day += timedelta(days=1)
        return out

    @staticmethod
    def user_activity_per_day(
        session: Session,
        server_id: int,
        start_date: DateLike,
        end_date: DateLike,
        tz: str = "UTC"
    ) -> List[Dict[str, Any]]:
        """
        Distinct active users per day, both endpoints included, empty days as 0.
        """
        return [
            {"date": d["date"], "active_users": d["active_users"]}
            for d in StatsAggregator._daily_buckets(session, server_id, start_date, end_date, tz)
        ]

    @staticmethod
    def watch_time_per_day(
        session: Session,
        server_id: int,
        start_date: DateLike,
        end_date: DateLike,
        tz: str = "UTC"
    ) -> List[Dict[str, Any]]:
        return [
            {"date": d["date"], "watch_time": d["watch_time"], "play_count": d["play_count"]}
            for d in StatsAggregator._daily_buckets(session, server_id, start_date, end_date, tz)
        ]

    @staticmethod
    def watch_time_per_weekday(
        session: Session,
        server_id: int,
        tz: str = "UTC"
    ) -> List[Dict[str, Any]]:
        zone = _zone(tz)
        totals = [0] * 7
        for ws, _, _ in _sessions_query(session, server_id).all():
            totals[_local(ws.start_time, zone).weekday()] += ws.play_duration or 0
        return [{"day": WEEKDAYS[i], "watch_time": totals[i]} for i in range(7)]

    @staticmethod
    def watch_time_per_hour(
        session: Session,
        server_id: int,
        tz: str = "UTC"
    ) -> List[Dict[str, Any]]:
        zone = _zone(tz)
        totals = [0] * 24
        for ws, _, _ in _sessions_query(session, server_id).all():
            totals[_local(ws.start_time, zone).hour] += ws.play_duration or 0
        return [{"hour": h, "watch_time": totals[h]} for h in range(24)]

    @staticmethod
    def library_statistics(session: Session, server_id: int) -> Dict[str, Any]:
        """
        Admin-wide counts for one server.
        """
        type_counts = dict(
            session.query(func.lower(Item.type), func.count(Item.id))
            .filter(Item.server_id == server_id, Item.archived == False)
            .group_by(func.lower(Item.type))
            .all()
        )

        libraries_count = (
            session.query(func.count(Library.id))
            .filter(Library.server_id == server_id, Library.archived == False)
            .scalar()
        )
        users_count = (
            session.query(func.count(User.id))
            .filter(User.server_id == server_id, User.is_active == True)
            .scalar()
        )

        watch = _sessions_query(session, server_id).with_entities(
            func.count(WatchHistorySession.id),
            func.coalesce(func.sum(WatchHistorySession.play_duration), 0),
        ).one()

        return {
            "movies_count": int(type_counts.get("movie", 0)),
            "episodes_count": int(type_counts.get("episode", 0)),
            "series_count": int(type_counts.get("series", 0)),
            "libraries_count": int(libraries_count or 0),
            "users_count": int(users_count or 0),
            "total_items": int(sum(type_counts.values())),
            "total_watch_time": int(watch[1] or 0),
            "total_play_count": int(watch[0] or 0),
        }


class StatisticsService:
    """
    Cached front for the aggregator. Entries are keyed by the server's last
    successful run, so a new successful sync naturally misses the cache.
    """

    MAX_ENTRIES = 512

    def __init__(self, repository, settings_service=None) -> None:
        self.repository = repository
        self.settings_service = settings_service
        self._cache: Dict[Tuple, Any] = {}
        self._lock = threading.Lock()

    def timezone_for(self, server_id: int) -> str:
        if self.settings_service is None:
            return "UTC"
        return self.settings_service.server_timezone(server_id)

    def invalidate(self, server_id: Optional[int] = None) -> None:
        with self._lock:
            if server_id is None:
                self._cache.clear()
                return
            for key in [k for k in self._cache if k[0] == server_id]:
                del self._cache[key]

    def _cached(self, server_id: int, op: str, args: Tuple, compute):
        last = self.repository.get_last_successful_run(server_id)
        stamp = (last["id"], last["finished_at"]) if last else None
        key = (server_id, op, args, stamp)

        with self._lock:
            if key in self._cache:
                return self._cache[key]

        value = compute()
        with self._lock:
            if len(self._cache) >= self.MAX_ENTRIES:
                self._cache.clear()
            self._cache[key] = value
        return value

    def item_statistics(self, server_id: int, item_id: str) -> Dict[str, Any]:
        tz = self.timezone_for(server_id)
        return self._cached(
            server_id, "item", (item_id, tz),
            lambda: self.repository.get_item_statistics(server_id, item_id, tz=tz),
        )

    def user_watch_stats(self, server_id: int, user_id: str) -> Dict[str, Any]:
        tz = self.timezone_for(server_id)
        return self._cached(
            server_id, "user", (user_id, tz),
            lambda: self.repository.get_user_watch_stats(server_id, user_id, tz=tz),
        )

    def most_popular_item(
        self,
        server_id: int,
        start: Optional[int] = None,
        end: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        return self._cached(
            server_id, "popular", (start, end),
            lambda: self.repository.get_most_popular_item(server_id, start=start, end=end),
        )

    def most_popular_between(
        self,
        server_id: int,
        start_date: Optional[DateLike] = None,
        end_date: Optional[DateLike] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Most popular item for whole local days; either bound may be open.
        """
        zone = _zone(self.timezone_for(server_id))
        start = end = None
        if start_date is not None:
            day = _as_date(start_date)
            start = _day_bounds(day, day, zone)[0]
        if end_date is not None:
            day = _as_date(end_date)
            end = _day_bounds(day, day, zone)[1] - 1
        return self.most_popular_item(server_id, start=start, end=end)

    def most_watched_items(self, server_id: int, limit: int = 10) -> Dict[str, List[Dict[str, Any]]]:
        return self._cached(
            server_id, "most_watched", (limit,),
            lambda: self.repository.get_most_watched_items(server_id, limit=limit),
        )

    def user_activity_per_day(self, server_id: int, start_date: DateLike, end_date: DateLike) -> List[Dict[str, Any]]:
        tz = self.timezone_for(server_id)
        start, end = _as_date(start_date), _as_date(end_date)
        return self._cached(
            server_id, "user_activity", (start, end, tz),
            lambda: self.repository.get_user_activity_per_day(server_id, start, end, tz=tz),
        )

    def watch_time_per_day(self, server_id: int, start_date: DateLike, end_date: DateLike) -> List[Dict[str, Any]]:
        tz = self.timezone_for(server_id)
        start, end = _as_date(start_date), _as_date(end_date)
        return self._cached(
            server_id, "watch_time", (start, end, tz),
            lambda: self.repository.get_watch_time_per_day(server_id, start, end, tz=tz),
        )

    def watch_time_per_weekday(self, server_id: int) -> List[Dict[str, Any]]:
        tz = self.timezone_for(server_id)
        return self._cached(
            server_id, "weekday", (tz,),
            lambda: self.repository.get_watch_time_per_weekday(server_id, tz=tz),
        )

    def watch_time_per_hour(self, server_id: int) -> List[Dict[str, Any]]:
        tz = self.timezone_for(server_id)
        return self._cached(
            server_id, "hour", (tz,),
            lambda: self.repository.get_watch_time_per_hour(server_id, tz=tz),
        )

    def library_statistics(self, server_id: int) -> Dict[str, Any]:
        return self._cached(
            server_id, "library", (),
            lambda: self.repository.get_library_statistics(server_id),
        )
