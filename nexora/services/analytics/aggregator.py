"""
Analytics aggregation: global, facility and member reports.

Each report runs the same pipeline:

    fetch      per-facility snapshots; a failed read empties that facility only
    normalize  records come out of the data source with timestamps resolved
    score      utilization, status and trend per task subset
    insights   rule engine over the assembled payload

Finished payloads are memoized in the shared ``ReportCache``.
"""
import calendar
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

import pytz
import structlog
from sqlalchemy.exc import SQLAlchemyError

from ...utils.dates import (
    get_previous_range_dates,
    get_time_range_dates,
    isoformat,
    normalize_range,
    utcnow,
)
from . import insights as insights_engine
from .access import AccessResolver
from .cache import ReportCache, make_cache_key
from .data_access import (
    AnalyticsDataSource,
    FacilityRecord,
    FacilitySnapshot,
    TaskRecord,
    UserRecord,
    dedupe_tasks,
    match_task_assignee,
)
from .errors import AnalyticsAccessDenied, AnalyticsNotFound
from .utilization import (
    TaskBreakdown,
    breakdown,
    classify_task,
    compute_trend,
    compute_utilization,
    completed_in_window,
    facility_status,
    is_in_range,
    member_status,
    round1,
    status_distribution,
    task_status_counts,
    touches_window,
)


logger = structlog.get_logger(__name__)

DEFAULT_CAPACITY_HOURS = 8


class AnalyticsAggregator:
    def __init__(
        self,
        source: AnalyticsDataSource,
        cache: ReportCache,
        *,
        clock: Callable[[], datetime] = utcnow,
        redistribute_unassigned: bool = False,
        timeline_limit: int = 20,
        task_list_limit: int = 50,
        tz_name: str = "UTC",
    ):
        self.source = source
        self.cache = cache
        self.clock = clock
        self.redistribute_unassigned = redistribute_unassigned
        self.timeline_limit = timeline_limit
        self.task_list_limit = task_list_limit
        self.tz_name = tz_name
        self.access = AccessResolver(source)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def get_global_analytics(self, identity_id: str, role: Optional[str], range_token: Optional[str] = None) -> Dict[str, Any]:
        rng = normalize_range(range_token)
        key = make_cache_key("global", identity_id, role, rng)
        return self.cache.get_or_compute(key, lambda: self._build_global(identity_id, rng))

    def get_facility_analytics(
        self, facility_id: str, identity_id: str, role: Optional[str], range_token: Optional[str] = None
    ) -> Dict[str, Any]:
        rng = normalize_range(range_token)
        key = make_cache_key("facility", facility_id, identity_id, role, rng)
        return self.cache.get_or_compute(key, lambda: self._build_facility(facility_id, identity_id, rng))

    def get_member_analytics(
        self,
        member_id: str,
        identity_id: str,
        role: Optional[str],
        range_token: Optional[str] = None,
        facility_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        rng = normalize_range(range_token)
        key = make_cache_key("member", member_id, identity_id, role, rng, facility_id)
        return self.cache.get_or_compute(
            key, lambda: self._build_member(member_id, identity_id, role, rng, facility_id)
        )

    def can_access_member_analytics(self, member_id: str, identity_id: str, role: Optional[str] = None) -> bool:
        return self.access.can_access_member_analytics(member_id, identity_id, role)

    # ------------------------------------------------------------------
    # Fetch stage
    # ------------------------------------------------------------------

    def _load_snapshot(self, facility: FacilityRecord) -> FacilitySnapshot:
        snapshot = FacilitySnapshot(facility=facility)
        try:
            snapshot.memberships = self.source.memberships_for_facility(facility.id)
            snapshot.projects = self.source.projects_for_facility(facility.id)
            tasks: List[TaskRecord] = []
            for project in snapshot.projects:
                tasks.extend(self.source.tasks_for_project(project.id))
            snapshot.tasks = dedupe_tasks(tasks)
            snapshot.users = self.source.get_users(snapshot.raw_member_ids)
        except SQLAlchemyError as e:
            logger.warning("facility_fetch_failed", facility_id=facility.id, error=str(e))
            return FacilitySnapshot(facility=facility, failed=True)
        return snapshot

    # ------------------------------------------------------------------
    # Task selection
    # ------------------------------------------------------------------

    def _unassigned(self, snapshot: FacilitySnapshot, tasks: Iterable[TaskRecord]) -> List[TaskRecord]:
        projects = snapshot.project_by_id
        result = []
        for task in tasks:
            project = projects.get(task.project_id or "")
            if not task.has_assignee and not (project and project.assignees):
                result.append(task)
        return result

    def _member_tasks(
        self,
        snapshot: FacilitySnapshot,
        user: UserRecord,
        tasks: Sequence[TaskRecord],
        redistribute: Optional[bool] = None,
    ) -> List[TaskRecord]:
        projects = snapshot.project_by_id
        mine = []
        for task in tasks:
            project = projects.get(task.project_id or "")
            if match_task_assignee(task, user, project.assignees if project else ()):
                mine.append(task)
        if self.redistribute_unassigned if redistribute is None else redistribute:
            # Legacy parity: spread orphan tasks over members by position
            member_ids = snapshot.member_ids
            position = next((i for i, uid in enumerate(member_ids) if uid in user.identifiers), None)
            if position is not None:
                orphans = self._unassigned(snapshot, tasks)
                mine.extend(t for i, t in enumerate(orphans) if i % len(member_ids) == position)
        return dedupe_tasks(mine)

    def _visible_tasks(self, snapshot: FacilitySnapshot, identity: UserRecord, role: str, tasks: List[TaskRecord]) -> List[TaskRecord]:
        """Plain members only see work assigned to them."""
        if role != "member":
            return tasks
        return self._member_tasks(snapshot, identity, tasks, redistribute=False)

    # ------------------------------------------------------------------
    # Score stage
    # ------------------------------------------------------------------

    def _member_summary(
        self,
        snapshot: FacilitySnapshot,
        user: UserRecord,
        role: Optional[str],
        tasks: List[TaskRecord],
        window: Dict[str, datetime],
    ) -> Dict[str, Any]:
        now = window["now"]
        all_mine = self._member_tasks(snapshot, user, tasks)
        mine = [t for t in all_mine if is_in_range(t, window["start"], window["end"])]
        counts = breakdown(mine, now)
        current_completed = sum(1 for t in all_mine if completed_in_window(t, window["start"], window["end"], include_end=True))
        previous_completed = sum(1 for t in all_mine if completed_in_window(t, window["prev_start"], window["prev_end"]))
        return {
            "id": user.id,
            "name": user.name,
            "avatarUrl": user.profile_picture,
            "facilityId": snapshot.facility.id,
            "facilityName": snapshot.facility.name,
            "role": role or "member",
            "tasks": {
                "total": counts.total,
                "ongoing": counts.in_progress,
                "completed": counts.completed,
                "pending": counts.pending,
                "overdue": counts.overdue,
            },
            "utilization": counts.utilization,
            "status": member_status(counts),
            "trend": compute_trend(current_completed, previous_completed, counts.total),
        }

    def _member_summaries(self, snapshot: FacilitySnapshot, tasks: List[TaskRecord], window: Dict[str, datetime]) -> List[Dict[str, Any]]:
        rows = []
        seen: Set[str] = set()
        for uid in snapshot.member_ids:
            user = snapshot.users.get(uid)
            if user is None or user.id in seen:
                continue
            seen.add(user.id)
            rows.append(self._member_summary(snapshot, user, snapshot.role_of(uid), tasks, window))
        return rows

    def _facility_summary(self, snapshot: FacilitySnapshot, tasks: List[TaskRecord], now: datetime) -> Dict[str, Any]:
        utilization = compute_utilization(tasks, now)
        return {
            "id": snapshot.facility.id,
            "name": snapshot.facility.name,
            "avgUtilization": utilization,
            "membersCount": len(snapshot.member_ids),
            "projectsCount": len(snapshot.projects),
            "taskCount": len(tasks),
            "status": facility_status(utilization),
            "statusDistribution": status_distribution(tasks, now),
        }

    def _window(self, rng: str) -> Dict[str, datetime]:
        now = self.clock()
        start, end = get_time_range_dates(rng, now)
        prev_start, prev_end = get_previous_range_dates(rng, now)
        return {"now": now, "start": start, "end": end, "prev_start": prev_start, "prev_end": prev_end}

    @staticmethod
    def _meta(rng: str, window: Dict[str, datetime], **extra: Any) -> Dict[str, Any]:
        meta = {
            "generatedAt": window["now"].isoformat(),
            "range": rng,
            "start": window["start"].isoformat(),
            "end": window["end"].isoformat(),
        }
        meta.update(extra)
        return meta

    @staticmethod
    def _sort_members(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(rows, key=lambda r: (-r["utilization"], r["name"].lower(), r["facilityName"] or ""))

    def _task_brief(self, task: TaskRecord, snapshot: FacilitySnapshot, now: datetime) -> Dict[str, Any]:
        project = snapshot.project_by_id.get(task.project_id or "")
        return {
            "id": task.id,
            "title": task.title,
            "projectId": task.project_id,
            "projectName": project.name if project else None,
            "status": task.status,
            "priority": task.priority,
            "dueDate": isoformat(task.due_date),
            "assigneeIds": list(task.assignee_ids or task.assignee_id),
            "classification": classify_task(task, now),
        }

    # ------------------------------------------------------------------
    # Global report
    # ------------------------------------------------------------------

    def empty_global_response(self, rng: str, window: Dict[str, datetime]) -> Dict[str, Any]:
        payload = {
            "meta": self._meta(rng, window),
            "kpis": {
                "activeMembers": 0,
                "totalFacilities": 0,
                "avgUtilization": 0.0,
                "criticalFacilities": 0,
                "overloadedMembers": 0,
                "totalTasks": 0,
                "delta": {"avgUtilization": 0.0, "criticalFacilities": 0},
            },
            "facilities": [],
            "members": [],
            "globalTaskCounts": task_status_counts([], window["now"]),
        }
        payload["insights"] = insights_engine.generate_global_insights(payload)
        return payload

    def _build_global(self, identity_id: str, rng: str) -> Dict[str, Any]:
        window = self._window(rng)
        now = window["now"]
        identity = self.access._identity(identity_id)
        accessible = self.access.accessible_facilities(identity)
        if not accessible:
            return self.empty_global_response(rng, window)

        facilities: List[Dict[str, Any]] = []
        members: List[Dict[str, Any]] = []
        active_members: Set[str] = set()
        all_visible: List[TaskRecord] = []
        previous_utilizations: List[float] = []
        previous_critical = 0

        for facility, role in accessible:
            snapshot = self._load_snapshot(facility)
            visible = self._visible_tasks(snapshot, identity, role, snapshot.tasks)
            in_range = [t for t in visible if is_in_range(t, window["start"], window["end"])]
            all_visible.extend(in_range)
            active_members.update(snapshot.member_ids)

            facilities.append(self._facility_summary(snapshot, in_range, now))
            members.extend(self._member_summaries(snapshot, visible, window))

            previous = [t for t in visible if touches_window(t, window["prev_start"], window["prev_end"])]
            prev_util = compute_utilization(previous, window["prev_end"])
            previous_utilizations.append(prev_util)
            if facility_status(prev_util) == "critical":
                previous_critical += 1

        members = self._sort_members(members)
        avg_utilization = round1(sum(f["avgUtilization"] for f in facilities) / len(facilities))
        previous_avg = round1(sum(previous_utilizations) / len(previous_utilizations))
        critical = sum(1 for f in facilities if f["status"] == "critical")
        global_counts = task_status_counts(dedupe_tasks(all_visible), now)

        payload = {
            "meta": self._meta(rng, window),
            "kpis": {
                "activeMembers": len(active_members),
                "totalFacilities": len(facilities),
                "avgUtilization": avg_utilization,
                "criticalFacilities": critical,
                "overloadedMembers": sum(1 for m in members if m["status"] == "overloaded"),
                "totalTasks": global_counts["total"],
                "delta": {
                    "avgUtilization": round1(avg_utilization - previous_avg),
                    "criticalFacilities": critical - previous_critical,
                },
            },
            "facilities": facilities,
            "members": members,
            "globalTaskCounts": global_counts,
        }
        payload["insights"] = insights_engine.generate_global_insights(payload)
        return payload

    # ------------------------------------------------------------------
    # Facility report
    # ------------------------------------------------------------------

    def _resolve_facility_access(self, facility_id: str, identity: UserRecord) -> FacilityRecord:
        role = self.access.facility_role(facility_id, identity)
        if role is None:
            dangling = any(self.source.membership(ident, facility_id) for ident in identity.identifiers)
            if not dangling:
                raise AnalyticsAccessDenied("Access denied to facility")
        facility = self.source.get_facility(facility_id)
        if facility is None or not facility.is_active:
            raise AnalyticsNotFound("Facility not found")
        return facility

    def _weekly_series(self, tasks: List[TaskRecord], window: Dict[str, datetime]) -> List[Dict[str, Any]]:
        series = []
        week_start = window["start"]
        while week_start <= window["end"]:
            week_end = week_start + timedelta(days=7)
            bucket = [t for t in tasks if touches_window(t, week_start, week_end)]
            series.append({
                "week": week_start.date().isoformat(),
                "utilization": compute_utilization(bucket, window["now"]),
                "taskCount": len(bucket),
            })
            week_start = week_end
        return series

    def _calendar(self, tasks: List[TaskRecord], now: datetime) -> Dict[str, Any]:
        tz = pytz.timezone(self.tz_name)
        local_now = now.astimezone(tz)
        year, month = local_now.year, local_now.month
        by_day: Dict[int, List[TaskRecord]] = {}
        for task in tasks:
            if task.due_date is None:
                continue
            due = task.due_date.astimezone(tz)
            if due.year == year and due.month == month:
                by_day.setdefault(due.day, []).append(task)
        days = []
        for day in range(1, calendar.monthrange(year, month)[1] + 1):
            bucket = by_day.get(day, [])
            counts = breakdown(bucket, now)
            days.append({
                "date": f"{year:04d}-{month:02d}-{day:02d}",
                "taskCount": counts.total,
                "completed": counts.completed,
                "inProgress": counts.in_progress,
                "overdue": counts.overdue,
                "pending": counts.pending,
                "utilization": counts.utilization,
            })
        return {"month": f"{year:04d}-{month:02d}", "days": days}

    def _build_facility(self, facility_id: str, identity_id: str, rng: str) -> Dict[str, Any]:
        window = self._window(rng)
        now = window["now"]
        identity = self.access._identity(identity_id)
        facility = self._resolve_facility_access(facility_id, identity)
        snapshot = self._load_snapshot(facility)

        in_range = [t for t in snapshot.tasks if is_in_range(t, window["start"], window["end"])]
        counts = breakdown(in_range, now)
        pending = [t for t in in_range if classify_task(t, now) == "pending"]
        overdue = [t for t in in_range if classify_task(t, now) == "overdue"]
        members = self._sort_members(self._member_summaries(snapshot, snapshot.tasks, window))

        kpis = {
            "activeMembers": len(snapshot.member_ids),
            "totalTasks": counts.total,
            "completedTasks": counts.completed,
            "inProgressTasks": counts.in_progress,
            "pendingTasks": counts.pending,
            "overdueTasks": counts.overdue,
            "upcomingDeadlines": counts.upcoming,
            "unassignedTasks": len(self._unassigned(snapshot, in_range)),
            "completionRate": round1(counts.completed / counts.total * 100) if counts.total else 0.0,
            "avgUtilization": counts.utilization,
            "status": facility_status(counts.utilization),
            "pendingTaskList": [self._task_brief(t, snapshot, now) for t in pending[: self.task_list_limit]],
            "overdueTaskList": [self._task_brief(t, snapshot, now) for t in overdue[: self.task_list_limit]],
        }
        payload = {
            "meta": self._meta(rng, window, partial=snapshot.failed),
            "facility": {
                "id": facility.id,
                "name": facility.name,
                "ownerId": facility.owner_id,
                "status": facility.status,
                "projects": len(snapshot.projects),
                "membersCount": len(snapshot.member_ids),
            },
            "kpis": kpis,
            "charts": {
                "distribution": status_distribution(in_range, now),
                "taskStatus": task_status_counts(in_range, now),
                "utilizationSeries": self._weekly_series(in_range, window),
                "calendar": self._calendar(snapshot.tasks, now),
            },
            "members": members,
        }
        payload["insights"] = insights_engine.generate_facility_insights(payload)
        return payload

    # ------------------------------------------------------------------
    # Member report
    # ------------------------------------------------------------------

    def _member_profile(
        self, member_id: str, user: Optional[UserRecord], facility_id: Optional[str], access_level: str
    ) -> Dict[str, Any]:
        if user is None:
            return {
                "id": str(member_id),
                "name": "Unknown member",
                "avatarUrl": None,
                "email": None,
                "facilityId": facility_id,
                "facilityName": None,
                "role": "member",
                "capacity": DEFAULT_CAPACITY_HOURS,
                "resolved": False,
            }
        memberships = []
        for ident in user.identifiers:
            memberships.extend(self.source.memberships_for_user(ident))
        chosen = None
        if facility_id:
            chosen = next((m for m in memberships if m.facility_id == str(facility_id)), None)
        elif memberships:
            chosen = memberships[0]
        target_facility_id = facility_id or (chosen.facility_id if chosen else None)
        facility = self.source.get_facility(target_facility_id) if target_facility_id else None
        return {
            "id": user.id,
            "name": user.name,
            "avatarUrl": user.profile_picture,
            "email": user.email if access_level in ("self", "manager") else None,
            "facilityId": target_facility_id,
            "facilityName": facility.name if facility else None,
            "role": chosen.role if chosen else ("owner" if facility and facility.owner_id in user.identifiers else "member"),
            "capacity": DEFAULT_CAPACITY_HOURS,
            "resolved": True,
        }

    def _daily_series(self, tasks: List[TaskRecord], window: Dict[str, datetime]) -> List[Dict[str, Any]]:
        series = []
        day = window["start"].replace(hour=0, minute=0, second=0, microsecond=0)
        while day <= window["end"]:
            next_day = day + timedelta(days=1)
            bucket = [t for t in tasks if touches_window(t, day, next_day)]
            counts = breakdown(bucket, window["now"])
            series.append({
                "date": day.date().isoformat(),
                "utilization": counts.utilization,
                "taskCount": counts.total,
                "completed": counts.completed,
                "ongoing": counts.in_progress,
            })
            day = next_day
        return series

    def _timeline(self, tasks: List[TaskRecord], project_names: Dict[str, str]) -> List[Dict[str, Any]]:
        epoch = datetime.min.replace(tzinfo=pytz.utc)
        recent = sorted(
            tasks,
            key=lambda t: (t.created_at or t.updated_at or epoch, t.id),
            reverse=True,
        )[: self.timeline_limit]
        return [
            {
                "taskId": t.id,
                "title": t.title,
                "projectId": t.project_id,
                "project": project_names.get(t.project_id or "", "No Project"),
                "start": isoformat(t.created_at),
                "end": isoformat(t.due_date or t.created_at),
                "status": t.status,
                "priority": t.priority,
            }
            for t in recent
        ]

    def _live_project_tasks(self, tasks: List[TaskRecord]) -> List[TaskRecord]:
        """Drop tasks whose project is archived or deleted; orphan tasks stay."""
        dead = set()
        for project_id in {t.project_id for t in tasks if t.project_id}:
            project = self.source.get_project(project_id)
            if project is not None and (project.archived or project.deleted_at is not None):
                dead.add(project_id)
        return [t for t in tasks if t.project_id not in dead]

    def _project_names(self, tasks: List[TaskRecord], snapshot: Optional[FacilitySnapshot]) -> Dict[str, str]:
        names = {p.id: p.name for p in snapshot.projects} if snapshot else {}
        for project_id in {t.project_id for t in tasks if t.project_id and t.project_id not in names}:
            try:
                project = self.source.get_project(project_id)
            except SQLAlchemyError as e:
                logger.warning("project_lookup_failed", project_id=project_id, error=str(e))
                continue
            if project:
                names[project.id] = project.name
        return names

    def _build_member(
        self, member_id: str, identity_id: str, role: Optional[str], rng: str, facility_id: Optional[str]
    ) -> Dict[str, Any]:
        window = self._window(rng)
        now = window["now"]
        access_level = self.access.access_level(member_id, identity_id, role)
        user = self.source.resolve_user(member_id)
        if user is None:
            logger.info("member_unresolved", member_id=member_id)
        subject = user or UserRecord(id=str(member_id))
        profile = self._member_profile(member_id, user, facility_id, access_level)

        snapshot: Optional[FacilitySnapshot] = None
        unassigned: Optional[int] = None
        if facility_id:
            facility = self.source.get_facility(facility_id)
            if facility is not None and facility.is_active:
                snapshot = self._load_snapshot(facility)
                all_mine = self._member_tasks(snapshot, subject, snapshot.tasks)
                unassigned = len(self._unassigned(snapshot, [t for t in snapshot.tasks if is_in_range(t, window["start"], window["end"])]))
            else:
                all_mine = []
        else:
            try:
                all_mine = self._live_project_tasks(self.source.tasks_for_assignee(subject.identifiers))
            except SQLAlchemyError as e:
                logger.warning("member_task_fetch_failed", member_id=member_id, error=str(e))
                all_mine = []

        mine = [t for t in all_mine if is_in_range(t, window["start"], window["end"])]
        counts: TaskBreakdown = breakdown(mine, now)
        current_completed = sum(1 for t in all_mine if completed_in_window(t, window["start"], window["end"], include_end=True))
        previous_completed = sum(1 for t in all_mine if completed_in_window(t, window["prev_start"], window["prev_end"]))

        kpis = {
            "totalTasks": counts.total,
            "ongoing": counts.in_progress,
            "completed": counts.completed,
            "pending": counts.pending,
            "overdue": counts.overdue,
            "upcomingDeadlines": counts.upcoming,
            "utilization": counts.utilization,
            "status": member_status(counts),
            "trend": compute_trend(current_completed, previous_completed, counts.total),
            "unassignedTasks": unassigned,
        }
        payload = {
            "meta": self._meta(rng, window, facilityId=facility_id, accessLevel=access_level),
            "member": profile,
            "kpis": kpis,
            "charts": {
                "taskDistribution": {
                    "completed": counts.completed,
                    "ongoing": counts.in_progress,
                    "pending": counts.pending,
                    "overdue": counts.overdue,
                },
                "utilizationSeries": self._daily_series(mine, window),
            },
            "timeline": self._timeline(mine, self._project_names(mine, snapshot)),
        }
        payload["insights"] = insights_engine.generate_member_insights(payload)
        return payload
