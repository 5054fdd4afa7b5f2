"""
test_aggregator.py — Global, facility and member reports over the seeded tenant.

See conftest.py for the seeded data. Alpha Works' ten in-range tasks score
5*1.0 + 2*0.8 + 1*1.2 + 2*0.2 = 8.2, i.e. 82.0% utilization.
"""

import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW, at
from nexora.models.models import Facility, Task, UserFacility
from nexora.services.analytics.aggregator import AnalyticsAggregator
from nexora.services.analytics.cache import ReportCache
from nexora.services.analytics.errors import AnalyticsAccessDenied, AnalyticsNotFound


def rows_for(report, user_id):
    return [m for m in report["members"] if m["id"] == user_id]


# ===========================================================================
# Global report
# ===========================================================================

class TestGlobalReport:

    def test_owner_view(self, aggregator):
        report = aggregator.get_global_analytics("u-owner", "user", "4w")

        assert report["meta"]["range"] == "4w"
        assert report["meta"]["generatedAt"] == NOW.isoformat()
        assert [f["id"] for f in report["facilities"]] == ["f-alpha"]

        alpha = report["facilities"][0]
        assert alpha["avgUtilization"] == 82.0
        assert alpha["status"] == "normal"
        assert alpha["taskCount"] == 10
        assert alpha["membersCount"] == 4
        assert alpha["projectsCount"] == 2
        assert alpha["statusDistribution"] == {"balanced": 9, "caution": 0, "overloaded": 1}

        kpis = report["kpis"]
        assert kpis["activeMembers"] == 4
        assert kpis["totalFacilities"] == 1
        assert kpis["avgUtilization"] == 82.0
        assert kpis["criticalFacilities"] == 0
        assert kpis["overloadedMembers"] == 1
        assert kpis["totalTasks"] == 10
        assert kpis["delta"] == {"avgUtilization": -18.0, "criticalFacilities": -1}

        assert report["globalTaskCounts"] == {
            "done": 5, "inProgress": 1, "review": 1, "pending": 2, "overdue": 1, "total": 10,
        }

    def test_member_rows_sorted_and_scored(self, aggregator):
        report = aggregator.get_global_analytics("u-owner", "user", "4w")
        summary = [(m["id"], m["utilization"], m["status"], m["trend"]) for m in report["members"]]
        assert summary == [
            ("u-multi", 100.0, "overloaded", -2),
            ("u-owner", 100.0, "caution", 50),
            ("u-manager", 90.0, "caution", 50),
            ("u-member", 80.0, "caution", 100),
        ]
        mia = rows_for(report, "u-member")[0]
        assert mia["tasks"] == {"total": 5, "ongoing": 1, "completed": 3, "pending": 1, "overdue": 0}
        assert mia["role"] == "member"
        assert mia["facilityName"] == "Alpha Works"

    def test_owner_insights(self, aggregator):
        report = aggregator.get_global_analytics("u-owner", "user", "4w")
        assert [i["id"] for i in report["insights"]] == ["member-overload", "high-utilization"]

    def test_user_in_two_facilities_gets_two_rows(self, aggregator):
        report = aggregator.get_global_analytics("u-multi", "user", "4w")
        rows = rows_for(report, "u-multi")
        assert [(r["facilityId"], r["utilization"]) for r in rows] == [("f-alpha", 100.0), ("f-beta", 50.0)]
        assert report["kpis"]["activeMembers"] == 4
        assert report["kpis"]["avgUtilization"] == 75.0
        assert report["kpis"]["criticalFacilities"] == 1

    def test_member_role_only_sees_own_tasks(self, aggregator):
        report = aggregator.get_global_analytics("u-multi", "user", "4w")
        alpha = next(f for f in report["facilities"] if f["id"] == "f-alpha")
        assert alpha["taskCount"] == 1
        assert alpha["status"] == "critical"
        assert rows_for(report, "u-member")[0]["tasks"]["total"] == 0
        assert report["globalTaskCounts"]["total"] == 3

    def test_no_facilities_is_zeroed_not_error(self, aggregator):
        report = aggregator.get_global_analytics("u-outsider", "user", "4w")
        assert report["facilities"] == []
        assert report["members"] == []
        assert report["kpis"]["totalFacilities"] == 0
        assert report["kpis"]["avgUtilization"] == 0.0
        assert report["globalTaskCounts"]["total"] == 0
        assert len(report["insights"]) == 1

    def test_facility_without_tasks(self, aggregator):
        report = aggregator.get_global_analytics("u-solo", "user", "4w")
        gamma = report["facilities"][0]
        assert gamma["avgUtilization"] == 0.0
        assert rows_for(report, "u-solo")[0]["status"] == "balanced"
        assert [i["id"] for i in report["insights"]] == ["underutilized-operations"]

    def test_failed_facility_read_degrades_to_empty(self, source, cache, monkeypatch):
        original = source.tasks_for_project

        def flaky(project_id):
            if project_id == "p-beta":
                raise OperationalError("SELECT", {}, Exception("timeout"))
            return original(project_id)

        monkeypatch.setattr(source, "tasks_for_project", flaky)
        aggregator = AnalyticsAggregator(source, cache, clock=lambda: NOW)
        report = aggregator.get_global_analytics("u-multi", "user", "4w")
        beta = next(f for f in report["facilities"] if f["id"] == "f-beta")
        assert beta["taskCount"] == 0
        assert beta["avgUtilization"] == 0.0
        alpha = next(f for f in report["facilities"] if f["id"] == "f-alpha")
        assert alpha["taskCount"] == 1

    def test_task_listed_twice_is_counted_once(self, source, cache, monkeypatch):
        original = source.tasks_for_project
        monkeypatch.setattr(source, "tasks_for_project", lambda pid: original(pid) + original(pid))
        aggregator = AnalyticsAggregator(source, cache, clock=lambda: NOW)
        report = aggregator.get_global_analytics("u-owner", "user", "4w")
        assert report["globalTaskCounts"]["total"] == 10
        assert report["facilities"][0]["avgUtilization"] == 82.0


# ===========================================================================
# Facility report
# ===========================================================================

class TestFacilityReport:

    def test_kpis(self, aggregator):
        report = aggregator.get_facility_analytics("f-alpha", "u-member", "user", "4w")
        kpis = report["kpis"]
        assert kpis["activeMembers"] == 4
        assert kpis["totalTasks"] == 10
        assert kpis["completedTasks"] == 5
        assert kpis["inProgressTasks"] == 2
        assert kpis["pendingTasks"] == 2
        assert kpis["overdueTasks"] == 1
        assert kpis["unassignedTasks"] == 1
        assert kpis["completionRate"] == 50.0
        assert kpis["avgUtilization"] == 82.0
        assert [t["id"] for t in kpis["pendingTaskList"]] == ["t09", "t10"]
        assert [t["id"] for t in kpis["overdueTaskList"]] == ["t08"]
        assert kpis["overdueTaskList"][0]["projectName"] == "Website Relaunch"

    def test_facility_block(self, aggregator):
        report = aggregator.get_facility_analytics("f-alpha", "u-member", "user", "4w")
        assert report["facility"] == {
            "id": "f-alpha", "name": "Alpha Works", "ownerId": "u-owner",
            "status": "active", "projects": 2, "membersCount": 4,
        }

    def test_charts(self, aggregator):
        charts = aggregator.get_facility_analytics("f-alpha", "u-owner", "user", "4w")["charts"]
        assert charts["taskStatus"]["total"] == 10
        assert charts["distribution"]["overloaded"] == 1
        assert len(charts["utilizationSeries"]) == 5
        assert charts["utilizationSeries"][0]["week"] == "2026-09-21"

        calendar = charts["calendar"]
        assert calendar["month"] == "2026-10"
        assert len(calendar["days"]) == 31
        day10 = calendar["days"][9]
        assert day10["date"] == "2026-10-10"
        assert day10["taskCount"] == 1
        assert day10["overdue"] == 1
        assert sum(d["taskCount"] for d in calendar["days"]) == 1

    def test_members_and_insights(self, aggregator):
        report = aggregator.get_facility_analytics("f-alpha", "u-owner", "user", "4w")
        assert [m["id"] for m in report["members"]] == ["u-multi", "u-owner", "u-manager", "u-member"]
        assert [i["id"] for i in report["insights"]] == [
            "facility-overload", "facility-high-util", "low-completion-rate",
        ]

    def test_non_member_is_denied(self, aggregator):
        with pytest.raises(AnalyticsAccessDenied):
            aggregator.get_facility_analytics("f-alpha", "u-outsider", "user", "4w")

    def test_unknown_facility_is_denied_before_lookup(self, aggregator):
        with pytest.raises(AnalyticsAccessDenied):
            aggregator.get_facility_analytics("f-missing", "u-owner", "user", "4w")

    def test_deleted_facility_with_membership_is_not_found(self, aggregator):
        with pytest.raises(AnalyticsNotFound):
            aggregator.get_facility_analytics("f-closed", "u-owner", "user", "4w")

    def test_legacy_redistribution_of_unassigned_tasks(self, source):
        aggregator = AnalyticsAggregator(source, ReportCache(), clock=lambda: NOW, redistribute_unassigned=True)
        report = aggregator.get_facility_analytics("f-alpha", "u-owner", "user", "4w")
        owner = rows_for(report, "u-owner")[0]
        assert owner["tasks"]["total"] == 2
        assert owner["utilization"] == 60.0


# ===========================================================================
# Member report
# ===========================================================================

class TestMemberReport:

    def test_facility_scoped_self_view(self, aggregator):
        report = aggregator.get_member_analytics("u-member", "u-member", "user", "4w", "f-alpha")
        assert report["member"]["email"] == "mia@nexora.dev"
        assert report["member"]["facilityName"] == "Alpha Works"
        assert report["member"]["role"] == "member"
        assert report["meta"]["accessLevel"] == "self"

        kpis = report["kpis"]
        assert kpis["totalTasks"] == 5
        assert kpis["completed"] == 3
        assert kpis["ongoing"] == 1
        assert kpis["pending"] == 1
        assert kpis["overdue"] == 0
        assert kpis["utilization"] == 80.0
        assert kpis["status"] == "caution"
        assert kpis["trend"] == 100
        assert kpis["unassignedTasks"] == 1
        assert [i["id"] for i in report["insights"]] == ["increasing-workload"]

    def test_timeline_and_charts(self, aggregator):
        report = aggregator.get_member_analytics("u-member", "u-member", "user", "4w", "f-alpha")
        assert [t["taskId"] for t in report["timeline"]] == ["t09", "t06", "t03", "t02", "t01"]
        assert {t["project"] for t in report["timeline"]} == {"Website Relaunch"}
        assert report["charts"]["taskDistribution"] == {"completed": 3, "ongoing": 1, "pending": 1, "overdue": 0}
        assert len(report["charts"]["utilizationSeries"]) == 29

    def test_lookup_by_external_auth_id(self, aggregator):
        report = aggregator.get_member_analytics("fb-mia", "u-member", "user", "4w", "f-alpha")
        assert report["member"]["id"] == "u-member"
        assert report["kpis"]["totalTasks"] == 5

    def test_cross_facility_fallback(self, aggregator):
        report = aggregator.get_member_analytics("u-member", "u-member", "user", "4w")
        kpis = report["kpis"]
        assert kpis["totalTasks"] == 4
        assert kpis["utilization"] == 95.0
        assert kpis["unassignedTasks"] is None

    def test_peer_view_hides_email(self, aggregator):
        report = aggregator.get_member_analytics("u-member", "u-multi", "user", "4w", "f-alpha")
        assert report["member"]["email"] is None
        assert report["meta"]["accessLevel"] == "peer"

    def test_manager_view_shows_email(self, aggregator):
        report = aggregator.get_member_analytics("u-member", "u-manager", "user", "4w", "f-alpha")
        assert report["member"]["email"] == "mia@nexora.dev"

    def test_unknown_member_degrades_to_stub(self, aggregator):
        report = aggregator.get_member_analytics("ghost-123", "u-owner", "user", "4w")
        assert report["member"]["name"] == "Unknown member"
        assert report["member"]["resolved"] is False
        assert report["kpis"]["totalTasks"] == 0
        assert report["timeline"] == []
        assert [i["id"] for i in report["insights"]] == ["stable-performance"]

    def test_deleted_facility_scope_yields_empty_kpis(self, aggregator):
        report = aggregator.get_member_analytics("u-owner", "u-owner", "user", "4w", "f-closed")
        assert report["kpis"]["totalTasks"] == 0
        assert report["kpis"]["utilization"] == 0.0


# ===========================================================================
# Identity and range edges
# ===========================================================================

class TestMixedMemberIds:

    @pytest.fixture
    def mixed(self, seeded):
        seeded.add(Facility(id="f-mix", name="Mixed Yard", owner_id="u-solo",
                            members=["u-solo", "fb-oscar"], created_at=at(7, 5)))
        seeded.flush()
        seeded.add(UserFacility(id="m8", user_id="u-outsider", facility_id="f-mix", role="member", created_at=at(8, 8)))
        seeded.commit()
        return seeded

    def test_member_listed_under_both_ids_counts_once(self, mixed, aggregator):
        report = aggregator.get_global_analytics("u-solo", "user", "4w")
        mix = next(f for f in report["facilities"] if f["id"] == "f-mix")
        assert mix["membersCount"] == 2
        assert sorted(m["id"] for m in report["members"] if m["facilityId"] == "f-mix") == ["u-outsider", "u-solo"]
        assert report["kpis"]["activeMembers"] == 2

    def test_facility_report_agrees_with_member_rows(self, mixed, aggregator):
        report = aggregator.get_facility_analytics("f-mix", "u-solo", "user", "4w")
        assert report["kpis"]["activeMembers"] == 2
        assert report["facility"]["membersCount"] == 2
        assert len(report["members"]) == 2
        assert rows_for(report, "u-outsider")[0]["role"] == "member"


class TestUtilizationSeries:

    def test_tasks_outside_range_stay_out_of_last_week(self, seeded, aggregator):
        seeded.add(Task(id="t15", project_id="p-web", title="Task t15", status="done",
                        created_at=at(8, 1), updated_at=at(8, 2), due_date=at(10, 22)))
        seeded.commit()

        series = aggregator.get_facility_analytics("f-alpha", "u-owner", "user", "4w")["charts"]["utilizationSeries"]
        assert series[-1]["week"] == "2026-10-19"
        assert series[-1]["taskCount"] == 0
