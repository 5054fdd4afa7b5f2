"""
test_access.py — Who may view whose member analytics.
"""

from sqlalchemy.exc import OperationalError

from conftest import at
from nexora.models.models import Facility, Task

from nexora.services.analytics.access import AccessResolver
from nexora.services.analytics.data_access import TaskRecord, UserRecord, match_task_assignee


def test_self_access_always_granted(source):
    resolver = AccessResolver(source)
    assert resolver.can_access_member_analytics("u-outsider", "u-outsider")
    assert resolver.can_access_member_analytics("fb-oscar", "u-outsider")


def test_any_facility_member_may_view(source):
    resolver = AccessResolver(source)
    assert resolver.can_access_member_analytics("u-solo", "u-member")


def test_outsider_is_denied(source):
    resolver = AccessResolver(source)
    assert not resolver.can_access_member_analytics("u-member", "u-outsider")
    assert not resolver.can_access_member_analytics("nobody", "u-outsider")


def test_identity_can_be_external_auth_id(source):
    resolver = AccessResolver(source)
    assert resolver.can_access_member_analytics("u-owner", "fb-mia")


def test_accessible_facilities_skip_deleted(source):
    resolver = AccessResolver(source)
    found = resolver.accessible_facilities(source.resolve_user("u-owner"))
    assert [(f.id, role) for f, role in found] == [("f-alpha", "owner")]


def test_accessible_facilities_for_multi_facility_user(source):
    resolver = AccessResolver(source)
    found = resolver.accessible_facilities(source.resolve_user("u-multi"))
    assert [(f.id, role) for f, role in found] == [("f-alpha", "member"), ("f-beta", "owner")]


def test_access_levels(source):
    resolver = AccessResolver(source)
    assert resolver.access_level("u-member", "u-member") == "self"
    assert resolver.access_level("u-member", "u-manager") == "manager"
    assert resolver.access_level("u-member", "u-owner") == "manager"
    assert resolver.access_level("u-member", "u-multi") == "peer"
    assert resolver.access_level("u-member", "u-outsider") == "none"


def test_read_failure_denies(source, monkeypatch):
    def boom(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("db down"))

    monkeypatch.setattr(source, "memberships_for_user", boom)
    resolver = AccessResolver(source)
    assert resolver.can_access_member_analytics("u-owner", "u-manager") is False
    assert resolver._identity("u-manager") == source.resolve_user("u-manager")
    assert resolver._identity("ghost") == UserRecord(id="ghost")


class TestListMembershipLookups:

    def test_member_list_match_is_exact(self, seeded, source):
        seeded.add_all([
            Facility(id="f-near", name="Near Miss", owner_id="u-solo", members=["u-multi-2", "u_multi"], created_at=at(7, 6)),
            Facility(id="f-pct", name="Percent", owner_id="u-solo", members=["u-%"], created_at=at(7, 7)),
        ])
        seeded.commit()
        assert [f.id for f in source.facilities_for_member("u-multi")] == ["f-alpha", "f-beta"]
        assert [f.id for f in source.facilities_for_member("u-%")] == ["f-pct"]

    def test_owned_facility_without_member_list(self, seeded, source):
        seeded.add(Facility(id="f-bare", name="Bare", owner_id="u-outsider", members=None, created_at=at(7, 8)))
        seeded.commit()
        assert [f.id for f in source.facilities_for_member("u-outsider")] == ["f-bare"]

    def test_multi_assignee_tasks_by_identifier(self, seeded, source):
        seeded.add(Task(id="t16", project_id="p-web", title="Task t16", status="todo",
                        assignee_ids=["u-owner-2"], created_at=at(10, 12)))
        seeded.commit()
        assert [t.id for t in source.tasks_for_assignee(["u-owner", "fb-owner"])] == ["t05"]
        assert [t.id for t in source.tasks_for_assignee(["u-owner-2"])] == ["t16"]


class TestAssigneeMatching:

    member = UserRecord(id="u-member", firebase_uid="fb-mia")

    def test_direct_rungs_in_order(self):
        assert match_task_assignee(TaskRecord(id="a", assignee_ids=("u-member",)), self.member) == "assignee_ids"
        assert match_task_assignee(TaskRecord(id="b", assignee_id=("u-member",)), self.member) == "assignee_id"
        assert match_task_assignee(TaskRecord(id="c", assignee_id=("fb-mia",)), self.member) == "auth_id"

    def test_project_rung_only_for_unassigned_tasks(self):
        unassigned = TaskRecord(id="d")
        reassigned = TaskRecord(id="e", assignee_id=("u-manager",))
        assert match_task_assignee(unassigned, self.member, ("u-member",)) == "project"
        assert match_task_assignee(reassigned, self.member, ("u-member",)) is None
