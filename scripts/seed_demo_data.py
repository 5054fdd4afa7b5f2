"""
Seed the local database with a demo tenant for the analytics dashboards.

Usage:
  python scripts/seed_demo_data.py

This script is idempotent: running it multiple times upserts the same
records keyed on email (users), name (facilities, projects) and title (tasks).
"""

from datetime import datetime, timedelta, timezone

from nexora.db import init_db, session_scope
from nexora.models.models import Facility, Project, Task, User, UserFacility


def ensure_user(session, email: str, first_name: str, last_name: str, firebase_uid: str, role: str = "user") -> User:
    user = session.query(User).filter(User.email == email).first()
    if user:
        user.first_name = first_name
        user.last_name = last_name
        session.add(user)
        session.flush()
        return user
    user = User(
        email=email,
        first_name=first_name,
        last_name=last_name,
        firebase_uid=firebase_uid,
        role=role,
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )
    session.add(user)
    session.flush()
    return user


def ensure_facility(session, name: str, owner: User, members: list[User]) -> Facility:
    facility = session.query(Facility).filter(Facility.name == name).first()
    member_ids = [owner.id] + [m.id for m in members if m.id != owner.id]
    if facility:
        facility.owner_id = owner.id
        facility.members = member_ids
        session.add(facility)
        session.flush()
        return facility
    facility = Facility(name=name, owner_id=owner.id, members=member_ids, status="active")
    session.add(facility)
    session.flush()
    return facility


def ensure_membership(session, user: User, facility: Facility, role: str) -> UserFacility:
    link = (
        session.query(UserFacility)
        .filter(UserFacility.user_id == user.id, UserFacility.facility_id == facility.id)
        .first()
    )
    if link:
        link.role = role
        session.add(link)
        session.flush()
        return link
    link = UserFacility(user_id=user.id, facility_id=facility.id, role=role)
    session.add(link)
    session.flush()
    return link


def ensure_project(session, facility: Facility, name: str, assignees: list[User]) -> Project:
    project = (
        session.query(Project)
        .filter(Project.facility_id == facility.id, Project.name == name)
        .first()
    )
    if project:
        project.assignees = [u.id for u in assignees]
        session.add(project)
        session.flush()
        return project
    project = Project(facility_id=facility.id, name=name, assignees=[u.id for u in assignees], created_by=facility.owner_id)
    session.add(project)
    session.flush()
    return project


def ensure_task(session, project: Project, title: str, assignee: User | None, status: str, due_in_days: int | None, age_days: int) -> Task:
    now = datetime.now(timezone.utc)
    task = session.query(Task).filter(Task.project_id == project.id, Task.title == title).first()
    if task is None:
        task = Task(project_id=project.id, title=title)
    task.assignee_id = assignee.id if assignee else None
    task.status = status
    task.due_date = now + timedelta(days=due_in_days) if due_in_days is not None else None
    task.created_at = now - timedelta(days=age_days)
    task.updated_at = now - timedelta(days=max(age_days - 2, 0))
    session.add(task)
    session.flush()
    return task


def main():
    init_db()
    with session_scope() as session:
        ada = ensure_user(session, "ada@nexora.dev", "Ada", "Lovelace", "fb-ada", role="admin")
        grace = ensure_user(session, "grace@nexora.dev", "Grace", "Hopper", "fb-grace")
        alan = ensure_user(session, "alan@nexora.dev", "Alan", "Turing", "fb-alan")
        katherine = ensure_user(session, "katherine@nexora.dev", "Katherine", "Johnson", "fb-katherine")

        hq = ensure_facility(session, "Nexora HQ", ada, [grace, alan])
        lab = ensure_facility(session, "Research Lab", grace, [katherine, alan])

        ensure_membership(session, ada, hq, "owner")
        ensure_membership(session, grace, hq, "manager")
        ensure_membership(session, alan, hq, "member")
        ensure_membership(session, grace, lab, "owner")
        ensure_membership(session, katherine, lab, "member")
        ensure_membership(session, alan, lab, "member")

        website = ensure_project(session, hq, "Website Relaunch", [grace, alan])
        ops = ensure_project(session, hq, "Ops Runbook", [])
        orbit = ensure_project(session, lab, "Orbit Simulation", [katherine])

        ensure_task(session, website, "Design landing page", grace, "completed", -3, 20)
        ensure_task(session, website, "Implement checkout", alan, "in-progress", 4, 10)
        ensure_task(session, website, "Fix broken links", alan, "todo", -2, 12)
        ensure_task(session, website, "Write release notes", None, "todo", 9, 3)
        ensure_task(session, ops, "Document on-call rota", ada, "review", 2, 6)
        ensure_task(session, ops, "Rotate credentials", None, "todo", None, 1)
        ensure_task(session, orbit, "Validate trajectory model", katherine, "done", -8, 25)
        ensure_task(session, orbit, "Tune integrator", katherine, "in_progress", 6, 9)
        ensure_task(session, orbit, "Review lab safety", alan, "pending", 1, 2)

    print("Demo tenant ready: 4 users, 2 facilities, 3 projects, 9 tasks.")


if __name__ == "__main__":
    main()
