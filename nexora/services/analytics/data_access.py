"""
Read-only data access for the analytics engine.

``AnalyticsDataSource`` wraps a SQLAlchemy session and returns immutable
records. Timestamps are normalized on the way out so nothing downstream
ever compares raw stored values.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import String, cast, or_
from sqlalchemy.orm import Session

from ...models.models import Facility, Project, Task, User, UserFacility
from ...utils.dates import to_datetime


def _field(source: Any, *names: str, default: Any = None) -> Any:
    """Read the first present attribute/key among ``names`` (snake or camel case)."""
    for name in names:
        if isinstance(source, dict):
            if name in source and source[name] is not None:
                return source[name]
        else:
            value = getattr(source, name, None)
            if value is not None:
                return value
    return default


def _json_list_has(column, values: Sequence[str]):
    """SQL prefilter: the JSON-encoded list text contains one of ``values`` as an element."""
    clauses = []
    for value in values:
        needle = json.dumps(str(value)).replace("!", "!!").replace("%", "!%").replace("_", "!_")
        clauses.append(cast(column, String).like(f"%{needle}%", escape="!"))
    return or_(*clauses)


def _str_tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple, set)):
        return tuple(str(v) for v in value if v not in (None, ""))
    if value == "":
        return ()
    return (str(value),)


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: Optional[str] = None
    firebase_uid: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    profile_picture: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def from_source(cls, source: Any) -> "UserRecord":
        return cls(
            id=str(_field(source, "id")),
            email=_field(source, "email"),
            firebase_uid=_field(source, "firebase_uid", "firebaseUid"),
            first_name=_field(source, "first_name", "firstName"),
            last_name=_field(source, "last_name", "lastName"),
            display_name=_field(source, "display_name", "displayName"),
            profile_picture=_field(source, "profile_picture", "profilePicture"),
            role=_field(source, "role"),
        )

    @property
    def name(self) -> str:
        if self.display_name:
            return self.display_name
        composed = " ".join(part for part in [self.first_name or "", self.last_name or ""] if part).strip()
        return composed or self.email or self.id

    @property
    def identifiers(self) -> Tuple[str, ...]:
        return tuple(i for i in (self.id, self.firebase_uid) if i)


@dataclass(frozen=True)
class FacilityRecord:
    id: str
    name: str
    owner_id: Optional[str] = None
    members: Tuple[str, ...] = ()
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_source(cls, source: Any) -> "FacilityRecord":
        return cls(
            id=str(_field(source, "id")),
            name=_field(source, "name", default="Unnamed facility"),
            owner_id=_field(source, "owner_id", "ownerId"),
            members=_str_tuple(_field(source, "members")),
            status=_field(source, "status"),
            created_at=to_datetime(_field(source, "created_at", "createdAt")),
            deleted_at=to_datetime(_field(source, "deleted_at", "deletedAt")),
        )

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None and (self.status or "active") != "deleted"


@dataclass(frozen=True)
class MembershipRecord:
    id: str
    user_id: str
    facility_id: str
    role: str = "member"
    created_at: Optional[datetime] = None

    @classmethod
    def from_source(cls, source: Any) -> "MembershipRecord":
        return cls(
            id=str(_field(source, "id")),
            user_id=str(_field(source, "user_id", "userId")),
            facility_id=str(_field(source, "facility_id", "facilityId")),
            role=(_field(source, "role", default="member") or "member").lower(),
            created_at=to_datetime(_field(source, "created_at", "createdAt", "joined_at", "joinedAt")),
        )


@dataclass(frozen=True)
class ProjectRecord:
    id: str
    facility_id: Optional[str]
    name: str
    assignees: Tuple[str, ...] = ()
    status: Optional[str] = None
    archived: bool = False
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_source(cls, source: Any) -> "ProjectRecord":
        return cls(
            id=str(_field(source, "id")),
            facility_id=_field(source, "facility_id", "facilityId"),
            name=_field(source, "name", default="Untitled project"),
            assignees=_str_tuple(_field(source, "assignees")),
            status=_field(source, "status"),
            archived=bool(_field(source, "archived", default=False)),
            deleted_at=to_datetime(_field(source, "deleted_at", "deletedAt")),
        )


@dataclass(frozen=True)
class TaskRecord:
    id: str
    project_id: Optional[str] = None
    title: str = ""
    assignee_id: Tuple[str, ...] = ()
    assignee_ids: Tuple[str, ...] = ()
    status: str = "todo"
    priority: Optional[str] = None
    due_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_source(cls, source: Any) -> "TaskRecord":
        return cls(
            id=str(_field(source, "id")),
            project_id=_field(source, "project_id", "projectId"),
            title=_field(source, "title", default=""),
            assignee_id=_str_tuple(_field(source, "assignee_id", "assigneeId")),
            assignee_ids=_str_tuple(_field(source, "assignee_ids", "assigneeIds")),
            status=str(_field(source, "status", default="todo")),
            priority=_field(source, "priority"),
            due_date=to_datetime(_field(source, "due_date", "dueDate")),
            created_at=to_datetime(_field(source, "created_at", "createdAt")),
            updated_at=to_datetime(_field(source, "updated_at", "updatedAt")),
            deleted_at=to_datetime(_field(source, "deleted_at", "deletedAt")),
        )

    @property
    def has_assignee(self) -> bool:
        return bool(self.assignee_id or self.assignee_ids)


def dedupe_tasks(tasks: Iterable[TaskRecord]) -> List[TaskRecord]:
    """Drop repeated task ids and soft-deleted tasks; result is ordered by id."""
    seen: Dict[str, TaskRecord] = {}
    for task in tasks:
        if task.deleted_at is not None:
            continue
        seen.setdefault(task.id, task)
    return [seen[k] for k in sorted(seen)]


def match_task_assignee(
    task: TaskRecord,
    member: UserRecord,
    project_assignees: Sequence[str] = (),
) -> Optional[str]:
    """Return which assignment rule ties ``task`` to ``member``, or None."""
    if member.id in task.assignee_ids:
        return "assignee_ids"
    if member.id in task.assignee_id:
        return "assignee_id"
    if member.firebase_uid and (
        member.firebase_uid in task.assignee_id or member.firebase_uid in task.assignee_ids
    ):
        return "auth_id"
    if not task.has_assignee and any(i in project_assignees for i in member.identifiers):
        return "project"
    return None


@dataclass
class FacilitySnapshot:
    """Everything the scorer needs for one facility, fetched up front."""

    facility: FacilityRecord
    memberships: List[MembershipRecord] = field(default_factory=list)
    projects: List[ProjectRecord] = field(default_factory=list)
    tasks: List[TaskRecord] = field(default_factory=list)
    users: Dict[str, UserRecord] = field(default_factory=dict)
    failed: bool = False

    def canonical_id(self, uid: str) -> str:
        """Internal id of a resolved user; unresolved ids pass through."""
        user = self.users.get(uid)
        return user.id if user else uid

    @property
    def raw_member_ids(self) -> List[str]:
        return [m.user_id for m in self.memberships] + [self.facility.owner_id or ""] + list(self.facility.members)

    @property
    def member_ids(self) -> List[str]:
        """Membership records, then the owner, then the facility's member list; de-duplicated by canonical id."""
        ordered: List[str] = []
        for uid in self.raw_member_ids:
            if not uid:
                continue
            uid = self.canonical_id(uid)
            if uid not in ordered:
                ordered.append(uid)
        return ordered

    def role_of(self, user_id: str) -> Optional[str]:
        user_id = self.canonical_id(user_id)
        for m in self.memberships:
            if self.canonical_id(m.user_id) == user_id:
                return m.role
        if self.facility.owner_id and self.canonical_id(self.facility.owner_id) == user_id:
            return "owner"
        if any(self.canonical_id(uid) == user_id for uid in self.facility.members):
            return "member"
        return None

    @property
    def project_by_id(self) -> Dict[str, ProjectRecord]:
        return {p.id: p for p in self.projects}


class AnalyticsDataSource:
    """Thin per-entity read wrappers over the ORM session."""

    def __init__(self, db: Session):
        self.db = db

    # Users

    def get_user(self, user_id: Optional[str]) -> Optional[UserRecord]:
        if not user_id:
            return None
        row = self.db.query(User).filter(User.id == str(user_id)).first()
        return UserRecord.from_source(row) if row else None

    def get_user_by_firebase_uid(self, firebase_uid: Optional[str]) -> Optional[UserRecord]:
        if not firebase_uid:
            return None
        row = self.db.query(User).filter(User.firebase_uid == str(firebase_uid)).first()
        return UserRecord.from_source(row) if row else None

    def get_user_by_email(self, email: Optional[str]) -> Optional[UserRecord]:
        if not email or "@" not in str(email):
            return None
        row = self.db.query(User).filter(User.email == str(email).strip().lower()).first()
        return UserRecord.from_source(row) if row else None

    def resolve_user(self, candidate: Optional[str]) -> Optional[UserRecord]:
        """Canonical user for an internal id, an external auth id, or an email."""
        if not candidate:
            return None
        return (
            self.get_user(candidate)
            or self.get_user_by_firebase_uid(candidate)
            or self.get_user_by_email(candidate)
        )

    def get_users(self, user_ids: Iterable[str]) -> Dict[str, UserRecord]:
        ids = sorted({str(i) for i in user_ids if i})
        if not ids:
            return {}
        rows = self.db.query(User).filter(or_(User.id.in_(ids), User.firebase_uid.in_(ids))).all()
        result: Dict[str, UserRecord] = {}
        for row in rows:
            record = UserRecord.from_source(row)
            for ident in record.identifiers:
                result[ident] = record
        return result

    # Facilities and memberships

    def get_facility(self, facility_id: Optional[str]) -> Optional[FacilityRecord]:
        if not facility_id:
            return None
        row = self.db.query(Facility).filter(Facility.id == str(facility_id)).first()
        return FacilityRecord.from_source(row) if row else None

    def facilities_for_member(self, user_id: str) -> List[FacilityRecord]:
        """Facilities owned by ``user_id`` or listing it in ``members``."""
        rows = (
            self.db.query(Facility)
            .filter(Facility.deleted_at.is_(None))
            .filter(or_(Facility.owner_id == user_id, _json_list_has(Facility.members, [user_id])))
            .order_by(Facility.created_at, Facility.id)
            .all()
        )
        records = [FacilityRecord.from_source(r) for r in rows]
        return [f for f in records if f.owner_id == user_id or user_id in f.members]

    def memberships_for_user(self, user_id: str) -> List[MembershipRecord]:
        rows = (
            self.db.query(UserFacility)
            .filter(UserFacility.user_id == str(user_id))
            .order_by(UserFacility.created_at, UserFacility.id)
            .all()
        )
        return [MembershipRecord.from_source(r) for r in rows]

    def memberships_for_facility(self, facility_id: str) -> List[MembershipRecord]:
        rows = (
            self.db.query(UserFacility)
            .filter(UserFacility.facility_id == str(facility_id))
            .order_by(UserFacility.created_at, UserFacility.id)
            .all()
        )
        return [MembershipRecord.from_source(r) for r in rows]

    def membership(self, user_id: str, facility_id: str) -> Optional[MembershipRecord]:
        row = (
            self.db.query(UserFacility)
            .filter(UserFacility.user_id == str(user_id), UserFacility.facility_id == str(facility_id))
            .first()
        )
        return MembershipRecord.from_source(row) if row else None

    # Projects and tasks

    def projects_for_facility(self, facility_id: str, include_archived: bool = False) -> List[ProjectRecord]:
        query = self.db.query(Project).filter(
            Project.facility_id == str(facility_id),
            Project.deleted_at.is_(None),
        )
        if not include_archived:
            query = query.filter(Project.archived.is_(False))
        return [ProjectRecord.from_source(r) for r in query.order_by(Project.created_at, Project.id).all()]

    def get_project(self, project_id: Optional[str]) -> Optional[ProjectRecord]:
        if not project_id:
            return None
        row = self.db.query(Project).filter(Project.id == str(project_id)).first()
        return ProjectRecord.from_source(row) if row else None

    def tasks_for_project(self, project_id: str) -> List[TaskRecord]:
        rows = (
            self.db.query(Task)
            .filter(Task.project_id == str(project_id), Task.deleted_at.is_(None))
            .all()
        )
        return [TaskRecord.from_source(r) for r in rows]

    def tasks_for_assignee(self, identifiers: Sequence[str]) -> List[TaskRecord]:
        """Cross-facility lookup by direct assignee, used when no facility scope is given."""
        idents = [str(i) for i in identifiers if i]
        if not idents:
            return []
        direct = (
            self.db.query(Task)
            .filter(Task.deleted_at.is_(None), Task.assignee_id.in_(idents))
            .all()
        )
        multi = (
            self.db.query(Task)
            .filter(Task.deleted_at.is_(None), _json_list_has(Task.assignee_ids, idents))
            .all()
        )
        records = [TaskRecord.from_source(r) for r in direct]
        records += [
            t for t in (TaskRecord.from_source(r) for r in multi)
            if any(i in t.assignee_ids for i in idents)
        ]
        return dedupe_tasks(records)
