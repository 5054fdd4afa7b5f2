import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def str_pk() -> Mapped[str]:
    # Ids are opaque strings so records imported from the hosted document store keep their keys
    return mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = str_pk()
    firebase_uid: Mapped[Optional[str]] = mapped_column(String(128), unique=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    profile_picture: Mapped[Optional[str]] = mapped_column(String(1000))
    role: Mapped[str] = mapped_column(String(50), default="user")  # platform-level role carried in the token
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class Facility(Base):
    __tablename__ = "facilities"

    id: Mapped[str] = str_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    members: Mapped[Optional[list]] = mapped_column(JSON, default=list)  # user ids; owner is always included
    status: Mapped[Optional[str]] = mapped_column(String(50), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class UserFacility(Base):
    __tablename__ = "user_facilities"
    __table_args__ = (
        UniqueConstraint("user_id", "facility_id", name="uq_user_facility"),
    )

    id: Mapped[str] = str_pk()
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    facility_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(20), default="member")  # owner|manager|member|guest
    joined_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = str_pk()
    facility_id: Mapped[str] = mapped_column(String(64), ForeignKey("facilities.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    assignees: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    status: Mapped[Optional[str]] = mapped_column(String(50), default="active")
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[str] = str_pk()
    project_id: Mapped[Optional[str]] = mapped_column(String(64), ForeignKey("projects.id", ondelete="SET NULL"), index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    # Either an internal user id or an external auth id, depending on which client created the task
    assignee_id: Mapped[Optional[str]] = mapped_column(String(128), index=True)
    assignee_ids: Mapped[Optional[list]] = mapped_column(JSON)
    creator_id: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(50), default="todo", index=True)  # todo|in-progress|review|completed
    priority: Mapped[str] = mapped_column(String(20), default="medium")  # low|medium|high|urgent
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, index=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


Index("ix_tasks_project_deleted", Task.project_id, Task.deleted_at)
