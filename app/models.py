import re
from datetime import datetime, timezone
from typing import Literal

from pydantic import field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, DateTime
from sqlmodel import Column, Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


ProjectStatus = Literal["active", "completed", "archived"]
TaskStatus = Literal["todo", "in-progress", "completed"]
TaskPriority = Literal["low", "medium", "high"]

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _strip_required(value, message: str):
    if value is None:
        raise ValueError(message)
    if not isinstance(value, str):
        return value
    value = value.strip()
    if not value:
        raise ValueError(message)
    return value


def _normalize_email(value):
    if not isinstance(value, str):
        return value
    value = value.strip().lower()
    if not EMAIL_PATTERN.match(value):
        raise ValueError("Please add a valid email")
    return value


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(max_length=100)
    email: str = Field(max_length=255, unique=True, index=True)
    hashed_password: str = Field(max_length=255)
    role: str = Field(default="user", max_length=20)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class ProjectMember(SQLModel, table=True):
    """Membership link. The owner always has a row here."""

    __tablename__ = "project_members"

    project_id: int = Field(foreign_key="projects.id", primary_key=True)
    user_id: int = Field(foreign_key="users.id", primary_key=True, index=True)


class TaskAssignee(SQLModel, table=True):
    __tablename__ = "task_assignees"

    task_id: int = Field(foreign_key="tasks.id", primary_key=True)
    user_id: int = Field(foreign_key="users.id", primary_key=True, index=True)


class Project(SQLModel, table=True):
    __tablename__ = "projects"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(max_length=200)
    description: str = Field(default="")
    owner_id: int = Field(foreign_key="users.id", index=True)
    status: str = Field(default="active", max_length=20)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class Task(SQLModel, table=True):
    __tablename__ = "tasks"

    id: int | None = Field(default=None, primary_key=True)
    title: str = Field(max_length=200)
    description: str | None = Field(default=None)
    project_id: int = Field(foreign_key="projects.id", index=True)
    created_by: int = Field(foreign_key="users.id", index=True)
    status: str = Field(default="todo", max_length=20, index=True)
    priority: str = Field(default="medium", max_length=10)
    deadline: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    tags: list[str] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


# ---------------------------------------------------------------------------
# API schemas
# ---------------------------------------------------------------------------


class ApiModel(SQLModel):
    """camelCase on the wire, snake_case in Python. Both spellings are accepted."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


# ---------------------------------------------------------------------------
# Users / auth schemas
# ---------------------------------------------------------------------------


class UserSummary(ApiModel):
    """Identity shown inside project responses"""

    id: int
    name: str
    email: str

    model_config = {"from_attributes": True}


class UserResponse(UserSummary):
    role: str


class RegisterRequest(ApiModel):
    name: str = Field(max_length=100)
    email: str = Field(max_length=255)
    password: str = Field(min_length=6, max_length=128)

    @field_validator("name", mode="before")
    @classmethod
    def name_required(cls, v):
        return _strip_required(v, "Please add a name")

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return _normalize_email(v)


class LoginRequest(ApiModel):
    email: str = Field(max_length=255)
    password: str = Field(min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return _normalize_email(v)


class AuthResponse(ApiModel):
    user: UserResponse
    access_token: str
    token_type: str = "bearer"


class RefreshResponse(ApiModel):
    access_token: str
    token_type: str = "bearer"


# ---------------------------------------------------------------------------
# Project schemas
# ---------------------------------------------------------------------------


class ProjectCreate(ApiModel):
    name: str = Field(max_length=200)
    description: str
    status: ProjectStatus = "active"
    members: list[int] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def name_required(cls, v):
        return _strip_required(v, "Please add a project name")

    @field_validator("description", mode="before")
    @classmethod
    def description_required(cls, v):
        return _strip_required(v, "Please add a description")


class ProjectUpdate(ApiModel):
    """Schema for updating a project - all fields optional"""

    name: str | None = Field(default=None, max_length=200)
    description: str | None = None
    status: ProjectStatus | None = None
    members: list[int] | None = None

    @field_validator("name", mode="before")
    @classmethod
    def name_not_empty(cls, v):
        return _strip_required(v, "Name cannot be empty")

    @field_validator("description", mode="before")
    @classmethod
    def description_not_empty(cls, v):
        return _strip_required(v, "Description cannot be empty")

    @field_validator("status", "members", mode="before")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class ProjectResponse(ApiModel):
    id: int
    name: str
    description: str
    status: ProjectStatus
    owner: UserSummary
    members: list[UserSummary]
    created_at: datetime
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Task schemas
# ---------------------------------------------------------------------------


class TaskBase(ApiModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None)
    status: TaskStatus = "todo"
    priority: TaskPriority = "medium"
    deadline: datetime | None = None
    tags: list[str] = Field(default_factory=list)


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    assigned_to: list[int] = Field(default_factory=list)

    @field_validator("title", mode="before")
    @classmethod
    def title_required(cls, v):
        return _strip_required(v, "Please add a task title")


class TaskUpdate(ApiModel):
    """Schema for updating a task - all fields optional"""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    deadline: datetime | None = None
    assigned_to: list[int] | None = None
    tags: list[str] | None = None

    @field_validator("title", mode="before")
    @classmethod
    def title_not_empty(cls, v):
        return _strip_required(v, "Title cannot be empty")

    @field_validator("status", "priority", "assigned_to", "tags", mode="before")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class TaskResponse(TaskBase):
    """Schema for task responses"""

    id: int
    project_id: int
    created_by: int
    assigned_to: list[int]
    created_at: datetime
    updated_at: datetime | None = None


class Pagination(ApiModel):
    total: int
    page: int
    pages: int


class TaskPage(ApiModel):
    count: int
    pagination: Pagination
    data: list[TaskResponse]


class StatusCount(ApiModel):
    status: str
    count: int


class StatsSummary(ApiModel):
    total_tasks: int
    last_updated: datetime


class TaskStats(ApiModel):
    stats: list[StatusCount]
    summary: StatsSummary
