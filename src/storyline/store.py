from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Float, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DONE_STATUSES = {"done", "closed", "completed"}
BLOCKED_STATUSES = {"blocked"}


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, default="")
    displayName: Mapped[str] = mapped_column(String, default="")
    theme: Mapped[str] = mapped_column(String, default="system")
    selectedProjectId: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    ownerId: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    # JSON string: projectStartDate, workdays, holidays, theme
    settings: Mapped[str] = mapped_column(Text, default="{}")
    createdAt: Mapped[str] = mapped_column(String)
    updatedAt: Mapped[str] = mapped_column(String)


class ProjectAccess(Base):
    __tablename__ = "project_access"

    userId: Mapped[str] = mapped_column(String, ForeignKey("users.id"), primary_key=True)
    projectId: Mapped[str] = mapped_column(
        String, ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True
    )
    accessLevel: Mapped[str] = mapped_column(String, default="read")


class UserStory(Base):
    __tablename__ = "user_stories"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    projectId: Mapped[str] = mapped_column(
        String, ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    order: Mapped[int] = mapped_column(Integer, default=0)
    epic: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    userRole: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    # JSON list of strings
    acceptanceCriteria: Mapped[str] = mapped_column(Text, default="[]")
    priority: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    estimation: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    justification: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    estimatedStartDate: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    estimatedEndDate: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    dependency: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="todo")
    kanbanOrder: Mapped[int] = mapped_column(Integer, default=0)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    blockedSince: Mapped[Optional[str]] = mapped_column(String, nullable=True)


STORY_FIELDS = (
    "order", "epic", "userRole", "title", "acceptanceCriteria", "priority",
    "estimation", "justification", "estimatedStartDate", "estimatedEndDate",
    "dependency", "status", "kanbanOrder", "comment", "blockedSince",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _project_dict(p: Project, access_level: str | None = None) -> dict[str, Any]:
    data = {
        "id": p.id,
        "name": p.name,
        "ownerId": p.ownerId,
        "settings": json.loads(p.settings or "{}"),
        "createdAt": p.createdAt,
        "updatedAt": p.updatedAt,
    }
    if access_level is not None:
        data["accessLevel"] = access_level
    return data


def _story_dict(s: UserStory) -> dict[str, Any]:
    data = {"id": s.id, "projectId": s.projectId}
    for name in STORY_FIELDS:
        data[name] = getattr(s, name)
    data["acceptanceCriteria"] = json.loads(s.acceptanceCriteria or "[]")
    return data


class StoryStore:
    """Projects and user stories over SQLAlchemy.

    Every method opens its own short session, so instances can be
    shared between worker threads.

    Args:
        url: SQLAlchemy database URL.
    """

    def __init__(self, url: str = "sqlite:///storyline.sqlite"):
        kwargs: dict[str, Any] = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, otherwise each checkout sees an empty database
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        Base.metadata.create_all(self.engine)
        self._Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info(f"Store ready at {self.engine.url.render_as_string(hide_password=True)}")

    @contextmanager
    def session(self):
        sess: Session = self._Session()
        try:
            yield sess
            sess.commit()
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()

    # ------------------------------------------------------------------
    # Users and projects
    # ------------------------------------------------------------------

    def ensure_user(self, user_id: str, email: str = "", display_name: str = "") -> None:
        with self.session() as sess:
            if sess.get(User, user_id) is None:
                sess.add(User(id=user_id, email=email, displayName=display_name))

    def create_project(self, name: str, owner_id: str, settings: dict | None = None) -> str:
        self.ensure_user(owner_id)
        project_id = uuid.uuid4().hex
        now = _now()
        with self.session() as sess:
            sess.add(Project(
                id=project_id, name=name, ownerId=owner_id,
                settings=json.dumps(settings or {}), createdAt=now, updatedAt=now,
            ))
            sess.flush()
            sess.add(ProjectAccess(userId=owner_id, projectId=project_id, accessLevel="owner"))
        return project_id

    def list_projects(self, user_id: str | None = None) -> list[dict[str, Any]]:
        """Projects reachable through an access row, optionally for one user."""
        stmt = select(Project, ProjectAccess.accessLevel).join(
            ProjectAccess, ProjectAccess.projectId == Project.id
        )
        if user_id is not None:
            stmt = stmt.where(ProjectAccess.userId == user_id)
        with self.session() as sess:
            seen: dict[str, dict] = {}
            for project, level in sess.execute(stmt.order_by(Project.createdAt)):
                seen.setdefault(project.id, _project_dict(project, level if user_id else None))
            return list(seen.values())

    def get_project(self, project_id: str) -> dict[str, Any] | None:
        with self.session() as sess:
            project = sess.get(Project, project_id)
            return _project_dict(project) if project else None

    # ------------------------------------------------------------------
    # User stories
    # ------------------------------------------------------------------

    def list_user_stories(self, project_id: str) -> list[dict[str, Any]]:
        stmt = (
            select(UserStory)
            .where(UserStory.projectId == project_id)
            .order_by(UserStory.order, UserStory.id)
        )
        with self.session() as sess:
            return [_story_dict(s) for s in sess.scalars(stmt)]

    def create_user_story(self, project_id: str, **fields: Any) -> str:
        unknown = set(fields) - set(STORY_FIELDS) - {"id"}
        if unknown:
            raise ValueError(f"unknown story fields: {sorted(unknown)}")
        if not fields.get("title"):
            raise ValueError("title is required")
        story_id = fields.pop("id", None) or uuid.uuid4().hex
        fields["acceptanceCriteria"] = json.dumps(fields.get("acceptanceCriteria") or [])
        with self.session() as sess:
            if sess.get(Project, project_id) is None:
                raise KeyError(project_id)
            if "order" not in fields:
                last = sess.scalars(
                    select(UserStory.order)
                    .where(UserStory.projectId == project_id)
                    .order_by(UserStory.order.desc())
                ).first()
                fields["order"] = (last or 0) + 1
            sess.add(UserStory(id=story_id, projectId=project_id, **fields))
            project = sess.get(Project, project_id)
            project.updatedAt = _now()
        return story_id

    def update_story_status(self, project_id: str, story_id: str, status: str) -> dict[str, Any] | None:
        """Set a story's status; returns the updated story or ``None``."""
        with self.session() as sess:
            story = sess.get(UserStory, story_id)
            if story is None or story.projectId != project_id:
                return None
            story.status = status
            if status.lower() in BLOCKED_STATUSES:
                story.blockedSince = story.blockedSince or _now()
            else:
                story.blockedSince = None
            return _story_dict(story)

    def project_metrics(self, project_id: str) -> dict[str, Any] | None:
        project = self.get_project(project_id)
        if project is None:
            return None
        stories = self.list_user_stories(project_id)

        by_status: dict[str, int] = {}
        total_points = 0.0
        done_points = 0.0
        done = 0
        blocked = 0
        for s in stories:
            status = (s["status"] or "todo").lower()
            by_status[status] = by_status.get(status, 0) + 1
            points = s["estimation"] or 0.0
            total_points += points
            if status in DONE_STATUSES:
                done += 1
                done_points += points
            if s["blockedSince"] or status in BLOCKED_STATUSES:
                blocked += 1

        if total_points:
            completion = done_points / total_points
        elif stories:
            completion = done / len(stories)
        else:
            completion = 0.0

        return {
            "projectId": project_id,
            "projectName": project["name"],
            "storyCount": len(stories),
            "byStatus": by_status,
            "totalEstimation": total_points,
            "completedEstimation": done_points,
            "blockedCount": blocked,
            "completion": round(completion, 4),
        }
