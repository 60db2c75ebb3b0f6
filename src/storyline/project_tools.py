"""Project-tracking tools exposed to the model.

Each tool pairs a datastore handler with a rendering rule that turns
its structured result into short Markdown for the chat window.
"""

from typing import Any

from storyline.capability import Capability
from storyline.store import StoryStore
from storyline.tools import LLMRecoverableError, Tool, tool


def render_projects(projects: list[dict[str, Any]]) -> str:
    if not projects:
        return "No projects found."
    lines = [f"**{len(projects)} project(s)**", ""]
    for p in projects:
        start = p.get("settings", {}).get("projectStartDate")
        suffix = f" (starts {start})" if start else ""
        lines.append(f"- **{p['name']}** `{p['id']}`{suffix}")
    return "\n".join(lines)


def render_stories(stories: list[dict[str, Any]]) -> str:
    if not stories:
        return "This project has no user stories yet."
    lines = [f"**{len(stories)} user stor{'y' if len(stories) == 1 else 'ies'}**", ""]
    for s in stories:
        estimate = f", {s['estimation']:g} pts" if s.get("estimation") is not None else ""
        epic = f"[{s['epic']}] " if s.get("epic") else ""
        lines.append(f"{s['order']}. {epic}{s['title']} ({s['status']}{estimate})")
    return "\n".join(lines)


def render_metrics(m: dict[str, Any]) -> str:
    lines = [
        f"**Metrics for {m['projectName']}**",
        "",
        f"- Stories: {m['storyCount']}",
        f"- Completion: {m['completion']:.0%}",
        f"- Estimation: {m['completedEstimation']:g} / {m['totalEstimation']:g} pts done",
        f"- Blocked: {m['blockedCount']}",
    ]
    if m["byStatus"]:
        breakdown = ", ".join(f"{k}: {v}" for k, v in sorted(m["byStatus"].items()))
        lines.append(f"- By status: {breakdown}")
    return "\n".join(lines)


def render_created(story_id: str) -> str:
    return f"Created user story `{story_id}`."


def render_updated(story: dict[str, Any]) -> str:
    return f"Story **{story['title']}** is now *{story['status']}*."


class ProjectTracking(Capability):
    """Read and write tools over projects and user stories."""

    def __init__(self, store: StoryStore, user_id: str | None = None):
        super().__init__("project_tracking")
        self._store = store
        self._user_id = user_id

    def tools(self) -> list[Tool]:
        store = self._store
        user_id = self._user_id

        def require_project(project_id: str) -> None:
            if store.get_project(project_id) is None:
                raise LLMRecoverableError(f"No project with id `{project_id}`.")

        @tool(render=render_projects)
        def list_projects():
            """List the projects the current user can access."""
            return store.list_projects(user_id)

        @tool(render=render_stories)
        def get_project_user_stories(projectId: str):
            """Get every user story of a project, in backlog order.

            Args:
                projectId: Id of the project.
            """
            require_project(projectId)
            return store.list_user_stories(projectId)

        @tool(render=render_metrics)
        def get_project_metrics(projectId: str):
            """Summarise progress of a project: counts, estimation and blockers.

            Args:
                projectId: Id of the project.
            """
            metrics = store.project_metrics(projectId)
            if metrics is None:
                raise LLMRecoverableError(f"No project with id `{projectId}`.")
            return metrics

        @tool(render=render_created)
        def create_user_story(
            projectId: str,
            title: str,
            userRole: str = "",
            epic: str = "",
            priority: str = "",
            estimation: float = 0,
            acceptanceCriteria: list[str] = None,
        ):
            """Add a user story at the end of a project's backlog.

            Args:
                projectId: Id of the project.
                title: What the user wants, e.g. "export the backlog as CSV".
                userRole: Who wants it, e.g. "product owner".
                epic: Epic the story belongs to.
                priority: Priority label.
                estimation: Estimate in story points.
                acceptanceCriteria: List of acceptance criteria.
            """
            require_project(projectId)
            return store.create_user_story(
                projectId,
                title=title,
                userRole=userRole or None,
                epic=epic or None,
                priority=priority or None,
                estimation=estimation or None,
                acceptanceCriteria=acceptanceCriteria or [],
            )

        @tool(render=render_updated)
        def update_story_status(projectId: str, storyId: str, status: str):
            """Change the status of a user story.

            Args:
                projectId: Id of the project.
                storyId: Id of the story.
                status: New status, e.g. "todo", "in progress", "blocked", "done".
            """
            story = store.update_story_status(projectId, storyId, status)
            if story is None:
                raise LLMRecoverableError(f"No story `{storyId}` in project `{projectId}`.")
            return story

        return [
            list_projects,
            get_project_user_stories,
            get_project_metrics,
            create_user_story,
            update_story_status,
        ]
