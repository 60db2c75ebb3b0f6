from abc import ABC, abstractmethod

from storyline.tools import Tool, ToolDispatcher


class Capability(ABC):
    """Tools that share one backing resource, registered together.

    Subclasses hold the resource and build their tools as closures over
    it in :meth:`tools`.

    Args:
        name: Label used in logs.

    Example::

        class Releases(Capability):
            def __init__(self, store: StoryStore):
                super().__init__("releases")
                self._store = store

            def tools(self) -> list[Tool]:
                store = self._store

                @tool
                def count_stories(projectId: str):
                    return len(store.list_user_stories(projectId))

                return [count_stories]
    """

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def tools(self) -> list[Tool]:
        ...

    def attach(self, dispatcher: ToolDispatcher) -> None:
        """Register every tool on ``dispatcher``.

        Raises:
            ValueError: If a tool name is already taken.
        """
        for t in self.tools():
            dispatcher.register(t)
