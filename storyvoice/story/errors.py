"""Exceptions raised by story loading and navigation."""


class StoryError(Exception):
    """Base exception for navigation failures."""


class StoryNotLoadedError(StoryError):
    """Raised when navigating before a story has been loaded."""

    def __init__(self) -> None:
        super().__init__("No story loaded")


class NodeNotFoundError(StoryError):
    """Raised when a node id is absent from the story's node map."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Node {node_id} not found")
        self.node_id = node_id


class StoryEndedError(StoryError):
    """Raised when navigating away from an ending without restarting."""

    def __init__(self, node_id: str) -> None:
        super().__init__(f"Story ended at node {node_id}; restart to play again")
        self.node_id = node_id


class StoryLoadError(Exception):
    """Raised when a story document is missing, unreadable or malformed."""
