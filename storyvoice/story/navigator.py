"""Story navigation state machine.

States::

    AWAITING_NODE --load_story--> AT_NODE(start)
    AT_NODE --goto_node / make_choice--> AT_NODE | AT_ENDING
    AT_ENDING --restart--> AT_NODE(start)

The navigator holds the loaded story, the current node and the
:class:`Progress` record.  A failed transition raises a
:class:`StoryError` and leaves both the current node and the progress
record untouched.
"""

from __future__ import annotations

import logging
import time
from enum import Enum

from storyvoice.story.errors import (
    NodeNotFoundError,
    StoryEndedError,
    StoryNotLoadedError,
)
from storyvoice.story.types import Choice, ChoiceRecord, Progress, Story, StoryNode

logger = logging.getLogger(__name__)


class NavigationState(str, Enum):
    """Coarse state of the navigator."""

    AWAITING_NODE = "awaiting_node"
    AT_NODE = "at_node"
    AT_ENDING = "at_ending"


def new_progress(start_node_id: str) -> Progress:
    """Return a fresh progress record rooted at *start_node_id*."""
    now = time.time()
    return Progress(
        current_node_id=start_node_id,
        visited_nodes=[start_node_id],
        start_time=now,
        last_save_time=now,
    )


class StoryNavigator:
    """Holds the current node and applies choices to the progress record."""

    def __init__(self) -> None:
        self._story: Story | None = None
        self._current: StoryNode | None = None
        self._progress: Progress | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def story(self) -> Story | None:
        return self._story

    @property
    def current_node(self) -> StoryNode | None:
        return self._current

    @property
    def progress(self) -> Progress | None:
        return self._progress

    @property
    def state(self) -> NavigationState:
        if self._current is None:
            return NavigationState.AWAITING_NODE
        if self._current.is_ending:
            return NavigationState.AT_ENDING
        return NavigationState.AT_NODE

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def load_story(self, story: Story, progress: Progress | None = None) -> StoryNode:
        """Install *story* and navigate to its start node.

        An existing progress record (the navigator's own, or *progress*)
        is kept when its current node exists in *story*; otherwise a fresh
        record is created.
        """
        existing = progress if progress is not None else self._progress
        if existing is not None and existing.current_node_id not in story.nodes:
            logger.info(
                "Discarding progress at unknown node %s", existing.current_node_id
            )
            existing = None

        self._story = story
        self._progress = existing or new_progress(story.start_node)
        self._current = None
        return self._enter(story.start_node)

    def resume(self, progress: Progress) -> StoryNode:
        """Adopt a saved *progress* record and navigate to its current node."""
        story = self._require_story()
        node = story.nodes.get(progress.current_node_id)
        if node is None:
            raise NodeNotFoundError(progress.current_node_id)

        self._progress = progress
        self._current = None
        logger.info("Resumed progress at node %s", node.id)
        return self._enter(node.id)

    def goto_node(self, node_id: str) -> StoryNode:
        """Navigate to *node_id*."""
        story = self._require_story()
        self._require_not_ended()
        if node_id not in story.nodes:
            raise NodeNotFoundError(node_id)
        return self._enter(node_id)

    def make_choice(self, choice: Choice) -> StoryNode:
        """Record *choice* in the progress history and follow it.

        The choice is not required to belong to the current node; any
        choice whose target exists is accepted.
        """
        story = self._require_story()
        self._require_not_ended()
        if choice.next_node not in story.nodes:
            raise NodeNotFoundError(choice.next_node)

        progress = self._progress
        if self._current is not None and choice not in self._current.choices:
            logger.debug(
                "Choice %s is not offered by node %s", choice.id, self._current.id
            )

        progress.choice_history.append(
            ChoiceRecord(node_id=progress.current_node_id, choice_id=choice.id)
        )
        progress.consequences.append(choice.consequence)
        progress.choices_made.append(choice.id)
        return self._enter(choice.next_node)

    def restart(self) -> StoryNode:
        """Replace the progress record with a fresh one at the start node."""
        story = self._require_story()
        self._progress = new_progress(story.start_node)
        self._current = None
        logger.info("Story restarted at %s", story.start_node)
        return self._enter(story.start_node)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _enter(self, node_id: str) -> StoryNode:
        node = self._story.nodes[node_id]
        progress = self._progress
        self._current = node
        progress.current_node_id = node_id
        if node_id not in progress.visited_nodes:
            progress.visited_nodes.append(node_id)
        progress.last_save_time = time.time()
        logger.info("Entered node %s%s", node_id, " (ending)" if node.is_ending else "")
        return node

    def _require_story(self) -> Story:
        if self._story is None or self._progress is None:
            raise StoryNotLoadedError()
        return self._story

    def _require_not_ended(self) -> None:
        if self._current is not None and self._current.is_ending:
            raise StoryEndedError(self._current.id)
