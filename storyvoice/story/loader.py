"""Load and sanity-check story documents."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from storyvoice.story.errors import StoryLoadError
from storyvoice.story.types import Story

logger = logging.getLogger(__name__)


def parse_story(data: dict[str, Any]) -> Story:
    """Validate a decoded story document and return the :class:`Story`.

    Raises :class:`StoryLoadError` when the document is structurally
    invalid, the start node is missing, or a node-map key disagrees with
    the node's own id.  Choices pointing at unknown nodes are only logged:
    selecting one later is reported as a navigation error.
    """
    try:
        story = Story.model_validate(data)
    except ValidationError as exc:
        raise StoryLoadError(f"Invalid story document: {exc}") from exc

    if story.start_node not in story.nodes:
        raise StoryLoadError(f"Start node {story.start_node!r} is not defined")

    for key, node in story.nodes.items():
        if key != node.id:
            raise StoryLoadError(
                f"Node key {key!r} does not match node id {node.id!r}"
            )

    for node in story.nodes.values():
        for choice in node.choices:
            if choice.next_node not in story.nodes:
                logger.warning(
                    "Choice %s on node %s targets unknown node %s",
                    choice.id,
                    node.id,
                    choice.next_node,
                )

    logger.info(
        "Loaded story %r (%d nodes, start=%s)",
        story.title,
        len(story.nodes),
        story.start_node,
    )
    return story


def load_story(path: Path) -> Story:
    """Read a JSON story document from disk."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise StoryLoadError(f"Story file not found: {path}") from exc
    except OSError as exc:
        raise StoryLoadError(f"Unable to read story file: {path}") from exc

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise StoryLoadError(f"Invalid JSON in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise StoryLoadError(f"Story document in {path} must be a JSON object")
    return parse_story(data)
