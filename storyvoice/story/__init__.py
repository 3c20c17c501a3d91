"""Story documents, progress records and the navigation state machine."""

from storyvoice.story.errors import (
    NodeNotFoundError,
    StoryEndedError,
    StoryError,
    StoryLoadError,
    StoryNotLoadedError,
)
from storyvoice.story.loader import load_story, parse_story
from storyvoice.story.navigator import NavigationState, StoryNavigator, new_progress
from storyvoice.story.types import (
    Choice,
    ChoiceRecord,
    PersistedState,
    Preferences,
    Progress,
    Story,
    StoryNode,
    VoiceIdentity,
)

__all__ = [
    "Choice",
    "ChoiceRecord",
    "NavigationState",
    "NodeNotFoundError",
    "PersistedState",
    "Preferences",
    "Progress",
    "Story",
    "StoryEndedError",
    "StoryError",
    "StoryLoadError",
    "StoryNavigator",
    "StoryNode",
    "StoryNotLoadedError",
    "VoiceIdentity",
    "load_story",
    "new_progress",
    "parse_story",
]
