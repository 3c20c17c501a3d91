"""Engine coordinator and its recent-error queue."""

from storyvoice.engine.coordinator import EngineCoordinator
from storyvoice.engine.error_queue import ErrorQueue

__all__ = ["EngineCoordinator", "ErrorQueue"]
