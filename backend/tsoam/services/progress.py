"""Sync progress events and the broadcaster that fans them out to subscribers."""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class SyncStep(str, Enum):
    STARTING = "Starting Sync"
    SYNCING = "Syncing Operations"
    UPDATING_CACHE = "Updating Cache"
    COMPLETE = "Complete"
    ERROR = "Error"


@dataclass
class SyncProgress:
    """One phase transition of a sync cycle. Never persisted."""
    step: SyncStep
    progress: float
    message: str
    total: int = 100
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step.value,
            "progress": self.progress,
            "total": self.total,
            "message": self.message,
            "errors": list(self.errors),
        }


ProgressCallback = Callable[[SyncProgress], None]


class ProgressBroadcaster:
    """Observer registry for sync progress.

    Callbacks are invoked, never owned: ``subscribe`` hands back a callable
    that removes the registration again.
    """

    def __init__(self):
        self._subscribers: List[ProgressCallback] = []
        self.latest: Optional[SyncProgress] = None

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: ProgressCallback) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb != callback]

    def publish(self, progress: SyncProgress) -> None:
        self.latest = progress
        for callback in list(self._subscribers):
            try:
                callback(progress)
            except Exception:
                logger.exception("Sync progress subscriber %r raised", callback)
