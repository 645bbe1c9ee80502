"""Transfer progress accounting and notification throttling."""

import math
import time
from collections.abc import Callable


def percent(transferred: int, total: int) -> int:
    """Return transferred/total as a whole percentage, rounded half up."""
    if total <= 0:
        return 100
    return min(100, math.floor(transferred * 100 / total + 0.5))


class ProgressThrottle:
    """Rate-limits progress notifications per task id.

    At most one notification per ``interval`` seconds is let through for a
    task. A 100% notification always passes and forgets the task.
    """

    def __init__(self, interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last_emit: dict[str, float] = {}

    def should_emit(self, task_id: str, progress: int) -> bool:
        """Return True if a notification for this task may go out now."""
        if progress >= 100:
            self._last_emit.pop(task_id, None)
            return True

        now = self._clock()
        last = self._last_emit.get(task_id)
        if last is not None and now - last < self.interval:
            return False
        self._last_emit[task_id] = now
        return True

    def forget(self, task_id: str) -> None:
        """Drop bookkeeping for a task that ended without reaching 100%."""
        self._last_emit.pop(task_id, None)

    def is_tracking(self, task_id: str) -> bool:
        return task_id in self._last_emit
