from queue import Queue
from typing import Any, Optional


class EventBus:
    """FIFO hand-off from feed threads to the engine's dispatcher thread."""

    def __init__(self):
        self.events = Queue()

    def put(self, event: Any) -> None:
        self.events.put(event)

    def get(self, timeout: Optional[float] = None) -> Any:
        return self.events.get(timeout=timeout)

    def task_done(self) -> None:
        self.events.task_done()

    def join(self) -> None:
        self.events.join()
