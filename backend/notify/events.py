"""
PathNotify Event Channel.

Publish/subscribe channel the engine publishes its events on.
Requires Python 3.11+.
"""

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from utils.logger import LoggerMixin

Listener = Callable[..., Any]


class EventChannel(LoggerMixin):
    """
    Named-event broadcaster.

    Listeners run synchronously in subscription order. Coroutine
    listeners are scheduled as tasks on the running loop. A listener
    that raises is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._tasks: set[asyncio.Task[Any]] = set()

    @staticmethod
    def _name(event: Any) -> str:
        return getattr(event, "value", event)

    @staticmethod
    def _matches(registered: Listener, listener: Listener) -> bool:
        return registered == listener or getattr(registered, "listener", None) == listener

    def on(self, event: Any, listener: Listener) -> Listener:
        """Subscribe a listener; returns it so it can be used as a decorator."""
        self._listeners[self._name(event)].append(listener)
        return listener

    def once(self, event: Any, listener: Listener) -> Listener:
        """Subscribe a listener for the next emission only."""
        name = self._name(event)

        def wrapper(*args: Any) -> Any:
            self._discard(name, wrapper)
            return listener(*args)

        wrapper.listener = listener
        self._listeners[name].append(wrapper)
        return listener

    def off(self, event: Any, listener: Listener | None = None) -> None:
        """Unsubscribe one listener, or every listener of an event."""
        name = self._name(event)
        if listener is None:
            self._listeners.pop(name, None)
            return
        for registered in self._listeners.get(name, []):
            if self._matches(registered, listener):
                self._discard(name, registered)
                return

    def _discard(self, name: str, registered: Listener) -> None:
        listeners = self._listeners.get(name, [])
        for index, candidate in enumerate(listeners):
            if candidate is registered:
                del listeners[index]
                return

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.log.error("listener_failed", error=str(task.exception()))

    def listener_count(self, event: Any) -> int:
        """Number of listeners subscribed to an event."""
        return len(self._listeners.get(self._name(event), []))

    def emit(self, event: Any, *args: Any) -> bool:
        """
        Deliver an event to its listeners.

        Returns:
            True if the event had listeners
        """
        name = self._name(event)
        listeners = list(self._listeners.get(name, []))
        if not listeners:
            return False

        for listener in listeners:
            try:
                result = listener(*args)
                if inspect.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception as e:
                self.log.error("listener_failed", event_name=name, error=str(e))

        return True
