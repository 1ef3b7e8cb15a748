import logging
from collections import defaultdict
from typing import Callable

log = logging.getLogger("kernelmux.events")

KERNEL_STARTED = "kernel_started"
KERNEL_STATE_CHANGED = "kernel_state_changed"
KERNEL_STOPPED = "kernel_stopped"
KERNEL_ERROR = "kernel_error"
OUTPUT = "output"
event_names = (KERNEL_STARTED, KERNEL_STATE_CHANGED, KERNEL_STOPPED, KERNEL_ERROR, OUTPUT)


class EventHub:
    """Synchronous publish/subscribe for manager events.

    Subscribers run in subscription order on the emitting task, so events for a
    kernel reach every subscriber in the order they happened. A subscriber that
    raises is logged and skipped.
    """

    def __init__(self): self.subscribers = defaultdict(list)

    def _check(self, event:str):
        if event not in event_names: raise ValueError(f"unknown event {event!r}")

    def on(self, event:str, callback:Callable)->Callable[[], None]:
        "Subscribe `callback` to `event`; returns a function that unsubscribes it."
        self._check(event)
        self.subscribers[event].append(callback)
        def _off(): self.off(event, callback)
        return _off

    def off(self, event:str, callback:Callable):
        self._check(event)
        try: self.subscribers[event].remove(callback)
        except ValueError: pass

    def emit(self, event:str, *args):
        self._check(event)
        for cb in list(self.subscribers[event]):
            try: cb(*args)
            except Exception: log.exception("%s subscriber %r failed", event, cb)
