"""
In-process event bus used by the action handler
Listeners may be sync or async; their failures are collected, never raised
"""
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .utils import elapsed_since, generate_id, resolve

logger = logging.getLogger(__name__)

WILDCARD = "*"

# Events emitted by ActionHandler
ACTION_START = "action:start"
ACTION_CALLBACK = "action:callback"
ACTION_COMPLETE = "action:complete"
ACTION_PREVENTED = "action:prevented"
ACTION_ERROR = "action:error"
RESULT_SELECTED = "result:selected"


@dataclass
class Event:
    """An emitted event as seen by listeners"""
    type: str
    data: Any
    timestamp: float = field(default_factory=time.time)
    source: Optional[str] = None


@dataclass
class ListenerResult:
    subscription_id: str
    success: bool
    result: Any = None
    error: Optional[BaseException] = None


@dataclass
class EmitResult:
    """Outcome of one emit call"""
    event: str
    listener_count: int = 0
    results: List[ListenerResult] = field(default_factory=list)
    execution_time: float = 0.0

    @property
    def errors(self) -> List[BaseException]:
        return [r.error for r in self.results if r.error is not None]

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)


class Subscription:
    """Handle returned by EventBus.subscribe"""

    def __init__(self, bus: "EventBus", subscription_id: str, event: str,
                 listener: Callable[[Event], Any], priority: int, once: bool, order: int):
        self.bus = bus
        self.id = subscription_id
        self.event = event
        self.listener = listener
        self.priority = priority
        self.once = once
        self.order = order
        self.active = True

    def unsubscribe(self) -> bool:
        return self.bus.unsubscribe(self.id)

    def __repr__(self):
        return f"Subscription(id={self.id!r}, event={self.event!r}, priority={self.priority})"


class EventBus:
    """Publish/subscribe bus with priorities, one-shot listeners and a wildcard channel"""

    def __init__(self, source: Optional[str] = None):
        self.source = source
        self.subscriptions: Dict[str, Subscription] = {}
        self._counter = itertools.count()
        self.emitted_count = 0

    def subscribe(self, event: str, listener: Callable[[Event], Any],
                  priority: int = 0, once: bool = False) -> Subscription:
        """Register a listener; higher priority runs first"""
        if not callable(listener):
            raise TypeError("Listener must be callable")

        subscription = Subscription(
            self, generate_id("sub"), event, listener, priority, once, next(self._counter)
        )
        self.subscriptions[subscription.id] = subscription
        logger.debug(f"Subscribed {subscription.id} to {event}")
        return subscription

    def once(self, event: str, listener: Callable[[Event], Any], priority: int = 0) -> Subscription:
        return self.subscribe(event, listener, priority=priority, once=True)

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription := self.subscriptions.pop(subscription_id, None):
            subscription.active = False
            return True
        return False

    def listeners_for(self, event: str) -> List[Subscription]:
        """Subscriptions that receive the event, in dispatch order"""
        matching = [
            s for s in self.subscriptions.values()
            if s.event == event or s.event == WILDCARD
        ]
        return sorted(matching, key=lambda s: (-s.priority, s.order))

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is None:
            return len(self.subscriptions)
        return len(self.listeners_for(event))

    async def emit(self, event: str, data: Any = None) -> EmitResult:
        """Dispatch an event to every matching listener in priority order"""
        start = time.perf_counter()
        payload = Event(type=event, data=data, source=self.source)
        listeners = self.listeners_for(event)
        outcome = EmitResult(event=event, listener_count=len(listeners))
        self.emitted_count += 1

        for subscription in listeners:
            if not subscription.active:
                continue
            if subscription.once:
                self.unsubscribe(subscription.id)

            try:
                value = await resolve(subscription.listener(payload))
                outcome.results.append(ListenerResult(subscription.id, True, result=value))
            except Exception as e:
                logger.error(f"Listener {subscription.id} failed for {event}: {e}")
                outcome.results.append(ListenerResult(subscription.id, False, error=e))

        outcome.execution_time = elapsed_since(start)
        return outcome

    def clear(self, event: Optional[str] = None) -> int:
        """Remove all subscriptions, or only those for one event"""
        doomed = [s.id for s in self.subscriptions.values() if event is None or s.event == event]
        for subscription_id in doomed:
            self.unsubscribe(subscription_id)
        return len(doomed)
