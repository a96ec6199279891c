"""
Event Bus - Change notifications for the task board agent

This module implements a pub-sub event bus. The board store, the stage
pipeline and voice sessions publish ``SystemEvent`` dicts here; the service
layer subscribes to relay them to connected clients.

Features:
- Typed and wildcard ("*") subscriptions
- Optional subscription filters
- Bounded event history
- Dead letter list for handlers that raise
"""

import threading
import traceback
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Any, Dict, List, Tuple

from taskboard_agent.models.messages import SystemEvent
from taskboard_agent.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class EventSubscription:
    """Represents a subscription to an event type."""
    subscription_id: str
    event_type: str
    handler: Callable[[SystemEvent], Any]
    filter_func: Optional[Callable[[SystemEvent], bool]] = None
    subscriber_name: str = "unknown"
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class EventRecord:
    """Record of an event that was published."""
    event: SystemEvent
    published_at: str
    handlers_notified: List[str]
    handlers_failed: List[str]


class EventBus:
    """
    Synchronous pub-sub bus, safe to publish from several threads.

    Usage:
        bus = EventBus()

        def on_move(event: SystemEvent):
            print(f"{event['payload']['task_id']} -> {event['payload']['to_column']}")

        bus.subscribe("task_moved", on_move, subscriber_name="ui_relay")
        bus.publish(create_system_event(
            event_type="task_moved",
            event_category="board",
            source="board_store",
            payload={"task_id": "t1", "to_column": "today"}
        ))
    """

    def __init__(self, enable_history: bool = True, history_max_size: int = 1000):
        """
        Initialize the event bus.

        Args:
            enable_history: Whether to keep event history
            history_max_size: Maximum number of events to keep in history
        """
        self._lock = threading.RLock()
        self.subscriptions: Dict[str, List[EventSubscription]] = defaultdict(list)
        self.wildcard_subscriptions: List[EventSubscription] = []

        self.enable_history = enable_history
        self.history_max_size = history_max_size
        self.event_history: List[EventRecord] = []

        self.dead_letter_queue: List[Tuple[SystemEvent, str]] = []

        self.stats = {
            "events_published": 0,
            "handlers_executed": 0,
            "handlers_failed": 0
        }

    def subscribe(
        self,
        event_type: str,
        handler: Callable[[SystemEvent], Any],
        subscriber_name: str = "unknown",
        filter_func: Optional[Callable[[SystemEvent], bool]] = None
    ) -> str:
        """
        Subscribe to an event type.

        Args:
            event_type: Type of event to subscribe to (or "*" for all events)
            handler: Function to call when event occurs
            subscriber_name: Name of the subscriber (for logging)
            filter_func: Optional filter function (return True to receive event)

        Returns:
            subscription_id: Unique subscription ID (for unsubscribing)
        """
        subscription = EventSubscription(
            subscription_id=str(uuid.uuid4()),
            event_type=event_type,
            handler=handler,
            filter_func=filter_func,
            subscriber_name=subscriber_name
        )

        with self._lock:
            if event_type == "*":
                self.wildcard_subscriptions.append(subscription)
            else:
                self.subscriptions[event_type].append(subscription)
        logger.debug(f"[EVENTS] Subscription added: {subscriber_name} -> {event_type}")

        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """
        Unsubscribe from events.

        Returns:
            True if subscription was found and removed
        """
        with self._lock:
            for subs in [self.wildcard_subscriptions, *self.subscriptions.values()]:
                for i, sub in enumerate(subs):
                    if sub.subscription_id == subscription_id:
                        subs.pop(i)
                        logger.debug(f"[EVENTS] Subscription removed: {sub.subscriber_name}")
                        return True
        return False

    def publish(self, event: SystemEvent) -> None:
        """
        Publish an event to all subscribers.

        A failing handler is logged and dead-lettered; it never breaks the
        publisher or the remaining handlers.
        """
        event_type = event['event_type']
        logger.debug(f"[EVENTS] {event_type} from {event['source']}: {event['payload']}")

        with self._lock:
            self.stats["events_published"] += 1
            if not event.get('propagate', True):
                return
            all_subs = list(self.subscriptions.get(event_type, [])) + list(self.wildcard_subscriptions)

        handlers_notified = []
        handlers_failed = []

        for subscription in all_subs:
            if subscription.filter_func and not subscription.filter_func(event):
                continue

            handlers_notified.append(subscription.subscriber_name)
            try:
                subscription.handler(event)
                with self._lock:
                    self.stats["handlers_executed"] += 1
            except Exception as e:
                handlers_failed.append(subscription.subscriber_name)
                logger.error(
                    f"[EVENTS] Handler {subscription.subscriber_name} failed for event {event_type}: {e}"
                )
                logger.debug(traceback.format_exc())
                with self._lock:
                    self.stats["handlers_failed"] += 1
                    self.dead_letter_queue.append((event, str(e)))

        if self.enable_history:
            with self._lock:
                self.event_history.append(EventRecord(
                    event=event,
                    published_at=datetime.now().isoformat(),
                    handlers_notified=handlers_notified,
                    handlers_failed=handlers_failed,
                ))
                if len(self.event_history) > self.history_max_size:
                    self.event_history = self.event_history[-self.history_max_size:]

    def get_event_history(
        self,
        event_type: Optional[str] = None,
        limit: int = 100
    ) -> List[EventRecord]:
        """
        Get event history, optionally filtered.

        Returns:
            List of event records (most recent first)
        """
        with self._lock:
            history = self.event_history[::-1]

        if event_type:
            history = [r for r in history if r.event['event_type'] == event_type]

        return history[:limit]

    def get_statistics(self) -> Dict[str, Any]:
        """Get event bus statistics."""
        with self._lock:
            return {
                **self.stats,
                "active_subscriptions": sum(len(subs) for subs in self.subscriptions.values()),
                "wildcard_subscriptions": len(self.wildcard_subscriptions),
                "dead_letter_queue_size": len(self.dead_letter_queue),
                "history_size": len(self.event_history)
            }


# ============================================================================
# GLOBAL EVENT BUS INSTANCE
# ============================================================================

_global_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """
    Get the global event bus instance (singleton).

    Returns:
        Global EventBus instance
    """
    global _global_event_bus
    if _global_event_bus is None:
        _global_event_bus = EventBus()
    return _global_event_bus
