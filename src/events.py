"""Push-event channels from the core to the UI layer."""

import json
import queue
import threading
import time
import uuid
from typing import Any, Dict, List, Optional, Union

from .exceptions import ConfigurationError
from .logger import Logger

FILE_CHANGED = "fileChanged"
TERMINAL_DATA = "terminalData"
TERMINAL_CLOSE = "terminalClose"
TERMINAL_ERROR = "terminalError"

CHANNELS = (FILE_CHANGED, TERMINAL_DATA, TERMINAL_CLOSE, TERMINAL_ERROR)


class Subscription:
    """Buffered delivery of one channel's events to one consumer.

    The bus only ever holds this handle, never a caller callback. A full
    buffer evicts its oldest events and counts them in ``dropped``.
    """

    def __init__(self, bus: "EventBus", channel: str, maxsize: int):
        self.id = uuid.uuid4().hex
        self.channel = channel
        self.dropped = 0
        self.active = True
        self.last_polled = time.monotonic()
        self.overflowing = False
        self._bus = bus
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=maxsize)

    def deliver(self, event: Dict[str, Any]) -> bool:
        """Enqueue an event, evicting the oldest one if the buffer is full.

        Returns True when this delivery started a new overflow, i.e. the
        first eviction since the consumer last read.
        """
        started_overflow = False
        while True:
            try:
                self._queue.put_nowait(event)
                return started_overflow
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                    if not self.overflowing:
                        self.overflowing = True
                        started_overflow = True
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Wait for the next event; None on timeout."""
        self._touch()
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self, max_items: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return all buffered events without blocking."""
        self._touch()
        events = []
        while max_items is None or len(events) < max_items:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return events

    def pending(self) -> int:
        return self._queue.qsize()

    def unsubscribe(self):
        self._bus.unsubscribe(self)

    def _touch(self):
        self.last_polled = time.monotonic()
        self.overflowing = False


class EventBus:
    """Channel registry with subscribe/unsubscribe handles.

    Subscriptions nobody has read from for ``idle_timeout`` seconds are
    cancelled on the next publish or subscribe.
    """

    def __init__(self, queue_size: int = 10000, idle_timeout: Optional[float] = None):
        self.logger = Logger.get_logger(__name__)
        self.queue_size = queue_size
        self.idle_timeout = idle_timeout
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    def subscribe(self, channel: str) -> Subscription:
        if channel not in CHANNELS:
            raise ConfigurationError(f"Unknown event channel: {channel}")

        self.expire_idle()
        subscription = Subscription(self, channel, self.queue_size)
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        self.logger.debug(f"Subscribed {subscription.id} to {channel}")
        return subscription

    def unsubscribe(self, subscription: Union[Subscription, str]) -> bool:
        """Cancel a subscription by handle or id; False if it was not active."""
        subscription_id = subscription if isinstance(subscription, str) else subscription.id
        with self._lock:
            removed = self._subscriptions.pop(subscription_id, None)
        if removed is None:
            return False
        removed.active = False
        return True

    def remove_all_listeners(self, channel: str) -> int:
        """Cancel every subscription on ``channel``; returns how many."""
        with self._lock:
            ids = [sid for sid, sub in self._subscriptions.items() if sub.channel == channel]
            removed = [self._subscriptions.pop(sid) for sid in ids]
        for subscription in removed:
            subscription.active = False
        return len(removed)

    def expire_idle(self, force: bool = False) -> int:
        """Cancel subscriptions idle past ``idle_timeout``; returns how many."""
        if not self.idle_timeout:
            return 0
        now = time.monotonic()
        with self._lock:
            if not force and now - self._last_sweep < min(self.idle_timeout, 60.0):
                return 0
            self._last_sweep = now
            ids = [sid for sid, sub in self._subscriptions.items()
                   if now - sub.last_polled > self.idle_timeout]
            expired = [self._subscriptions.pop(sid) for sid in ids]
        for subscription in expired:
            subscription.active = False
            self.logger.info(
                f"Expired idle subscription {subscription.id} on {subscription.channel} "
                f"({subscription.pending()} events pending)"
            )
        return len(expired)

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(subscription_id)

    def publish(self, channel: str, payload: Dict[str, Any]):
        self.expire_idle()
        event = {"channel": channel, "data": payload, "timestamp": time.time()}
        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.channel == channel]
        for subscription in targets:
            if subscription.deliver(event) and channel == TERMINAL_DATA:
                self.logger.warning(f"Subscription {subscription.id} is dropping terminal output")
                self.publish(TERMINAL_ERROR, {
                    'connectionId': payload.get('connectionId'),
                    'error': "Terminal output overflowed the event buffer; oldest output was dropped",
                    'subscriptionId': subscription.id,
                    'dropped': subscription.dropped,
                })


class WindowEventBridge:
    """Forwards bus events into a pywebview window as DOM CustomEvents."""

    def __init__(self, bus: EventBus, window, poll_interval: float = 0.02):
        self.logger = Logger.get_logger(__name__)
        self.bus = bus
        self.window = window
        self.poll_interval = poll_interval
        self._subscriptions: List[Subscription] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._subscriptions = [self.bus.subscribe(channel) for channel in CHANNELS]
        self._thread = threading.Thread(target=self._pump, name="event-bridge", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1)
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    @staticmethod
    def render(event: Dict[str, Any]) -> str:
        return (
            f"window.dispatchEvent(new CustomEvent({json.dumps(event['channel'])}, "
            f"{{detail: {json.dumps(event['data'])}}}))"
        )

    def _pump(self):
        while not self._stop.is_set():
            delivered = False
            for subscription in self._subscriptions:
                for event in subscription.drain():
                    delivered = True
                    try:
                        self.window.evaluate_js(self.render(event))
                    except Exception as e:
                        self.logger.error(f"Error dispatching {event['channel']} to window: {e}")
            if not delivered:
                self._stop.wait(self.poll_interval)
