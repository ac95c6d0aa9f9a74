"""Serialized channel opening against a shared transport."""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Optional, TypeVar

import paramiko

from .exceptions import ChannelLimitExceeded, NotConnected, OperationTimeout
from .logger import Logger

T = TypeVar("T")


def remaining_time(deadline: Optional[float]) -> Optional[float]:
    """Seconds left until ``deadline`` (a ``time.monotonic`` value), never negative."""
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class ChannelGate:
    """Lets one channel-open attempt at a time through, in arrival order.

    Waiters take a ticket and are admitted strictly by ticket number, so
    no request can be overtaken. A waiter whose deadline passes gives up
    its ticket and the tickets behind it keep their order. Transient
    ``ChannelException`` refusals are retried with a linear backoff
    before giving up.
    """

    def __init__(self, retries: int = 3, backoff: float = 0.2):
        self.logger = Logger.get_logger(__name__)
        self.retries = retries
        self.backoff = backoff
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0
        self._abandoned = set()

    @contextmanager
    def turn(self, deadline: Optional[float] = None):
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._serving:
                remaining = remaining_time(deadline)
                if remaining == 0:
                    self._abandoned.add(ticket)
                    raise OperationTimeout("Timed out waiting for a free channel slot")
                self._cond.wait(remaining)
        try:
            yield ticket
        finally:
            with self._cond:
                self._serving += 1
                while self._serving in self._abandoned:
                    self._abandoned.discard(self._serving)
                    self._serving += 1
                self._cond.notify_all()

    def open(self, opener: Callable[[], T], what: str = "channel",
             deadline: Optional[float] = None) -> T:
        """Run ``opener`` under the gate and return what it opened.

        With a ``deadline`` both the wait for a turn and the retries are
        bounded, and running out raises ``OperationTimeout``.
        """
        with self.turn(deadline):
            attempt = 0
            while True:
                try:
                    return opener()
                except paramiko.ChannelException as e:
                    attempt += 1
                    if attempt > self.retries:
                        raise ChannelLimitExceeded(
                            f"Server refused to open {what} after {attempt} attempts: {e}"
                        )
                    delay = self.backoff * attempt
                    remaining = remaining_time(deadline)
                    if remaining is not None and remaining <= delay:
                        raise OperationTimeout(f"Timed out opening {what} after {attempt} refusals")
                    self.logger.debug(f"Open {what} refused ({e}), retry {attempt}/{self.retries}")
                    time.sleep(delay)
                except (paramiko.SSHException, EOFError, OSError) as e:
                    if remaining_time(deadline) == 0:
                        raise OperationTimeout(f"Timed out opening {what}: {e}")
                    raise NotConnected(f"Transport unavailable while opening {what}: {e}")
