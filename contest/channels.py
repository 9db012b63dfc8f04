"""A closable thread-safe channel and first-target detection for test steps."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterator
from typing import Any, Generic, TypeVar

T = TypeVar("T")

_POLL_INTERVAL = 0.01


class ChannelClosed(Exception):
    """Raised on send to or close of a closed channel, or receive from a drained one."""


class Channel(Generic[T]):
    """A FIFO channel between threads.

    With ``capacity`` 0 a send waits until the item has been received;
    otherwise a send waits only while the buffer is full. ``timeout`` bounds
    how long a send or receive may wait, in seconds; None waits forever.
    """

    def __init__(self, capacity: int = 0, timeout: float | None = None) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self._capacity = capacity
        self.timeout = timeout
        self._items: deque[tuple[int, T]] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._next_ticket = 0
        self._last_received = 0

    def _enqueue(self, item: T) -> int:
        self._next_ticket += 1
        self._items.append((self._next_ticket, item))
        self._cond.notify_all()
        return self._next_ticket

    def _send(self, item: T, timeout: float | None) -> None:
        with self._cond:
            if self._closed:
                raise ChannelClosed("send on closed channel")
            if self._capacity:
                if not self._cond.wait_for(
                    lambda: self._closed or len(self._items) < self._capacity, timeout
                ):
                    raise TimeoutError("timed out sending on channel")
                if self._closed:
                    raise ChannelClosed("send on closed channel")
                self._enqueue(item)
                return
            ticket = self._enqueue(item)
            if not self._cond.wait_for(lambda: self._last_received >= ticket, timeout):
                self._items = deque(e for e in self._items if e[0] != ticket)
                raise TimeoutError("timed out sending on channel")

    def _receive(self, timeout: float | None) -> T:
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise TimeoutError("timed out receiving from channel")
            if not self._items:
                raise ChannelClosed("channel is closed")
            ticket, item = self._items.popleft()
            self._last_received = ticket
            self._cond.notify_all()
            return item

    def send(self, item: T) -> None:
        """Send ``item``; raise TimeoutError if it cannot be delivered in time."""
        self._send(item, self.timeout)

    def receive(self) -> T:
        """Receive the next item.

        Raise ChannelClosed when the channel is closed and drained, and
        TimeoutError when nothing arrives within the channel's timeout.
        """
        return self._receive(self.timeout)

    def close(self) -> None:
        """Close the channel; items already sent can still be received."""
        with self._cond:
            if self._closed:
                raise ChannelClosed("close of closed channel")
            self._closed = True
            self._cond.notify_all()

    def closed(self) -> bool:
        """Tell whether the channel has been closed."""
        with self._cond:
            return self._closed

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                yield self.receive()
            except ChannelClosed:
                return

    def __len__(self) -> int:
        with self._cond:
            return len(self._items) if self._capacity else 0


def wait_for_first_target(
    source: Channel[Any],
    cancel: threading.Event | None = None,
    pause: threading.Event | None = None,
) -> tuple[Channel[Any], threading.Event, threading.Event]:
    """Copy targets from ``source`` to a new channel, signalling the first one.

    Returns ``(out, on_first_target, on_no_targets)``. ``on_first_target`` is
    set when the first target arrives; ``on_no_targets`` is set (after ``out``
    is closed) when ``source`` closes without any target. If ``cancel`` or
    ``pause`` is set before the first target, forwarding stops and ``out`` is
    left open. Target order is preserved.
    """
    out: Channel[Any] = Channel()
    on_first_target = threading.Event()
    on_no_targets = threading.Event()

    def stopped() -> bool:
        return any(ev is not None and ev.is_set() for ev in (cancel, pause))

    def forward() -> None:
        while True:
            if stopped():
                return
            try:
                first = source._receive(_POLL_INTERVAL)
            except TimeoutError:
                continue
            except ChannelClosed:
                out.close()
                on_no_targets.set()
                return
            break
        on_first_target.set()
        out._send(first, None)
        while True:
            try:
                target = source._receive(None)
            except ChannelClosed:
                break
            out._send(target, None)
        out.close()

    threading.Thread(target=forward, name="wait-for-first-target", daemon=True).start()
    return out, on_first_target, on_no_targets