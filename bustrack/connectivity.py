"""Connectivity observation.

:class:`ConnectivityMonitor` is the process-wide subject fed by the platform
network API: whoever owns the network status integration calls
:meth:`ConnectivityMonitor.publish` on every status callback, and subscribers
(the offline manager, screens) receive the raw boolean.  Transition
detection is left to subscribers, since each tracks its own last-seen value.

:class:`ConnectivityProbe` performs a one-shot reachability check over HTTP
for callers that need a fresh answer rather than the last published one.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Generic, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], object]
Disposer = Callable[[], None]

PROBE_TIMEOUT_S = 5.0


class Subject(Generic[T]):
    """Minimal observer subject.

    ``subscribe`` returns a disposer; calling it more than once is a no-op.
    Listeners may be plain callables or coroutine functions; ``notify``
    awaits the latter in subscription order.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener[T]] = []

    def subscribe(self, listener: Listener[T]) -> Disposer:
        self._listeners.append(listener)
        disposed = False

        def dispose() -> None:
            nonlocal disposed
            if disposed:
                return
            disposed = True
            self._listeners = [fn for fn in self._listeners if fn is not listener]

        return dispose

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def notify(self, value: T) -> None:
        # Snapshot so listeners may dispose themselves during dispatch
        for listener in list(self._listeners):
            try:
                result = listener(value)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Connectivity listener %r failed", listener, exc_info=True)


class ConnectivityMonitor(Subject[bool]):
    """Process-wide connectivity flag plus the subject that broadcasts it."""

    def __init__(self, initially_connected: bool = True) -> None:
        super().__init__()
        self.is_connected = initially_connected

    async def publish(self, is_connected: bool) -> None:
        """Record a status event from the platform and forward it."""
        self.is_connected = is_connected
        await self.notify(is_connected)


class ConnectivityProbe:
    """HTTP reachability check against a known lightweight endpoint."""

    def __init__(self, url: str, timeout_s: float = PROBE_TIMEOUT_S) -> None:
        self.url = url
        self.timeout_s = timeout_s

    async def check(self) -> bool:
        """Return True if *url* answered with a non-5xx status."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                response = await client.head(self.url)
        except httpx.HTTPError as exc:
            logger.info("Connectivity probe to %s failed: %s", self.url, exc)
            return False
        return response.status_code < 500
