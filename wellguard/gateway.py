"""
Message Delivery Gateway boundary.

Concrete SMS, push and e-mail transports live outside this package behind
``MessageGateway.send(destination, channel, content) -> bool``.  The
scheduler always calls through ``GuardedGateway``, which applies a timeout
and turns every failure mode (exception, timeout, ``False``) into a
``DeliveryError``.

Live push connections are tracked by an injected ``SubscriptionRegistry``
rather than module state; a connection is subscribed for exactly as long as
it is open.
"""

from __future__ import annotations

import abc
import concurrent.futures
import contextlib
import threading
import time
from collections import defaultdict
from typing import Any, Iterator, Optional, Protocol

import structlog

from wellguard.exceptions import DeliveryError
from wellguard.models import DeliveryMethod

logger = structlog.get_logger(__name__)


class MessageGateway(abc.ABC):
    """Contract for an outbound transport."""

    @abc.abstractmethod
    def send(self, destination: str, channel: DeliveryMethod, content: str) -> bool:
        """Deliver ``content``; return True on success.  May raise or block."""


# ---------------------------------------------------------------------------
# Guarded delivery
# ---------------------------------------------------------------------------

class GuardedGateway:
    """Runs a ``MessageGateway`` with a timeout.

    Raises:
        DeliveryError: From ``deliver`` on timeout, exception, or a False
            return value.
    """

    def __init__(
        self,
        gateway: MessageGateway,
        timeout_seconds: float = 10.0,
        executor: Optional[concurrent.futures.Executor] = None,
    ) -> None:
        self._gateway = gateway
        self._timeout = timeout_seconds
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="wellguard-gateway"
        )

    def deliver(self, destination: str, channel: DeliveryMethod, content: str) -> None:
        future = self._executor.submit(self._gateway.send, destination, channel, content)
        try:
            delivered = future.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise DeliveryError(
                f"Gateway timed out after {self._timeout}s",
                details={"destination": destination, "channel": channel.value},
            ) from exc
        except Exception as exc:
            raise DeliveryError(
                f"Gateway raised {type(exc).__name__}: {exc}",
                details={"destination": destination, "channel": channel.value},
            ) from exc
        if not delivered:
            raise DeliveryError(
                "Gateway reported delivery failure",
                details={"destination": destination, "channel": channel.value},
            )


# ---------------------------------------------------------------------------
# Push subscriptions
# ---------------------------------------------------------------------------

class PushConnection(Protocol):
    def push(self, content: str) -> None: ...


class SubscriptionRegistry:
    """Per-user set of live push connections.

    Use ``connection()`` to tie a subscription to a connection's lifetime::

        with registry.connection(user_id, ws):
            serve(ws)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[PushConnection]] = defaultdict(list)

    def subscribe(self, user_id: str, conn: PushConnection) -> None:
        with self._lock:
            if conn not in self._subscribers[user_id]:
                self._subscribers[user_id].append(conn)

    def unsubscribe(self, user_id: str, conn: PushConnection) -> None:
        with self._lock:
            conns = self._subscribers.get(user_id, [])
            if conn in conns:
                conns.remove(conn)
            if not conns:
                self._subscribers.pop(user_id, None)

    def connections(self, user_id: str) -> list[PushConnection]:
        with self._lock:
            return list(self._subscribers.get(user_id, []))

    @contextlib.contextmanager
    def connection(self, user_id: str, conn: PushConnection) -> Iterator[PushConnection]:
        self.subscribe(user_id, conn)
        try:
            yield conn
        finally:
            self.unsubscribe(user_id, conn)


class PushGateway(MessageGateway):
    """Delivers ``push`` messages to a user's live connections.

    Returns False when the user has no live connection, so the scheduler
    records a failure and retries.  A connection that raises is dropped.
    """

    def __init__(self, registry: SubscriptionRegistry) -> None:
        self._registry = registry

    def send(self, destination: str, channel: DeliveryMethod, content: str) -> bool:
        if channel is not DeliveryMethod.PUSH:
            return False
        delivered = False
        for conn in self._registry.connections(destination):
            try:
                conn.push(content)
                delivered = True
            except Exception as exc:
                logger.warning(
                    "push_connection_dropped",
                    user_id=destination,
                    error=f"{type(exc).__name__}: {exc}",
                )
                self._registry.unsubscribe(destination, conn)
        return delivered


# ---------------------------------------------------------------------------
# Recording gateway
# ---------------------------------------------------------------------------

class RecordingGateway(MessageGateway):
    """Records every send.  Used by tests and the synthetic walkthrough.

    Args:
        fail_destinations: Destinations for which ``send`` returns False.
        raise_destinations: Destinations for which ``send`` raises.
        delay_seconds: Sleep before every send, to exercise timeouts.
    """

    def __init__(
        self,
        fail_destinations: Optional[set[str]] = None,
        raise_destinations: Optional[set[str]] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.fail_destinations = set(fail_destinations or ())
        self.raise_destinations = set(raise_destinations or ())
        self.delay_seconds = delay_seconds
        self.sent: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def send(self, destination: str, channel: DeliveryMethod, content: str) -> bool:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if destination in self.raise_destinations:
            raise ConnectionError(f"transport unavailable for {destination}")
        if destination in self.fail_destinations:
            return False
        with self._lock:
            self.sent.append({"destination": destination, "channel": channel, "content": content})
        return True

    def sent_to(self, destination: str) -> list[dict[str, Any]]:
        with self._lock:
            return [m for m in self.sent if m["destination"] == destination]
