"""
Relay client — connection cache, publish acknowledgment, subscriptions.

One RelayClient owns a cache of RelaySession objects keyed by URL. Each
session moves CONNECTING → OPEN → CLOSING → CLOSED; a transport error or
close evicts it from the cache so the next ``connect`` opens a fresh one.

Usage:
    async with RelayClient() as client:
        results = await client.publish(signed_event)
        events = await client.subscribe({"kinds": [30078], "authors": [pubkey]})

The transport is anything with ``async send(str)``, ``async recv() -> str``
and ``async close()``; by default a websockets client connection.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, NamedTuple, Protocol

from nac import (
    CONNECT_BACKOFF_BASE,
    CONNECT_MAX_RETRIES,
    DEFAULT_RELAYS,
    PUBLISH_TIMEOUT,
    SUBSCRIBE_IDLE_TIMEOUT,
    SUBSCRIBE_TOTAL_TIMEOUT,
)
from nac.nostr.event import Event, EventError, SignatureError, verify_event
from nac.nostr.protocol import (
    CLOSED,
    EOSE,
    EVENT,
    NOTICE,
    OK,
    ProtocolError,
    decode_frame,
    encode_frame,
    make_close,
    make_event,
    make_req,
    new_subscription_id,
)

log = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[str], Awaitable[Transport]]


class RelayConnectionError(Exception):
    """Relay unreachable after retries, or its transport failed."""


class SessionState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class PublishResult(NamedTuple):
    """Outcome of publishing one event to one relay."""
    success: bool
    error: str | None = None
    message: str = ""


async def websocket_transport(url: str) -> Transport:
    """Default transport factory: a websockets client connection."""
    try:
        import websockets
    except ImportError:
        raise ImportError(
            "websockets is required for relay communication. "
            "Install with: pip install nostr-article-capture"
        )
    return await websockets.connect(url)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class RelaySession:
    """A single relay connection. Owned by RelayClient, never shared."""

    def __init__(
        self,
        url: str,
        on_closed: Callable[["RelaySession"], None] | None = None,
    ) -> None:
        self.url = url
        self.state = SessionState.CONNECTING
        self._transport: Transport | None = None
        self._on_closed = on_closed

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    async def open(self, transport_factory: TransportFactory) -> None:
        try:
            self._transport = await transport_factory(self.url)
        except Exception:
            self.state = SessionState.CLOSED
            raise
        self.state = SessionState.OPEN

    async def send(self, frame: list) -> None:
        """Serialize and send a frame."""
        if not self.is_open:
            raise RelayConnectionError(f"Session to {self.url} is {self.state.value}")
        text = encode_frame(frame)
        try:
            await self._transport.send(text)
        except Exception as e:
            await self.close()
            raise RelayConnectionError(f"Send to {self.url} failed: {e}") from e
        log.debug("→ %s %s", self.url, frame[0])

    async def recv(self) -> list:
        """Read the next frame. Malformed frames raise ProtocolError."""
        if not self.is_open:
            raise RelayConnectionError(f"Session to {self.url} is {self.state.value}")
        try:
            raw = await self._transport.recv()
        except Exception as e:
            await self.close()
            raise RelayConnectionError(f"Receive from {self.url} failed: {e}") from e
        frame = decode_frame(raw)
        log.debug("← %s %s", self.url, frame[0])
        return frame

    async def close(self) -> None:
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING
        try:
            if self._transport is not None:
                await self._transport.close()
        except Exception as e:
            log.debug("Error closing %s: %s", self.url, e)
        finally:
            self._transport = None
            self.state = SessionState.CLOSED
            if self._on_closed is not None:
                self._on_closed(self)
        log.info("Disconnected from relay %s", self.url)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class RelayClient:
    """Multi-relay Nostr client.

    Publishing fans out to all relays concurrently and returns once every
    relay has settled. Subscriptions query relays one after another; a
    failing relay is logged and skipped.
    """

    def __init__(
        self,
        relays: Iterable[str] | None = None,
        transport_factory: TransportFactory | None = None,
        publish_timeout: float = PUBLISH_TIMEOUT,
        idle_timeout: float = SUBSCRIBE_IDLE_TIMEOUT,
        total_timeout: float = SUBSCRIBE_TOTAL_TIMEOUT,
        max_retries: int = CONNECT_MAX_RETRIES,
        backoff_base: float = CONNECT_BACKOFF_BASE,
        verify_events: bool = True,
    ) -> None:
        self.relays = list(relays) if relays is not None else list(DEFAULT_RELAYS)
        self.publish_timeout = publish_timeout
        self.idle_timeout = idle_timeout
        self.total_timeout = total_timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.verify_events = verify_events

        self._transport_factory = transport_factory or websocket_transport
        self._sessions: dict[str, RelaySession] = {}
        self._connect_locks: dict[str, asyncio.Lock] = {}

    async def __aenter__(self) -> RelayClient:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def _evict(self, session: RelaySession) -> None:
        if self._sessions.get(session.url) is session:
            del self._sessions[session.url]

    def is_connected(self, url: str) -> bool:
        session = self._sessions.get(url)
        return session is not None and session.is_open

    # -- Connection lifecycle ---------------------------------------------

    async def connect(self, url: str) -> RelaySession:
        """Return an open session for ``url``, reusing a cached one.

        Retries with exponential backoff (1s, 2s, 4s by default). Concurrent
        calls for the same URL share one connection attempt.
        """
        lock = self._connect_locks.setdefault(url, asyncio.Lock())
        async with lock:
            session = self._sessions.get(url)
            if session is not None and session.is_open:
                return session

            attempts = self.max_retries + 1
            last_error: Exception | None = None
            for attempt in range(attempts):
                if attempt:
                    delay = self.backoff_base * (2 ** (attempt - 1))
                    log.debug("Retrying %s in %.1fs", url, delay)
                    await asyncio.sleep(delay)

                session = RelaySession(url, on_closed=self._evict)
                try:
                    await session.open(self._transport_factory)
                except Exception as e:
                    last_error = e
                    log.warning(
                        "Connect to %s failed (attempt %d/%d): %s",
                        url, attempt + 1, attempts, e,
                    )
                    continue

                self._sessions[url] = session
                log.info("Connected to relay %s", url)
                return session

            raise RelayConnectionError(
                f"Could not connect to {url} after {attempts} attempts: {last_error}"
            ) from last_error

    async def disconnect(self, url: str) -> None:
        session = self._sessions.pop(url, None)
        if session is not None:
            await session.close()

    async def close(self) -> None:
        """Close every cached session."""
        for url in list(self._sessions):
            await self.disconnect(url)

    # -- Publish ----------------------------------------------------------

    async def publish(
        self,
        event: Event,
        relays: Iterable[str] | None = None,
    ) -> dict[str, PublishResult]:
        """Publish a signed event to every relay concurrently.

        The event is verified locally first; an invalid signature raises
        SignatureError and nothing is sent. Returns a result per relay URL.
        """
        if not verify_event(event):
            raise SignatureError(f"Refusing to publish event {event.id[:12]}: invalid signature")

        urls = list(dict.fromkeys(relays if relays is not None else self.relays))
        results = await asyncio.gather(*(self._publish_one(url, event) for url in urls))
        accepted = sum(1 for r in results if r.success)
        log.info("Published %s to %d/%d relays", event.id[:12], accepted, len(urls))
        return dict(zip(urls, results))

    async def _publish_one(self, url: str, event: Event) -> PublishResult:
        try:
            session = await self.connect(url)
            await session.send(make_event(event))
            return await asyncio.wait_for(
                self._await_ok(session, event.id),
                timeout=self.publish_timeout,
            )
        except asyncio.TimeoutError:
            log.warning("No OK from %s for %s within %.1fs", url, event.id[:12], self.publish_timeout)
            return PublishResult(False, "timeout")
        except RelayConnectionError as e:
            log.warning("Publish to %s failed: %s", url, e)
            return PublishResult(False, str(e))
        except Exception as e:
            log.warning("Publish to %s failed: %s", url, e)
            return PublishResult(False, f"{type(e).__name__}: {e}")

    async def _await_ok(self, session: RelaySession, event_id: str) -> PublishResult:
        while True:
            try:
                frame = await session.recv()
            except ProtocolError as e:
                log.warning("Skipping malformed frame from %s: %s", session.url, e)
                continue

            if frame[0] == OK and frame[1] == event_id:
                accepted = frame[2]
                message = frame[3] if len(frame) > 3 else ""
                if accepted:
                    return PublishResult(True, None, message)
                log.warning("Relay %s rejected %s: %s", session.url, event_id[:12], message)
                return PublishResult(False, message or "rejected", message)
            if frame[0] == NOTICE:
                log.info("Notice from %s: %s", session.url, frame[1])

    # -- Subscribe --------------------------------------------------------

    async def subscribe(
        self,
        filter_: dict[str, Any],
        relays: Iterable[str] | None = None,
        idle_timeout: float | None = None,
        total_timeout: float | None = None,
    ) -> list[Event]:
        """Collect events matching ``filter_`` from each relay in turn.

        Per relay, collection stops at EOSE, after ``idle_timeout`` without a
        new event, or after ``total_timeout`` overall. Results from all relays
        are concatenated; duplicates are possible.
        """
        idle = self.idle_timeout if idle_timeout is None else idle_timeout
        total = self.total_timeout if total_timeout is None else total_timeout
        urls = list(dict.fromkeys(relays if relays is not None else self.relays))

        events: list[Event] = []
        for url in urls:
            try:
                received = await self._subscribe_one(url, filter_, idle, total)
            except RelayConnectionError as e:
                log.warning("Subscription on %s failed: %s", url, e)
                continue
            log.info("Received %d events from %s", len(received), url)
            events.extend(received)
        return events

    async def _subscribe_one(
        self,
        url: str,
        filter_: dict[str, Any],
        idle_timeout: float,
        total_timeout: float,
    ) -> list[Event]:
        session = await self.connect(url)
        sub_id = new_subscription_id()
        await session.send(make_req(sub_id, filter_))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + total_timeout
        idle_deadline = loop.time() + idle_timeout
        collected: list[Event] = []

        try:
            while True:
                remaining = min(deadline, idle_deadline) - loop.time()
                if remaining <= 0:
                    break
                try:
                    frame = await asyncio.wait_for(session.recv(), timeout=remaining)
                except asyncio.TimeoutError:
                    log.debug("Subscription %s on %s timed out", sub_id, url)
                    break
                except ProtocolError as e:
                    log.warning("Skipping malformed frame from %s: %s", url, e)
                    continue

                frame_type = frame[0]
                if frame_type == EVENT and len(frame) >= 3 and frame[1] == sub_id:
                    event = self._accept_event(url, frame[2])
                    if event is not None:
                        collected.append(event)
                        idle_deadline = loop.time() + idle_timeout
                elif frame_type == EOSE and frame[1] == sub_id:
                    break
                elif frame_type == CLOSED and frame[1] == sub_id:
                    log.warning("Relay %s closed subscription: %s", url, frame[2:] or "")
                    break
                elif frame_type == NOTICE:
                    log.info("Notice from %s: %s", url, frame[1])
        finally:
            if session.is_open:
                try:
                    await session.send(make_close(sub_id))
                except RelayConnectionError as e:
                    log.debug("Could not close subscription on %s: %s", url, e)

        return collected

    def _accept_event(self, url: str, data: Any) -> Event | None:
        try:
            event = Event.from_dict(data)
        except EventError as e:
            log.warning("Skipping malformed event from %s: %s", url, e)
            return None
        if self.verify_events and not verify_event(event):
            log.warning("Skipping event %s from %s: invalid signature", event.id[:12], url)
            return None
        return event
