"""
Tests for the relay client — connection cache, retry/backoff, publish
fan-out with OK correlation, and subscriptions.

All relays are in-memory fakes; no network connections are made.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from nac.crypto.keys import KeyPair
from nac.nostr.event import Event, SignatureError, sign_event
from nac.nostr.relay import (
    PublishResult,
    RelayClient,
    RelayConnectionError,
    RelaySession,
    SessionState,
)

ACCEPT = "wss://accept.test"
REJECT = "wss://reject.test"
SILENT = "wss://silent.test"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeTransport:
    """In-memory websocket stand-in. ``handler(frame)`` returns replies."""

    def __init__(self, url, handler=None):
        self.url = url
        self.handler = handler
        self.sent: list = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, reply) -> None:
        if isinstance(reply, Exception):
            self.inbox.put_nowait(reply)
        else:
            self.inbox.put_nowait(reply if isinstance(reply, str) else json.dumps(reply))

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionResetError("transport closed")
        frame = json.loads(message)
        self.sent.append(frame)
        if self.handler is not None:
            for reply in self.handler(frame) or []:
                self.push(reply)

    async def recv(self) -> str:
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeNetwork:
    """Transport factory. ``failures[url]`` refusals before success (-1 = always)."""

    def __init__(self, handlers=None, failures=None, delay=None):
        self.handlers = handlers or {}
        self.failures = dict(failures or {})
        self.delay = delay
        self.attempts: dict[str, int] = {}
        self.transports: dict[str, list[FakeTransport]] = {}

    async def connect(self, url: str) -> FakeTransport:
        self.attempts[url] = self.attempts.get(url, 0) + 1
        if self.delay is not None:
            await asyncio.sleep(self.delay)
        remaining = self.failures.get(url, 0)
        if remaining:
            if remaining > 0:
                self.failures[url] = remaining - 1
            raise ConnectionRefusedError(f"refused: {url}")
        transport = FakeTransport(url, self.handlers.get(url))
        self.transports.setdefault(url, []).append(transport)
        return transport


def accept(frame):
    if frame[0] == "EVENT":
        return [["OK", frame[1]["id"], True, ""]]
    return []


def reject(frame):
    if frame[0] == "EVENT":
        return [["OK", frame[1]["id"], False, "blocked: spam"]]
    return []


def silent(frame):
    return []


def serve(events, extra=()):
    """Relay that answers a REQ with ``events``, ``extra`` frames, then EOSE."""
    def handler(frame):
        if frame[0] != "REQ":
            return []
        sub_id = frame[1]
        replies = list(extra)
        replies += [["EVENT", sub_id, e.to_dict()] for e in events]
        replies.append(["EOSE", sub_id])
        return replies
    return handler


@pytest.fixture(scope="module")
def pair():
    return KeyPair.from_private_key((11).to_bytes(32, "big"))


@pytest.fixture(scope="module")
def signed(pair):
    return sign_event(Event.create(pair.public_key_hex, 1, "hello", created_at=1700000000), pair.private_key)


@pytest.fixture(scope="module")
def other_signed(pair):
    return sign_event(Event.create(pair.public_key_hex, 1, "second", created_at=1700000001), pair.private_key)


def _client(net: FakeNetwork, relays, **kwargs) -> RelayClient:
    kwargs.setdefault("max_retries", 0)
    return RelayClient(relays, transport_factory=net.connect, **kwargs)


# ---------------------------------------------------------------------------
# TestConnect
# ---------------------------------------------------------------------------

class TestConnect:

    @pytest.mark.asyncio
    async def test_connect_opens_session(self):
        net = FakeNetwork()
        client = _client(net, [ACCEPT])
        session = await client.connect(ACCEPT)
        assert isinstance(session, RelaySession)
        assert session.state is SessionState.OPEN
        assert client.is_connected(ACCEPT)

    @pytest.mark.asyncio
    async def test_connect_reuses_open_session(self):
        net = FakeNetwork()
        client = _client(net, [ACCEPT])
        first = await client.connect(ACCEPT)
        second = await client.connect(ACCEPT)
        assert first is second
        assert net.attempts[ACCEPT] == 1

    @pytest.mark.asyncio
    async def test_concurrent_connect_single_session(self):
        net = FakeNetwork(delay=0.01)
        client = _client(net, [ACCEPT])
        a, b, c = await asyncio.gather(*(client.connect(ACCEPT) for _ in range(3)))
        assert a is b is c
        assert net.attempts[ACCEPT] == 1
        assert len(net.transports[ACCEPT]) == 1

    @pytest.mark.asyncio
    async def test_retry_with_backoff(self):
        net = FakeNetwork(failures={ACCEPT: 2})
        client = _client(net, [ACCEPT], max_retries=3, backoff_base=1.0)
        with patch("nac.nostr.relay.asyncio.sleep", new_callable=AsyncMock) as sleep:
            session = await client.connect(ACCEPT)
        assert session.is_open
        assert net.attempts[ACCEPT] == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        net = FakeNetwork(failures={ACCEPT: -1})
        client = _client(net, [ACCEPT], max_retries=3, backoff_base=1.0)
        with patch("nac.nostr.relay.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(RelayConnectionError, match="accept.test"):
                await client.connect(ACCEPT)
        assert net.attempts[ACCEPT] == 4
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 4.0]
        assert not client.is_connected(ACCEPT)

    @pytest.mark.asyncio
    async def test_transport_error_evicts_session(self):
        net = FakeNetwork()
        client = _client(net, [ACCEPT])
        session = await client.connect(ACCEPT)
        net.transports[ACCEPT][0].push(ConnectionResetError("reset by peer"))

        with pytest.raises(RelayConnectionError, match="reset by peer"):
            await session.recv()
        assert session.state is SessionState.CLOSED
        assert not client.is_connected(ACCEPT)

        fresh = await client.connect(ACCEPT)
        assert fresh is not session
        assert net.attempts[ACCEPT] == 2

    @pytest.mark.asyncio
    async def test_send_on_closed_session_raises(self):
        net = FakeNetwork()
        client = _client(net, [ACCEPT])
        session = await client.connect(ACCEPT)
        await session.close()
        with pytest.raises(RelayConnectionError, match="closed"):
            await session.send(["CLOSE", "x"])

    @pytest.mark.asyncio
    async def test_disconnect_and_close(self):
        net = FakeNetwork()
        client = _client(net, [ACCEPT, REJECT])
        await client.connect(ACCEPT)
        await client.connect(REJECT)

        await client.disconnect(ACCEPT)
        assert not client.is_connected(ACCEPT)
        assert net.transports[ACCEPT][0].closed
        assert client.is_connected(REJECT)

        await client.close()
        assert not client.is_connected(REJECT)
        assert net.transports[REJECT][0].closed

    @pytest.mark.asyncio
    async def test_context_manager_closes(self):
        net = FakeNetwork()
        async with _client(net, [ACCEPT]) as client:
            await client.connect(ACCEPT)
        assert net.transports[ACCEPT][0].closed


# ---------------------------------------------------------------------------
# TestPublish
# ---------------------------------------------------------------------------

class TestPublish:

    @pytest.mark.asyncio
    async def test_accept_reject_timeout(self, signed):
        net = FakeNetwork(handlers={ACCEPT: accept, REJECT: reject, SILENT: silent})
        client = _client(net, [ACCEPT, REJECT, SILENT], publish_timeout=0.2)

        results = await client.publish(signed)

        assert set(results) == {ACCEPT, REJECT, SILENT}
        assert results[ACCEPT] == PublishResult(True, None, "")
        assert results[REJECT].success is False
        assert results[REJECT].error == "blocked: spam"
        assert results[SILENT] == PublishResult(False, "timeout")
        for url in (ACCEPT, REJECT, SILENT):
            assert net.transports[url][0].sent == [["EVENT", signed.to_dict()]]

    @pytest.mark.asyncio
    async def test_connection_failure_isolated(self, signed):
        net = FakeNetwork(handlers={ACCEPT: accept}, failures={REJECT: -1})
        client = _client(net, [ACCEPT, REJECT], publish_timeout=0.2)

        results = await client.publish(signed)

        assert results[ACCEPT].success
        assert not results[REJECT].success
        assert "reject.test" in results[REJECT].error

    @pytest.mark.asyncio
    async def test_ok_correlated_by_event_id(self, signed):
        def noisy(frame):
            if frame[0] != "EVENT":
                return []
            return [
                "garbage frame",
                ["NOTICE", "hello"],
                ["OK", "ff" * 32, False, "other event"],
                ["OK", frame[1]["id"], True, "duplicate: already have it"],
            ]

        net = FakeNetwork(handlers={ACCEPT: noisy})
        client = _client(net, [ACCEPT], publish_timeout=1.0)
        results = await client.publish(signed)
        assert results[ACCEPT] == PublishResult(True, None, "duplicate: already have it")

    @pytest.mark.asyncio
    async def test_invalid_signature_aborts(self, signed):
        net = FakeNetwork(handlers={ACCEPT: accept})
        client = _client(net, [ACCEPT])
        forged = Event.from_dict(dict(signed.to_dict(), content="forged"))

        with pytest.raises(SignatureError):
            await client.publish(forged)
        assert net.attempts == {}

    @pytest.mark.asyncio
    async def test_unsigned_event_aborts(self, pair):
        net = FakeNetwork(handlers={ACCEPT: accept})
        client = _client(net, [ACCEPT])
        with pytest.raises(SignatureError):
            await client.publish(Event.create(pair.public_key_hex, 1, "unsigned"))
        assert net.attempts == {}

    @pytest.mark.asyncio
    async def test_duplicate_urls_published_once(self, signed):
        net = FakeNetwork(handlers={ACCEPT: accept})
        client = _client(net, [ACCEPT, ACCEPT])
        results = await client.publish(signed)
        assert list(results) == [ACCEPT]
        assert len(net.transports[ACCEPT][0].sent) == 1


# ---------------------------------------------------------------------------
# TestSubscribe
# ---------------------------------------------------------------------------

class TestSubscribe:

    @pytest.mark.asyncio
    async def test_collects_until_eose(self, signed, other_signed):
        net = FakeNetwork(handlers={ACCEPT: serve([signed, other_signed])})
        client = _client(net, [ACCEPT])

        events = await client.subscribe({"kinds": [1]})

        assert events == [signed, other_signed]
        sent = net.transports[ACCEPT][0].sent
        assert sent[0][0] == "REQ"
        assert sent[0][2] == {"kinds": [1]}
        assert sent[-1] == ["CLOSE", sent[0][1]]

    @pytest.mark.asyncio
    async def test_fresh_subscription_ids(self, signed):
        net = FakeNetwork(handlers={ACCEPT: serve([signed])})
        client = _client(net, [ACCEPT])
        await client.subscribe({"kinds": [1]})
        await client.subscribe({"kinds": [1]})
        reqs = [f for f in net.transports[ACCEPT][0].sent if f[0] == "REQ"]
        assert len(reqs) == 2
        assert reqs[0][1] != reqs[1][1]

    @pytest.mark.asyncio
    async def test_skips_invalid_and_foreign_frames(self, signed):
        forged = dict(signed.to_dict(), content="forged")
        extra = [
            "not json",
            ["NOTICE", "rate limited"],
            ["EVENT", "other-sub", signed.to_dict()],
            ["EVENT", "__SUB__", {"kind": 1}],
        ]

        def handler(frame):
            if frame[0] != "REQ":
                return []
            sub_id = frame[1]
            replies = [
                [f[0], sub_id, f[2]] if isinstance(f, list) and f[1] == "__SUB__" else f
                for f in extra
            ]
            replies.append(["EVENT", sub_id, forged])
            replies.append(["EVENT", sub_id, signed.to_dict()])
            replies.append(["EOSE", sub_id])
            return replies

        net = FakeNetwork(handlers={ACCEPT: handler})
        client = _client(net, [ACCEPT])
        events = await client.subscribe({"kinds": [1]})
        assert events == [signed]

    @pytest.mark.asyncio
    async def test_verification_can_be_disabled(self, signed):
        forged = dict(signed.to_dict(), content="forged")

        def handler(frame):
            if frame[0] != "REQ":
                return []
            return [["EVENT", frame[1], forged], ["EOSE", frame[1]]]

        net = FakeNetwork(handlers={ACCEPT: handler})
        client = _client(net, [ACCEPT], verify_events=False)
        events = await client.subscribe({"kinds": [1]})
        assert [e.content for e in events] == ["forged"]

    @pytest.mark.asyncio
    async def test_idle_timeout(self, signed):
        def handler(frame):
            if frame[0] != "REQ":
                return []
            return [["EVENT", frame[1], signed.to_dict()]]  # no EOSE

        net = FakeNetwork(handlers={ACCEPT: handler})
        client = _client(net, [ACCEPT])
        loop = asyncio.get_running_loop()
        start = loop.time()

        events = await client.subscribe({"kinds": [1]}, idle_timeout=0.1, total_timeout=5.0)

        assert events == [signed]
        assert loop.time() - start < 2.0
        assert net.transports[ACCEPT][0].sent[-1][0] == "CLOSE"

    @pytest.mark.asyncio
    async def test_total_timeout(self, signed):
        class Chatty(FakeTransport):
            """Streams the same event forever, never sending EOSE."""
            sub_id = None

            async def send(self, message):
                await super().send(message)
                frame = json.loads(message)
                if frame[0] == "REQ":
                    self.sub_id = frame[1]

            async def recv(self):
                await asyncio.sleep(0.02)
                return json.dumps(["EVENT", self.sub_id, signed.to_dict()])

        transports = []

        async def factory(url):
            transports.append(Chatty(url))
            return transports[-1]

        client = RelayClient([ACCEPT], transport_factory=factory, max_retries=0)
        loop = asyncio.get_running_loop()
        start = loop.time()

        events = await client.subscribe({"kinds": [1]}, idle_timeout=1.0, total_timeout=0.3)

        elapsed = loop.time() - start
        assert 0.25 <= elapsed < 2.0
        assert len(events) >= 2
        assert transports[0].sent[-1] == ["CLOSE", transports[0].sub_id]

    @pytest.mark.asyncio
    async def test_relay_closed_subscription(self, signed):
        def handler(frame):
            if frame[0] != "REQ":
                return []
            return [["EVENT", frame[1], signed.to_dict()], ["CLOSED", frame[1], "auth-required: nope"]]

        net = FakeNetwork(handlers={ACCEPT: handler})
        client = _client(net, [ACCEPT])
        events = await client.subscribe({"kinds": [1]}, idle_timeout=5.0, total_timeout=5.0)
        assert events == [signed]

    @pytest.mark.asyncio
    async def test_failing_relay_does_not_abort_others(self, signed, other_signed):
        net = FakeNetwork(
            handlers={ACCEPT: serve([signed]), SILENT: serve([other_signed])},
            failures={REJECT: -1},
        )
        client = _client(net, [ACCEPT, REJECT, SILENT])
        events = await client.subscribe({"kinds": [1]})
        assert events == [signed, other_signed]

    @pytest.mark.asyncio
    async def test_dropped_connection_mid_subscription(self, signed, other_signed):
        def dropping(frame):
            if frame[0] != "REQ":
                return []
            return [["EVENT", frame[1], signed.to_dict()], ConnectionResetError("dropped")]

        net = FakeNetwork(handlers={ACCEPT: dropping, SILENT: serve([other_signed])})
        client = _client(net, [ACCEPT, SILENT])
        events = await client.subscribe({"kinds": [1]})
        assert events == [other_signed]
        assert not client.is_connected(ACCEPT)
