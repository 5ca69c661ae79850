"""
Tests for the client protocol state machine, run against the real router
through an in-memory loopback instead of a socket.
"""

import json
import asyncio

import pytest

from relay_client.session import ClientSession, ReceiveError, KeyRequestTimeout
from relay_crypto import KeyExchangeEngine, PeerState, CipherEnvelope, seal
from relay_server.registry import SessionRegistry
from relay_server.router import RelayRouter


class SequenceIds:
    def __init__(self, *ids):
        self._ids = iter(ids)

    def generate(self) -> str:
        return next(self._ids)


class LoopbackRelay:
    """Router + registry with client sessions attached by in-memory queues"""

    def __init__(self, *ids):
        self.registry = SessionRegistry(SequenceIds(*ids))
        self.router = RelayRouter(self.registry)
        self.to_server = []
        self.clients = {}
        self.inboxes = {}
        self.received = {}
        self.errors = {}

    def connect(self, **kwargs) -> ClientSession:
        inbox = []
        connection = _InboxConnection(inbox)
        session_id = self.registry.allocate(connection)

        async def send(frame: dict):
            self.to_server.append((session_id, json.dumps(frame)))

        self.received[session_id] = []
        self.errors[session_id] = []
        client = ClientSession(
            send,
            on_message=lambda sender, text: self.received[session_id].append((sender, text)),
            on_error=self.errors[session_id].append,
            **kwargs
        )
        self.clients[session_id] = client
        self.inboxes[session_id] = inbox
        connection.send({"type": "init", "sessionId": session_id})
        return client

    def disconnect(self, session_id: str):
        self.registry.remove(session_id)
        self.inboxes.pop(session_id)
        self.clients.pop(session_id).close()

    async def pump(self):
        """Deliver frames in both directions until everything is quiet"""
        while True:
            moved = False
            while self.to_server:
                sender_id, raw = self.to_server.pop(0)
                self.router.dispatch(sender_id, raw)
                moved = True
            for session_id, inbox in self.inboxes.items():
                while inbox:
                    await self.clients[session_id].handle_frame(inbox.pop(0))
                    moved = True
            if not moved:
                return


class _InboxConnection:
    def __init__(self, inbox):
        self.inbox = inbox

    def send(self, message: dict):
        self.inbox.append(json.dumps(message))


def test_init_assigns_id_and_publishes_key():
    async def scenario():
        relay = LoopbackRelay("123456")
        alice = relay.connect()
        await relay.pump()
        return relay, alice

    relay, alice = asyncio.run(scenario())

    assert alice.session_id == "123456"
    assert relay.registry.get_public_key("123456") == alice.engine.public_key_b64


def test_first_message_waits_for_key_then_delivers():
    async def scenario():
        relay = LoopbackRelay("123456", "654321")
        alice = relay.connect()
        bob = relay.connect()
        await relay.pump()

        sent_now = await bob.send_message("123456", "hello")
        assert not sent_now
        assert bob.state("123456") is PeerState.KEY_REQUESTED
        assert bob.pending_for("123456") == "hello"

        await relay.pump()
        return relay, alice, bob

    relay, alice, bob = asyncio.run(scenario())

    assert relay.received["123456"] == [("654321", "hello")]
    assert bob.state("123456") is PeerState.ESTABLISHED
    assert bob.pending_for("123456") is None
    # Alice bootstrapped from the key the relay attached
    assert alice.state("654321") is PeerState.ESTABLISHED
    assert alice.engine.get("654321").shared_key == bob.engine.get("123456").shared_key


def test_reply_goes_out_immediately():
    async def scenario():
        relay = LoopbackRelay("123456", "654321")
        alice = relay.connect()
        bob = relay.connect()
        await relay.pump()
        await bob.send_message("123456", "hello")
        await relay.pump()

        sent_now = await alice.send_message("654321", "hi bob")
        await relay.pump()
        return relay, sent_now

    relay, sent_now = asyncio.run(scenario())

    assert sent_now
    assert relay.received["654321"] == [("123456", "hi bob")]
    assert relay.errors == {"123456": [], "654321": []}


def test_only_latest_pending_message_is_kept():
    async def scenario():
        relay = LoopbackRelay("123456", "654321")
        relay.connect()
        bob = relay.connect()
        await relay.pump()

        await bob.send_message("123456", "one")
        await bob.send_message("123456", "two")
        await relay.pump()
        return relay

    relay = asyncio.run(scenario())

    assert relay.received["123456"] == [("654321", "two")]


def test_unknown_peer_stays_requested_without_timeout():
    async def scenario():
        relay = LoopbackRelay("654321")
        bob = relay.connect()
        await relay.pump()

        await bob.send_message("999999", "anyone there?")
        await relay.pump()
        return relay, bob

    relay, bob = asyncio.run(scenario())

    assert bob.state("999999") is PeerState.KEY_REQUESTED
    assert bob.pending_for("999999") == "anyone there?"
    assert relay.errors["654321"] == []


def test_key_request_times_out():
    async def scenario():
        relay = LoopbackRelay("654321")
        bob = relay.connect(key_request_timeout=0.01)
        await relay.pump()

        await bob.send_message("999999", "anyone there?")
        await relay.pump()
        await asyncio.sleep(0.05)
        return relay, bob

    relay, bob = asyncio.run(scenario())

    errors = relay.errors["654321"]
    assert len(errors) == 1
    assert isinstance(errors[0], KeyRequestTimeout)
    assert errors[0].peer_id == "999999"
    assert bob.state("999999") is PeerState.UNKNOWN
    assert bob.pending_for("999999") is None


def test_timeout_disarmed_once_key_arrives():
    async def scenario():
        relay = LoopbackRelay("123456", "654321")
        relay.connect()
        bob = relay.connect(key_request_timeout=0.02)
        await relay.pump()

        await bob.send_message("123456", "hello")
        await relay.pump()
        await asyncio.sleep(0.05)
        return relay

    relay = asyncio.run(scenario())

    assert relay.errors["654321"] == []
    assert relay.received["123456"] == [("654321", "hello")]


def test_late_publisher_reachable_on_retry():
    async def scenario():
        relay = LoopbackRelay("654321", "123456")
        bob = relay.connect()
        await relay.pump()

        # Bob asks for a session that has not connected yet
        await bob.send_message("123456", "early")
        await relay.pump()

        relay.connect()
        await relay.pump()
        await bob.send_message("123456", "retry")
        await relay.pump()
        return relay

    relay = asyncio.run(scenario())

    assert relay.received["123456"] == [("654321", "retry")]


def test_message_to_disconnected_peer_is_lost_quietly():
    async def scenario():
        relay = LoopbackRelay("123456", "654321")
        alice = relay.connect()
        bob = relay.connect()
        await relay.pump()
        await bob.send_message("123456", "hello")
        await relay.pump()

        relay.disconnect("123456")
        sent_now = await bob.send_message("123456", "are you still there?")
        await relay.pump()
        return relay, sent_now, alice

    relay, sent_now, alice = asyncio.run(scenario())

    assert sent_now
    assert relay.errors["654321"] == []
    assert alice.engine.peer_ids() == []


def run_frame(client: ClientSession, frame):
    raw = frame if isinstance(frame, str) else json.dumps(frame)
    asyncio.run(client.handle_frame(raw))


def make_client():
    received, errors, sent = [], [], []

    async def send(frame):
        sent.append(frame)

    client = ClientSession(send, on_message=lambda s, t: received.append((s, t)), on_error=errors.append)
    return client, received, errors, sent


def test_message_without_sender_key_cannot_be_read():
    client, received, errors, _ = make_client()
    envelope = seal(b"k" * 32, "hello")

    run_frame(client, {"type": "message", "from": "654321", "ciphertext": envelope.to_wire()})

    assert received == []
    assert len(errors) == 1
    assert isinstance(errors[0], ReceiveError)
    assert errors[0].sender_id == "654321"
    assert client.state("654321") is PeerState.UNKNOWN


def test_tampered_message_reported_not_displayed():
    client, received, errors, _ = make_client()
    bob = KeyExchangeEngine()
    shared = bob.establish("123456", client.engine.public_key_b64).shared_key
    wire = seal(shared, "hello").to_wire()
    wire["data"][0] ^= 0xFF

    run_frame(client, {
        "type": "message",
        "from": "654321",
        "ciphertext": wire,
        "senderPublicKey": bob.public_key_b64,
    })

    assert received == []
    assert isinstance(errors[0], ReceiveError)


def test_message_for_someone_else_is_reported():
    client, received, errors, _ = make_client()
    bob = KeyExchangeEngine()
    carol = KeyExchangeEngine()
    wrong = bob.establish("777777", carol.public_key_b64).shared_key

    run_frame(client, {
        "type": "message",
        "from": "654321",
        "ciphertext": seal(wrong, "not for you").to_wire(),
        "senderPublicKey": bob.public_key_b64,
    })

    assert received == []
    assert isinstance(errors[0], ReceiveError)


def test_malformed_ciphertext_reported():
    client, received, errors, _ = make_client()
    bob = KeyExchangeEngine()

    run_frame(client, {
        "type": "message",
        "from": "654321",
        "ciphertext": {"iv": "zzz", "data": None},
        "senderPublicKey": bob.public_key_b64,
    })

    assert received == []
    assert isinstance(errors[0], ReceiveError)


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2]",
    json.dumps({"type": "mystery"}),
    json.dumps({"type": "init"}),
    json.dumps({"type": "publicKey", "for": "1", "key": "!!"}),
    json.dumps({"type": "publicKey", "key": "abc"}),
    json.dumps({"type": "message", "ciphertext": {}}),
])
def test_bad_frames_are_ignored(raw):
    client, received, errors, sent = make_client()

    run_frame(client, raw)

    assert received == []
    assert sent == []


def test_reinit_rotates_keys_and_forgets_peers():
    client, _, _, sent = make_client()
    bob = KeyExchangeEngine()

    run_frame(client, {"type": "init", "sessionId": "123456"})
    first_key = client.engine.public_key_b64
    run_frame(client, {"type": "publicKey", "for": "654321", "key": bob.public_key_b64})
    assert client.state("654321") is PeerState.ESTABLISHED

    run_frame(client, {"type": "init", "sessionId": "222222"})

    assert client.session_id == "222222"
    assert client.engine.public_key_b64 != first_key
    assert client.state("654321") is PeerState.UNKNOWN
    assert sent == [
        {"type": "publicKey", "key": first_key},
        {"type": "publicKey", "key": client.engine.public_key_b64},
    ]


def test_sealed_frame_shape():
    client, _, _, sent = make_client()
    bob = KeyExchangeEngine()
    run_frame(client, {"type": "publicKey", "for": "654321", "key": bob.public_key_b64})

    assert asyncio.run(client.send_message("654321", "hello"))

    frame = sent[-1]
    assert frame["type"] == "message"
    assert frame["to"] == "654321"
    envelope = CipherEnvelope.from_wire(frame["ciphertext"])
    assert len(envelope.iv) == 12


def test_empty_message_rejected():
    client, _, _, _ = make_client()

    with pytest.raises(ValueError):
        asyncio.run(client.send_message("654321", ""))
