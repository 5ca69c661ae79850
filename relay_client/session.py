"""
Client protocol state for one relay connection.

ClientSession owns the key exchange engine and decides, for each outgoing
message, whether it can be sealed now or must wait for the recipient's public
key. It does no I/O of its own: frames go out through the ``send`` coroutine
it is given and come in through ``handle_frame``.
"""

import json
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Union

from relay_crypto import (
    KeyExchangeEngine,
    PeerState,
    CipherEnvelope,
    CryptoError,
    seal,
    open_envelope,
)

logger = logging.getLogger(__name__)


class ReceiveError(Exception):
    """An inbound message was dropped because it could not be decrypted"""

    def __init__(self, sender_id: Optional[str], reason: str):
        super().__init__(f"Could not read message from {sender_id}: {reason}")
        self.sender_id = sender_id
        self.reason = reason


class KeyRequestTimeout(Exception):
    """A peer's public key did not arrive in time; the queued message was dropped"""

    def __init__(self, peer_id: str, timeout: float):
        super().__init__(f"No public key from {peer_id} after {timeout:g}s")
        self.peer_id = peer_id
        self.timeout = timeout


SendFn = Callable[[dict], Awaitable[None]]
MessageCallback = Callable[[str, str], None]
ErrorCallback = Callable[[Exception], None]


class ClientSession:
    """
    Key bootstrap and message sealing for a single relay session.
    """

    def __init__(self, send: SendFn,
                 on_message: Optional[MessageCallback] = None,
                 on_error: Optional[ErrorCallback] = None,
                 key_request_timeout: Optional[float] = None):
        """
        Args:
            send: Coroutine that writes one frame to the relay
            on_message: Called with (sender_id, plaintext) for each readable message
            on_error: Called with ReceiveError or KeyRequestTimeout
            key_request_timeout: Seconds to wait for a requested key, None waits forever
        """
        self._send = send
        self.on_message = on_message
        self.on_error = on_error
        self.key_request_timeout = key_request_timeout
        self.engine = KeyExchangeEngine()
        self.session_id: Optional[str] = None
        # One queued message per peer still waiting for a key
        self._pending: Dict[str, str] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    async def handle_frame(self, raw: Union[str, bytes]):
        """Process one frame from the relay. Never raises for bad input."""
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Ignoring unparseable frame: %s", e)
            return
        if not isinstance(frame, dict):
            logger.warning("Ignoring non-object frame")
            return

        kind = frame.get("type")
        if kind == "init":
            await self._on_init(frame)
        elif kind == "publicKey":
            await self._on_public_key(frame)
        elif kind == "message":
            await self._on_message(frame)
        else:
            logger.warning("Ignoring frame of unknown type %r", kind)

    async def send_message(self, peer_id: str, text: str) -> bool:
        """
        Send text to a peer.

        Returns:
            True if the message went out now, False if it is waiting for the
            peer's public key
        """
        if not peer_id or not text:
            raise ValueError("Recipient and message text are required")

        peer = self.engine.get(peer_id)
        if peer is not None:
            await self._send_sealed(peer_id, peer.shared_key, text)
            return True

        # Newer text replaces anything still queued for this peer
        self._pending[peer_id] = text
        self.engine.mark_requested(peer_id)
        self._arm_timer(peer_id)
        await self._send({"type": "getPublicKey", "for": peer_id})
        return False

    def state(self, peer_id: str) -> PeerState:
        return self.engine.state(peer_id)

    def pending_for(self, peer_id: str) -> Optional[str]:
        return self._pending.get(peer_id)

    def close(self):
        """Drop queued messages and all key material"""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._pending.clear()
        self.engine.reset()

    async def _on_init(self, frame: dict):
        session_id = frame.get("sessionId")
        if not isinstance(session_id, str):
            logger.warning("init frame without a session id")
            return
        self.close()
        self.session_id = session_id
        logger.info("Assigned session id %s", session_id)
        await self._send({"type": "publicKey", "key": self.engine.public_key_b64})

    async def _on_public_key(self, frame: dict):
        peer_id = frame.get("for")
        if not isinstance(peer_id, str):
            logger.warning("publicKey frame without a peer id")
            return
        try:
            peer = self.engine.establish(peer_id, frame.get("key"))
        except CryptoError as e:
            logger.warning("Unusable public key for %s: %s", peer_id, e)
            return
        await self._flush(peer_id, peer.shared_key)

    async def _on_message(self, frame: dict):
        sender_id = frame.get("from")
        if not isinstance(sender_id, str):
            logger.warning("message frame without a sender id")
            return

        peer = self.engine.get(sender_id)
        if peer is None:
            # First contact: the relay attaches the sender's key for us
            try:
                peer = self.engine.establish(sender_id, frame.get("senderPublicKey"))
            except CryptoError as e:
                self._report(ReceiveError(sender_id, f"no usable sender key ({e})"))
                return

        try:
            envelope = CipherEnvelope.from_wire(frame.get("ciphertext"))
            text = open_envelope(peer.shared_key, envelope)
        except CryptoError as e:
            self._report(ReceiveError(sender_id, str(e)))
            return

        if self.on_message is not None:
            self.on_message(sender_id, text)
        await self._flush(sender_id, peer.shared_key)

    async def _flush(self, peer_id: str, shared_key: bytes):
        handle = self._timers.pop(peer_id, None)
        if handle is not None:
            handle.cancel()
        text = self._pending.pop(peer_id, None)
        if text is not None:
            await self._send_sealed(peer_id, shared_key, text)

    async def _send_sealed(self, peer_id: str, shared_key: bytes, text: str):
        envelope = seal(shared_key, text)
        await self._send({
            "type": "message",
            "to": peer_id,
            "ciphertext": envelope.to_wire(),
        })

    def _arm_timer(self, peer_id: str):
        if self.key_request_timeout is None:
            return
        previous = self._timers.pop(peer_id, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._timers[peer_id] = loop.call_later(
            self.key_request_timeout, self._expire_request, peer_id
        )

    def _expire_request(self, peer_id: str):
        self._timers.pop(peer_id, None)
        if self.engine.state(peer_id) is not PeerState.KEY_REQUESTED:
            return
        self.engine.forget_request(peer_id)
        self._pending.pop(peer_id, None)
        self._report(KeyRequestTimeout(peer_id, self.key_request_timeout))

    def _report(self, error: Exception):
        logger.info("%s", error)
        if self.on_error is not None:
            self.on_error(error)
