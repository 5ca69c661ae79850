"""
Relay router.

Dispatches parsed client frames against the session registry. Routing is
best effort and at most once: unknown recipients and missing keys are
dropped without telling the sender, so the relay never confirms whether a
session id is live.
"""

import logging
from typing import Union

from .errors import ProtocolError
from .protocol import (
    parse_inbound,
    PublishPublicKey,
    RequestPublicKey,
    ForwardMessage,
    PublicKeyResponse,
    DeliveredMessage,
)
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class RelayRouter:
    """Routes frames between sessions held in a SessionRegistry"""

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    def dispatch(self, sender_id: str, raw: Union[str, bytes]):
        """
        Handle one frame received from sender_id.

        Malformed frames are logged and ignored.
        """
        try:
            message = parse_inbound(raw)
        except ProtocolError as e:
            logger.warning("Dropping frame from session %s: %s", sender_id, e)
            return

        if isinstance(message, PublishPublicKey):
            self.registry.set_public_key(sender_id, message.key)
        elif isinstance(message, RequestPublicKey):
            self._answer_key_request(sender_id, message)
        elif isinstance(message, ForwardMessage):
            self._forward(sender_id, message)

    def _answer_key_request(self, sender_id: str, message: RequestPublicKey):
        requester = self.registry.get(sender_id)
        target = self.registry.get(message.for_id)
        if requester is None or target is None or not target.public_key:
            logger.debug("No key available for %s (asked by %s)", message.for_id, sender_id)
            return

        reply = PublicKeyResponse(for_id=message.for_id, key=target.public_key)
        requester.connection.send(reply.to_wire())

    def _forward(self, sender_id: str, message: ForwardMessage):
        recipient = self.registry.get(message.to)
        if recipient is None:
            logger.debug("Recipient %s not connected, dropping message from %s", message.to, sender_id)
            return

        delivered = DeliveredMessage(
            from_id=sender_id,
            ciphertext=message.ciphertext,
            sender_public_key=self.registry.get_public_key(sender_id),
        )
        recipient.connection.send(delivered.to_wire())
