"""
Wire protocol for the relay WebSocket.

Every frame is a JSON object with a "type" discriminator. The relay reads
routing metadata only; "ciphertext" is passed through untouched.

Client -> server:
    {"type": "publicKey", "key": "<base64>"}
    {"type": "getPublicKey", "for": "<sessionId>"}
    {"type": "message", "to": "<sessionId>", "ciphertext": {"iv": [...], "data": [...]}}

Server -> client:
    {"type": "init", "sessionId": "<sessionId>"}
    {"type": "publicKey", "for": "<sessionId>", "key": "<base64>"}
    {"type": "message", "from": "<sessionId>", "ciphertext": {...}, "senderPublicKey": "<base64>"}
"""

from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import ProtocolError


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


# Inbound frames

class PublishPublicKey(_Frame):
    """Client announces its public key"""
    type: Literal["publicKey"]
    key: str


class RequestPublicKey(_Frame):
    """Client asks for another session's public key"""
    type: Literal["getPublicKey"]
    for_id: str = Field(alias="for")


class ForwardMessage(_Frame):
    """Client sends an opaque envelope to another session"""
    type: Literal["message"]
    to: str
    ciphertext: Any


InboundMessage = Annotated[
    Union[PublishPublicKey, RequestPublicKey, ForwardMessage],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundMessage)


def parse_inbound(raw: Union[str, bytes]) -> Union[PublishPublicKey, RequestPublicKey, ForwardMessage]:
    """
    Parse one client frame.

    Raises:
        ProtocolError: On invalid JSON, unknown type or missing fields
    """
    try:
        return _inbound_adapter.validate_json(raw)
    except ValidationError as e:
        raise ProtocolError(f"Malformed frame: {e.error_count()} error(s), first: {e.errors()[0]['msg']}") from e


# Outbound frames

class InitFrame(_Frame):
    type: Literal["init"] = "init"
    session_id: str = Field(alias="sessionId")


class PublicKeyResponse(_Frame):
    type: Literal["publicKey"] = "publicKey"
    for_id: str = Field(alias="for")
    key: str


class DeliveredMessage(_Frame):
    type: Literal["message"] = "message"
    from_id: str = Field(alias="from")
    ciphertext: Any
    sender_public_key: Optional[str] = Field(default=None, alias="senderPublicKey")

    def to_wire(self) -> dict:
        # Omit senderPublicKey rather than send null when the sender has none
        exclude = {"sender_public_key"} if self.sender_public_key is None else None
        return self.model_dump(by_alias=True, exclude=exclude)
