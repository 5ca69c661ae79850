"""
Session registry for the relay.

Maps live session ids to their connection and the latest public key the
client published. Nothing here survives a restart.
"""

import logging
import secrets
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from .errors import SessionIdExhaustedError

logger = logging.getLogger(__name__)


class SessionIdGenerator(Protocol):
    """Source of candidate session identifiers"""

    def generate(self) -> str:
        ...


class RandomNumericIdGenerator:
    """
    Random decimal ids in [low, high].

    These ids are public and guessable; they route traffic, they do not
    authenticate anyone.
    """

    def __init__(self, low: int = 100000, high: int = 999999):
        if low < 0 or high < low:
            raise ValueError(f"Invalid id range {low}..{high}")
        self.low = low
        self.high = high

    @property
    def capacity(self) -> int:
        return self.high - self.low + 1

    def generate(self) -> str:
        return str(self.low + secrets.randbelow(self.capacity))


@dataclass
class Session:
    """
    One live client connection.

    Attributes:
        id: Identifier assigned at connect time
        connection: Outbound channel owned by this session
        public_key: Latest published public key (base64), if any
    """
    id: str
    connection: object
    public_key: Optional[str] = None


class SessionRegistry:
    """
    Thread-safe store of live sessions.

    Every method holds the lock for a single dict operation and never across
    I/O. A Session returned by get() may be removed concurrently.
    """

    MAX_ALLOCATION_ATTEMPTS = 64

    def __init__(self, id_generator: Optional[SessionIdGenerator] = None):
        self._id_generator = id_generator or RandomNumericIdGenerator()
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def allocate(self, connection) -> str:
        """
        Register a new connection under an unused id.

        Args:
            connection: The session's outbound channel

        Returns:
            The allocated session id

        Raises:
            SessionIdExhaustedError: If no free id was drawn within
                MAX_ALLOCATION_ATTEMPTS tries
        """
        with self._lock:
            for _ in range(self.MAX_ALLOCATION_ATTEMPTS):
                session_id = self._id_generator.generate()
                if session_id not in self._sessions:
                    self._sessions[session_id] = Session(id=session_id, connection=connection)
                    return session_id
                logger.debug("Session id %s already in use, drawing again", session_id)
        raise SessionIdExhaustedError(
            f"No free session id after {self.MAX_ALLOCATION_ATTEMPTS} attempts "
            f"({len(self)} live sessions)"
        )

    def get(self, session_id: str) -> Optional[Session]:
        """Look up a live session; None when it is not connected"""
        with self._lock:
            return self._sessions.get(session_id)

    def set_public_key(self, session_id: str, key: str):
        """
        Store the public key a session published, replacing any earlier one.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.public_key = key
                return
        logger.warning("Public key published for unknown session %s, ignoring", session_id)

    def get_public_key(self, session_id: str) -> Optional[str]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.public_key if session is not None else None

    def remove(self, session_id: str):
        """Drop a session. Removing an unknown id is a no-op."""
        with self._lock:
            self._sessions.pop(session_id, None)

    def clear(self):
        with self._lock:
            self._sessions.clear()

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
