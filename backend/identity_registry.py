from typing import Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


def identity_key(name: str) -> str:
    """Canonical form used to compare identities (pseudos are case-insensitive)."""
    return name.strip().casefold()


class AlreadyConnected(Exception):
    """The identity (or the connection) already holds a live session."""


class IdentityRegistry:
    """Maps each identity to at most one live connection, and back."""

    def __init__(self):
        self._by_identity: Dict[str, str] = {}  # identity key -> connection_id
        self._by_connection: Dict[str, str] = {}  # connection_id -> display identity

    def admit(self, identity: str, connection_id: str) -> str:
        """Bind ``identity`` to ``connection_id`` and return the display identity.

        Raises AlreadyConnected if the identity is live on another connection or if
        this connection already authenticated; nothing changes in that case.
        """
        identity = identity.strip()
        key = identity_key(identity)
        if key in self._by_identity:
            raise AlreadyConnected("This pseudo is already connected elsewhere.")
        if connection_id in self._by_connection:
            raise AlreadyConnected("This connection is already authenticated.")
        self._by_identity[key] = connection_id
        self._by_connection[connection_id] = identity
        logger.info("Identity '%s' admitted on connection %s", identity, connection_id)
        return identity

    def release(self, connection_id: str) -> Optional[str]:
        identity = self._by_connection.pop(connection_id, None)
        if identity is None:
            return None
        key = identity_key(identity)
        if self._by_identity.get(key) == connection_id:
            del self._by_identity[key]
        logger.info("Identity '%s' released from connection %s", identity, connection_id)
        return identity

    def identity_for(self, connection_id: str) -> Optional[str]:
        return self._by_connection.get(connection_id)

    def connection_for(self, identity: str) -> Optional[str]:
        return self._by_identity.get(identity_key(identity))

    def is_connected(self, identity: str) -> bool:
        return identity_key(identity) in self._by_identity

    def connection_ids(self) -> List[str]:
        return list(self._by_connection)

    def presence(self) -> List[str]:
        """Display identities of every live connection, in admission order."""
        return list(self._by_connection.values())

    def __len__(self) -> int:
        return len(self._by_connection)
