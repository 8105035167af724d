"""Registry of identified downstream connections.

Maps client ids to live connections. All mutation happens on the event loop
thread, so no lock is taken here; callers running handlers on other threads
must serialize access themselves.
"""

import logging
from typing import Dict, Iterator, Optional, Protocol, Tuple

from .events import Envelope


logger = logging.getLogger(__name__)


class Sink(Protocol):
    """What the registry needs from a connection."""

    @property
    def alive(self) -> bool: ...

    def send(self, envelope: Envelope) -> None: ...

    def close(self) -> None: ...


class ClientRegistry:
    """Client id -> connection bindings.

    A client id is bound at most once: registering an id that is already
    bound to a live connection keeps the existing binding. A binding whose
    connection has died is replaced.
    """

    def __init__(self):
        self._clients: Dict[str, Sink] = {}

    def register(self, connection: Sink, client_id: str) -> bool:
        """Bind client_id to connection.

        Returns:
            True if a new binding was created, False if client_id was
            already bound to a live connection (the binding is unchanged).
        """
        existing = self._clients.get(client_id)
        if existing is not None:
            if existing is connection or existing.alive:
                return False
            logger.info(f"Replacing dead connection for client {client_id}")

        self._clients[client_id] = connection
        logger.info(f"Registered client {client_id}. Total clients: {len(self._clients)}")
        return True

    def unregister(self, connection: Sink) -> Optional[str]:
        """Remove the binding for connection, if any.

        Returns:
            The client id that was unbound, or None.
        """
        for client_id, bound in list(self._clients.items()):
            if bound is connection:
                del self._clients[client_id]
                logger.info(f"Unregistered client {client_id}. Total clients: {len(self._clients)}")
                return client_id
        return None

    def lookup(self, client_id: str) -> Optional[Sink]:
        return self._clients.get(client_id)

    def broadcast(self, envelope: Envelope) -> int:
        """Deliver envelope to every registered connection.

        A connection whose send fails is unregistered and closed; delivery
        to the others continues.

        Returns:
            Number of connections the envelope was delivered to.
        """
        delivered = 0
        for client_id, connection in list(self._clients.items()):
            # May have been removed by an earlier failure in this loop
            if self._clients.get(client_id) is not connection:
                continue
            try:
                connection.send(envelope)
                delivered += 1
            except (ConnectionError, OSError) as e:
                logger.warning(f"Broadcast to {client_id} failed, dropping client: {e}")
                self.unregister(connection)
                connection.close()
        return delivered

    def size(self) -> int:
        return len(self._clients)

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._clients

    def items(self) -> Iterator[Tuple[str, Sink]]:
        return iter(list(self._clients.items()))
