import asyncio
import logging

from tcpbridge.connector.base import ConnectFailure, ConnectionKey, ConnectorDisconnectedEvent
from tcpbridge.connector.socketconn import SocketConnection, open_connection

logger = logging.getLogger(__name__)


def _consume_failure(attempt):
    """ marks the outcome of a connection attempt as retrieved, even when every caller has gone away. """
    if not attempt.cancelled():
        attempt.exception()


def _discard_opened(opening):
    """ destroys a connection that was opened after its attempt had been abandoned. """
    if opening.cancelled() or opening.exception() is not None:
        return
    connection = opening.result()
    logger.info("closing connection to %s, opened after the attempt was abandoned" % (connection.key,))
    connection.destroy()


class ConnectionRegistry:
    """
    Keeps at most one open SocketConnection for each host and port, so that commands sent
    to the same peer reuse the same connection.

    A connection is added once its handshake completes, and removed as soon as it reports that it
    disconnected (peer close, transport error, destroy() or release_all()). The removal happens
    inside the disconnected notification, so the registry never hands out a closed connection.

    Concurrent acquire() calls for a key that has no connection yet share a single in-flight
    connection attempt. A failed attempt is forgotten, so the next acquire() tries again.

    :param connect_timeout: how long (in milliseconds) to wait for a connection to be established.
    :param opener: coroutine function taking a ConnectionKey and a timeout in seconds that returns
        a connected SocketConnection.
    """

    def __init__(self, connect_timeout=5000, opener=open_connection):
        self.connect_timeout = connect_timeout
        self._opener = opener
        self._connections = dict()   # ConnectionKey -> SocketConnection, in insertion order
        self._pending = dict()       # ConnectionKey -> Task opening the connection

    async def acquire(self, host, port) -> SocketConnection:
        """
        Fetches the open connection to host:port, connecting to the peer if there is none.
        :raises ValidationError: the host or port is not valid
        :raises ConnectFailure: the connection could not be established
        """
        key = ConnectionKey(host, port)
        connection = self.get(key.host, key.port)
        if connection is not None:
            return connection
        attempt = self._pending.get(key)
        if attempt is None:
            attempt = asyncio.ensure_future(self._connect(key))
            attempt.add_done_callback(_consume_failure)
            self._pending[key] = attempt
        else:
            logger.debug("joining pending connection attempt to %s" % (key,))
        try:
            # a cancelled caller leaves the attempt running for the other callers
            return await asyncio.shield(attempt)
        except asyncio.CancelledError:
            if attempt.cancelled():
                raise ConnectFailure(key, 'Connection to %s was abandoned' % (key,), 'ECANCELED')
            raise

    async def _connect(self, key: ConnectionKey) -> SocketConnection:
        attempt = asyncio.current_task()
        opening = asyncio.ensure_future(self._opener(key, self._timeout_seconds()))
        try:
            connection = await asyncio.shield(opening)
        except asyncio.CancelledError:
            opening.cancel()
            opening.add_done_callback(_discard_opened)
            raise
        finally:
            if self._pending.get(key) is attempt:
                del self._pending[key]
        if not connection.open:
            raise ConnectFailure(key, 'Connection to %s closed while connecting' % (key,), 'ECONNRESET')
        self._register(key, connection)
        return connection

    def _timeout_seconds(self):
        return self.connect_timeout / 1000.0 if self.connect_timeout else None

    def _register(self, key, connection: SocketConnection):
        def evict(event):
            if isinstance(event, ConnectorDisconnectedEvent):
                connection.events.remove(evict)
                if self._connections.get(key) is connection:
                    del self._connections[key]
                    logger.info("removed connection to %s" % (key,))

        connection.events.add(evict)
        self._connections[key] = connection
        logger.info("registered connection to %s" % (key,))

    def get(self, host, port):
        """ retrieves the open connection to host:port, or None if there isn't one. """
        connection = self._connections.get(ConnectionKey(host, port))
        return connection if connection is not None and connection.open else None

    def release_all(self):
        """
        Destroys every connection and abandons every pending connection attempt.
        Calling this when the registry is already empty does nothing.
        """
        pending = list(self._pending.values())
        self._pending.clear()
        for attempt in pending:
            attempt.cancel()
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            connection.destroy()
        if connections or pending:
            logger.info("released %d connections, %d pending" % (len(connections), len(pending)))

    def keys(self):
        """ the keys of the registered connections as "host:port" strings, oldest first. """
        return [str(key) for key in self._connections]

    def count(self):
        return len(self._connections)

    def __len__(self):
        return self.count()

    def __contains__(self, key):
        return key in self._connections or str(key) in self.keys()

    @property
    def connections(self):
        """ a copy of the mapping from ConnectionKey to SocketConnection """
        return dict(self._connections)
