import asyncio
import logging
import socket

from tcpbridge.connector.base import ConnectFailure, ConnectionKey, ConnectionState, ConnectorConnectedEvent, \
    ConnectorDisconnectedEvent, ConnectorErrorEvent, TransportError, error_code
from tcpbridge.support.events import EventSource

logger = logging.getLogger(__name__)


class SocketConnection(asyncio.Protocol):
    """
    A live TCP connection to a peer, held by the registry and shared by the commands sent to that peer.

    Lifecycle changes are posted to `events` (ConnectorConnectedEvent, ConnectorErrorEvent,
    ConnectorDisconnectedEvent). Each chunk of received bytes is posted to `data_events`.
    The disconnected event is fired exactly once, synchronously with the change of state,
    whether the peer closed the connection, the transport failed or destroy() was called.
    """

    def __init__(self, key: ConnectionKey):
        self.key = key
        self.events = EventSource()
        self.data_events = EventSource()
        self._transport = None
        self._state = ConnectionState.CONNECTING

    @property
    def endpoint(self):
        return self.key

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def transport(self):
        return self._transport

    def connection_made(self, transport):
        self._transport = transport
        self._state = ConnectionState.OPEN
        logger.info("opened socket to %s" % (self.key,))
        self.events.fire(ConnectorConnectedEvent(self))

    def data_received(self, data):
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("received from %s: %r" % (self.key, data))
        self.data_events.fire(data)

    def eof_received(self):
        logger.debug("peer %s closed its end of the socket" % (self.key,))
        # returning a false value lets the transport close itself
        return False

    def connection_lost(self, exc):
        self._closed(exc)

    def write(self, data: bytes):
        if not self.open:
            raise TransportError('connection to %s is not open' % (self.key,), 'ENOTCONN')
        self._transport.write(data)

    def close(self):
        """ Closes the connection once any buffered data has been written. """
        transport = self._transport
        self._closed()
        if transport is not None:
            transport.close()

    def destroy(self):
        """ Aborts the connection immediately, discarding buffered data. """
        transport = self._transport
        self._closed()
        if transport is not None:
            transport.abort()

    def _closed(self, error=None):
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.CLOSED
        if error is not None:
            logger.warning("error on socket to %s: %s" % (self.key, error))
            self.events.fire(ConnectorErrorEvent(self, error))
        logger.info("closed socket to %s" % (self.key,))
        self.events.fire(ConnectorDisconnectedEvent(self))

    def __repr__(self):
        return '<SocketConnection %s %s>' % (self.key, self._state.value)


async def open_connection(key: ConnectionKey, timeout=None, report_errors=True) -> SocketConnection:
    """
    Opens a TCP connection to the peer identified by key.
    :param timeout: seconds to wait for the handshake to complete. None waits indefinitely.
    :param report_errors: when False, failures are logged at debug rather than warning level.
    :raises ConnectFailure: the connection could not be established
    """
    loop = asyncio.get_running_loop()
    method = logger.warning if report_errors else logger.debug
    try:
        _, connection = await asyncio.wait_for(
            loop.create_connection(lambda: SocketConnection(key), key.host, key.port), timeout)
    except asyncio.TimeoutError as e:
        method("timeout opening socket to %s" % (key,))
        raise ConnectFailure(key, 'Timeout connecting to %s' % (key,), 'ETIMEDOUT') from e
    except socket.gaierror as e:
        method("unable to resolve %s: %s" % (key.host, e))
        raise ConnectFailure(key, 'Error connecting to %s: %s' % (key, e), 'ENOTFOUND') from e
    except OSError as e:
        method("error opening socket to %s: %s" % (key, e))
        raise ConnectFailure(key, 'Error connecting to %s: %s' % (key, e), error_code(e)) from e
    return connection
