import asyncio
import socket
import struct
import unittest
from unittest.mock import Mock, patch

from hamcrest import assert_that, calling, contains_exactly, equal_to, instance_of, is_, raises

from tcpbridge.connector.base import ConnectFailure, ConnectionKey, ConnectionState, ConnectorConnectedEvent, \
    ConnectorDisconnectedEvent, ConnectorErrorEvent, TransportError
from tcpbridge.connector.socketconn import SocketConnection, open_connection


class PeerServer:
    """
    A TCP server that plays the part of a peer in tests.
    :param replies: maps each command received (with surrounding whitespace removed) to the bytes sent back.
        Commands with no reply are not answered.
    """

    def __init__(self, replies=None):
        self.replies = replies or {}
        self.accepted = 0
        self.received = []
        self.writers = []
        self.server = None
        self.port = None

    async def start(self):
        self.server = await asyncio.start_server(self._serve, '127.0.0.1', 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def _serve(self, reader, writer):
        self.accepted += 1
        self.writers.append(writer)
        try:
            while True:
                data = await reader.read(1024)
                if not data:
                    break
                self.received.append(data)
                reply = self.replies.get(data.decode('utf-8', errors='replace').strip())
                if reply is not None:
                    writer.write(reply)
                    await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def wait_received(self, count=1):
        while len(self.received) < count:
            await asyncio.sleep(0.01)

    def reset_all(self):
        """ closes every accepted connection with a TCP reset. """
        for writer in self.writers:
            sock = writer.get_extra_info('socket')
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack('ii', 1, 0))
            writer.transport.abort()

    async def stop(self):
        for writer in self.writers:
            writer.close()
        self.server.close()
        await self.server.wait_closed()


def unused_port():
    """ a local port that nothing listens on. """
    sock = socket.socket()
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class SocketConnectionTest(unittest.TestCase):
    def setUp(self):
        self.key = ConnectionKey('localhost', 8080)
        self.sut = SocketConnection(self.key)
        self.events = Mock()
        self.sut.events += self.events
        self.transport = Mock()

    def fired(self):
        return [type(c[0][0]) for c in self.events.call_args_list]

    def test_constructor(self):
        assert_that(self.sut.key, is_(self.key))
        assert_that(self.sut.endpoint, is_(self.key))
        assert_that(self.sut.state, is_(ConnectionState.CONNECTING))
        assert_that(self.sut.open, is_(False))

    def test_connection_made(self):
        self.sut.connection_made(self.transport)
        assert_that(self.sut.open, is_(True))
        assert_that(self.sut.transport, is_(self.transport))
        assert_that(self.fired(), contains_exactly(ConnectorConnectedEvent))

    def test_data_received_is_fired(self):
        data = Mock()
        self.sut.data_events += data
        self.sut.connection_made(self.transport)
        self.sut.data_received(b'abc')
        data.assert_called_once_with(b'abc')

    def test_write(self):
        self.sut.connection_made(self.transport)
        self.sut.write(b'abc')
        self.transport.write.assert_called_once_with(b'abc')

    def test_write_not_open(self):
        assert_that(calling(self.sut.write).with_args(b'abc'), raises(TransportError, 'ENOTCONN'))

    def test_peer_close(self):
        self.sut.connection_made(self.transport)
        self.sut.connection_lost(None)
        assert_that(self.sut.state, is_(ConnectionState.CLOSED))
        assert_that(self.fired(), contains_exactly(ConnectorConnectedEvent, ConnectorDisconnectedEvent))

    def test_error_is_fired_before_disconnect(self):
        error = ConnectionResetError(104, 'Connection reset by peer')
        self.sut.connection_made(self.transport)
        self.sut.connection_lost(error)
        assert_that(self.fired(), contains_exactly(ConnectorConnectedEvent, ConnectorErrorEvent,
                                                   ConnectorDisconnectedEvent))
        assert_that(self.events.call_args_list[1][0][0].error, is_(error))

    def test_destroy_disconnects_immediately(self):
        self.sut.connection_made(self.transport)
        self.sut.destroy()
        self.transport.abort.assert_called_once_with()
        assert_that(self.sut.open, is_(False))
        assert_that(self.fired()[-1], is_(equal_to(ConnectorDisconnectedEvent)))

    def test_disconnect_fired_once(self):
        self.sut.connection_made(self.transport)
        self.sut.destroy()
        self.sut.connection_lost(None)
        self.sut.close()
        assert_that(self.fired(), contains_exactly(ConnectorConnectedEvent, ConnectorDisconnectedEvent))

    def test_close(self):
        self.sut.connection_made(self.transport)
        self.sut.close()
        self.transport.close.assert_called_once_with()
        assert_that(self.sut.state, is_(ConnectionState.CLOSED))

    def test_destroy_before_connected(self):
        self.sut.destroy()
        assert_that(self.sut.state, is_(ConnectionState.CLOSED))

    def test_eof_lets_the_transport_close(self):
        assert_that(self.sut.eof_received(), is_(False))


class OpenConnectionTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.peer = await PeerServer({'PING': b'PONG\n'}).start()

    async def asyncTearDown(self):
        await self.peer.stop()

    async def test_open_and_exchange(self):
        received = []
        connection = await open_connection(ConnectionKey('127.0.0.1', self.peer.port), 1)
        connection.data_events += received.append
        assert_that(connection, instance_of(SocketConnection))
        assert_that(connection.open, is_(True))
        connection.write(b'PING\n')
        while not received:
            await asyncio.sleep(0.01)
        assert_that(b''.join(received), is_(b'PONG\n'))
        connection.destroy()

    async def test_peer_close_disconnects(self):
        events = []
        connection = await open_connection(ConnectionKey('127.0.0.1', self.peer.port), 1)
        connection.events += events.append
        await self.peer.stop()
        while connection.open:
            await asyncio.sleep(0.01)
        assert_that(events[-1], instance_of(ConnectorDisconnectedEvent))

    async def test_connection_refused(self):
        key = ConnectionKey('127.0.0.1', unused_port())
        with self.assertRaises(ConnectFailure) as raised:
            await open_connection(key, 1, report_errors=False)
        assert_that(raised.exception.key, is_(key))
        assert_that(raised.exception.code, is_('ECONNREFUSED'))

    async def test_connect_timeout(self):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        loop = asyncio.get_running_loop()
        with patch.object(loop, 'create_connection', hang):
            with self.assertRaises(ConnectFailure) as raised:
                await open_connection(ConnectionKey('127.0.0.1', self.peer.port), 0.05)
        assert_that(raised.exception.code, is_('ETIMEDOUT'))


if __name__ == '__main__':  # pragma no cover
    unittest.main()
