import errno
from collections import namedtuple
from enum import Enum

UNKNOWN_ERROR = 'UNKNOWN_ERROR'


def error_code(e, default=UNKNOWN_ERROR):
    """
    Determines the symbolic code for an exception raised by the socket layer.
    >>> error_code(ConnectionRefusedError(errno.ECONNREFUSED, 'refused'))
    'ECONNREFUSED'
    >>> error_code(ValueError('nope'))
    'UNKNOWN_ERROR'
    """
    code = getattr(e, 'code', None)
    if isinstance(code, str):
        return code
    number = getattr(e, 'errno', None)
    if number is not None:
        return errno.errorcode.get(number, default)
    if isinstance(e, TimeoutError):
        return 'ETIMEDOUT'
    return default


class ConnectorError(Exception):
    """ Indicates an error condition with a connection. """
    default_code = UNKNOWN_ERROR

    def __init__(self, message='', code=None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ValidationError(ConnectorError, ValueError):
    """ The caller supplied a malformed host, port or command option. """
    default_code = 'EINVAL'


class ConnectFailure(ConnectorError):
    """ The connection to a peer could not be established. """

    def __init__(self, key, message='', code=None):
        super().__init__(message or 'unable to connect to %s' % (key,), code)
        self.key = key


class CommandTimeout(ConnectorError):
    """ No completion condition was met within the command timeout. The connection is destroyed. """
    default_code = 'ETIMEDOUT'

    def __init__(self, after_ms, key=None):
        where = ' connecting to %s' % (key,) if key is not None else ''
        super().__init__('Timeout after %dms%s' % (after_ms, where))
        self.after_ms = after_ms
        self.key = key


class TransportError(ConnectorError):
    """ An established connection signalled an error. """

    def __str__(self):
        return 'TCP error: %s (%s)' % (self.message, self.code)


class ConnectionState(Enum):
    CONNECTING = 'connecting'
    OPEN = 'open'
    CLOSED = 'closed'


class ConnectionKey(namedtuple('ConnectionKey', ('host', 'port'))):
    """
    Identifies a pooled connection by host and port.
    >>> str(ConnectionKey('localhost', 8080))
    'localhost:8080'
    """
    __slots__ = ()

    def __new__(cls, host, port):
        host = str(host or '').strip()
        if not host:
            raise ValidationError('host is required')
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ValidationError('port must be an integer: %r' % (port,))
        if not 1 <= port <= 65535:
            raise ValidationError('port must be between 1 and 65535: %d' % port)
        return super().__new__(cls, host, port)

    def __str__(self):
        return '%s:%d' % (self.host, self.port)


class ConnectorEvent:
    """ base class for connector events. """
    def __init__(self, connector):
        self.connector = connector


class ConnectorConnectedEvent(ConnectorEvent):
    """ The connector was connected. """


class ConnectorDisconnectedEvent(ConnectorEvent):
    """ The connector was disconnected. Fired once, whatever the cause. """


class ConnectorErrorEvent(ConnectorEvent):
    """ The connector signalled an error. Always followed by a ConnectorDisconnectedEvent. """
    def __init__(self, connector, error):
        super().__init__(connector)
        self.error = error
