"""
Frames commands sent over a pooled connection and decides when the peer's reply is complete.

A command is written as its payload followed by the delimiter. Its reply is complete when, in order
of whichever happens first:

- the accumulated reply contains the delimiter (the reply is returned with surrounding whitespace removed),
- the timeout elapses (the command fails with CommandTimeout and the connection is destroyed),
- the connection signals an error (the command fails with TransportError).

When no delimiter is given the reply is instead whatever arrived within a short grace period.
"""
import asyncio
import codecs
import logging
from enum import Enum

from tcpbridge.connector.base import CommandTimeout, ConnectorDisconnectedEvent, ConnectorErrorEvent, \
    TransportError, ValidationError, error_code
from tcpbridge.connector.socketconn import SocketConnection

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5000
DEFAULT_ENCODING = 'utf8'
DEFAULT_DELIMITER = '\n'
GRACE_PERIOD = 1000

# encoding names accepted by node's Buffer that python spells differently
ENCODING_ALIASES = {
    'binary': 'latin-1',
    'ucs2': 'utf-16-le',
    'ucs-2': 'utf-16-le',
    'utf16le': 'utf-16-le',
}

_DEFAULT = object()


def text_encoding(name):
    """
    Resolves the name of a text encoding.
    >>> text_encoding('utf8')
    'utf8'
    >>> text_encoding('UCS2')
    'utf-16-le'
    """
    if not name or not isinstance(name, str):
        raise ValidationError('encoding must be a non-empty string: %r' % (name,))
    name = ENCODING_ALIASES.get(name.lower(), name)
    try:
        ''.encode(name)
    except LookupError as e:
        raise ValidationError('unsupported encoding %r: %s' % (name, e)) from e
    return name


def check_timeout(timeout):
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValidationError('timeout must be a positive number of milliseconds: %r' % (timeout,))
    return timeout


class CommandState(Enum):
    PENDING = 'pending'
    RESOLVED = 'resolved'
    TIMED_OUT = 'timed_out'
    FAILED = 'failed'


class CommandRequest:
    """ Encapsulates a command and the options that decide how its reply is framed. """

    def __init__(self, payload, timeout=DEFAULT_TIMEOUT, encoding=DEFAULT_ENCODING, delimiter=DEFAULT_DELIMITER):
        """
        :param payload: the command, as text (encoded with `encoding`) or bytes (sent as is)
        :param timeout: milliseconds to wait for the reply
        :param encoding: the text encoding of the command and the reply
        :param delimiter: marks the end of the command and of the reply. None or '' selects grace period mode.
        """
        if not isinstance(payload, (str, bytes, bytearray)):
            raise ValidationError('payload must be text or bytes, not %s' % type(payload).__name__)
        self.payload = payload
        self.timeout = check_timeout(timeout)
        self.encoding = text_encoding(encoding)
        self.delimiter = delimiter or ''

    @property
    def grace_mode(self) -> bool:
        """ True when there is no delimiter, so the reply is whatever arrives in the grace period. """
        return not self.delimiter

    def grace_period(self, limit=GRACE_PERIOD):
        return min(self.timeout, limit)

    def to_bytes(self) -> bytes:
        payload = self.payload
        if isinstance(payload, str):
            payload = payload.encode(self.encoding)
        return bytes(payload) + self.delimiter.encode(self.encoding)

    def decoder(self):
        return codecs.getincrementaldecoder(self.encoding)(errors='replace')

    def __repr__(self):
        return 'CommandRequest(%r, timeout=%r, encoding=%r, delimiter=%r)' % (
            self.payload, self.timeout, self.encoding, self.delimiter)


class CommandFuture:
    """
    Follows one command from the moment it is written until its reply is complete.

    The command starts PENDING and settles exactly once, in RESOLVED, TIMED_OUT or FAILED.
    Whichever completion condition occurs first settles the command; later ones are ignored.
    Settling always cancels the timers and detaches the listeners added to the connection,
    since the connection outlives the command and may be used by the next one.

    Await the instance to fetch the reply, or the exception the command failed with.
    """

    def __init__(self, connection: SocketConnection, request: CommandRequest, grace_period=GRACE_PERIOD):
        self.connection = connection
        self.request = request
        self._grace_period = grace_period
        self._loop = asyncio.get_running_loop()
        self._future = self._loop.create_future()
        self._state = CommandState.PENDING
        self._decoder = request.decoder()
        self._response = ''
        self._timers = []

    @property
    def state(self) -> CommandState:
        return self._state

    @property
    def response(self) -> str:
        """ the reply accumulated so far """
        return self._response

    def done(self):
        return self._state is not CommandState.PENDING

    def start(self):
        """
        Attaches the listeners, arms the timer and writes the command.
        Without a delimiter the grace period, which never exceeds the timeout, takes the place of the timeout.
        """
        connection = self.connection
        request = self.request
        if request.grace_mode:
            logger.debug("no delimiter, waiting %dms for the reply from %s" %
                         (request.grace_period(self._grace_period), connection.key))
            self._call_later(request.grace_period(self._grace_period), self._on_grace_period)
        else:
            self._call_later(request.timeout, self._on_timeout)
        connection.data_events.add(self._on_data)
        connection.events.add(self._on_connection_event)
        try:
            connection.write(request.to_bytes())
        except TransportError as e:
            self._settle(CommandState.FAILED, e)
        return self

    def abandon(self):
        """ releases the command without a result, e.g. when the caller was cancelled. """
        self._settle(CommandState.FAILED, None)

    def _call_later(self, ms, callback):
        self._timers.append(self._loop.call_later(ms / 1000.0, callback))

    def _on_data(self, data):
        self._response += self._decoder.decode(data)
        delimiter = self.request.delimiter
        if delimiter and delimiter in self._response:
            logger.debug("delimiter found, reply from %s complete" % (self.connection.key,))
            self._settle(CommandState.RESOLVED, self._response.strip())

    def _on_connection_event(self, event):
        if isinstance(event, ConnectorErrorEvent):
            error = event.error
            self._settle(CommandState.FAILED, TransportError(str(error) or type(error).__name__, error_code(error)))
        elif isinstance(event, ConnectorDisconnectedEvent):
            if self.request.grace_mode:
                self._settle(CommandState.RESOLVED, self._flush())
            else:
                self._settle(CommandState.FAILED, TransportError('connection closed by peer', 'ECONNCLOSED'))

    def _on_timeout(self):
        logger.warning("timeout (%dms) waiting for %s" % (self.request.timeout, self.connection.key))
        if self._settle(CommandState.TIMED_OUT, CommandTimeout(self.request.timeout, self.connection.key)):
            # a peer that did not answer in time is not reused
            self.connection.destroy()

    def _on_grace_period(self):
        self._settle(CommandState.RESOLVED, self._flush())

    def _flush(self):
        self._response += self._decoder.decode(b'', final=True)
        return self._response

    def _settle(self, state: CommandState, outcome) -> bool:
        """
        Moves the command to a final state, unless it has already settled.
        :return: True if this call settled the command
        """
        if self._state is not CommandState.PENDING:
            return False
        self._state = state
        for timer in self._timers:
            timer.cancel()
        self._timers = []
        self.connection.data_events.remove(self._on_data)
        self.connection.events.remove(self._on_connection_event)
        future = self._future
        if outcome is None:
            future.cancel()
        elif not future.done():
            if isinstance(outcome, BaseException):
                future.set_exception(outcome)
            else:
                future.set_result(outcome)
        return True

    def __await__(self):
        return self._future.__await__()


class CommandExecutor:
    """
    Sends commands over connections and waits for their replies.

    The options given to the constructor are the defaults for each command.
    The executor does not serialize commands: callers must not send a command on a connection
    while another command on that connection is still pending.
    """

    def __init__(self, timeout=DEFAULT_TIMEOUT, encoding=DEFAULT_ENCODING, delimiter=DEFAULT_DELIMITER,
                 grace_period=GRACE_PERIOD):
        self.timeout = check_timeout(timeout)
        self.encoding = text_encoding(encoding)
        self.delimiter = delimiter
        self.grace_period = grace_period

    def request(self, payload, timeout=None, encoding=None, delimiter=_DEFAULT) -> CommandRequest:
        """
        Builds a request, filling in the defaults for options that are not given.
        An explicit delimiter of None or '' selects grace period mode.
        """
        return CommandRequest(payload,
                              timeout=self.timeout if timeout is None else timeout,
                              encoding=encoding or self.encoding,
                              delimiter=self.delimiter if delimiter is _DEFAULT else delimiter)

    async def execute(self, connection: SocketConnection, payload, timeout=None, encoding=None,
                      delimiter=_DEFAULT) -> str:
        """
        Writes a command to the connection and waits for the reply.
        :param payload: the command text or bytes, or a CommandRequest (the other options are then ignored)
        :return: the reply text
        :raises CommandTimeout: the reply was not complete within the timeout
        :raises TransportError: the connection failed before the reply was complete
        :raises ValidationError: an option is not valid
        """
        request = payload if isinstance(payload, CommandRequest) else \
            self.request(payload, timeout, encoding, delimiter)
        logger.info("sending %r to %s (timeout %dms)" % (request.payload, connection.key, request.timeout))
        command = CommandFuture(connection, request, self.grace_period).start()
        try:
            return await command
        except asyncio.CancelledError:
            command.abandon()
            raise
