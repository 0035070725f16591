"""
HTTP gateway to the bridge.

Routes:

- POST /tcp/{host}/{port}   send the request body as a command, with the default options
- POST /command             send {"host", "port", "command", "options": {"timeout", "encoding", "delimiter"}}
- GET  /health              status, uptime and number of live connections
- GET  /connections         the keys of the live connections

Commands to the same host and port are sent one at a time.
Every route accepts cross-origin requests.
"""
import asyncio
import json
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tcpbridge.config.config import BridgeSettings
from tcpbridge.connector.base import ConnectionKey, ConnectorError, ValidationError
from tcpbridge.connector.registry import ConnectionRegistry
from tcpbridge.protocol.command import CommandExecutor

logger = logging.getLogger(__name__)

MISSING_PARAMETERS = 'Missing required parameters: host, port, command'


def timestamp():
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class KeyedLocks:
    """ Hands out one asyncio.Lock per key. A lock is forgotten once nobody holds or waits for it. """

    def __init__(self):
        self._locks = dict()
        self._users = defaultdict(int)

    def __len__(self):
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class Bridge:
    """
    Sends commands to TCP peers over pooled connections.

    The bridge owns the registry and the executor, and makes sure that a command is only sent to a
    host and port once the previous command to it has completed.
    """

    def __init__(self, registry: ConnectionRegistry, executor: CommandExecutor):
        self.registry = registry
        self.executor = executor
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(cls, settings: BridgeSettings):
        return cls(ConnectionRegistry(connect_timeout=settings.connect_timeout),
                   CommandExecutor(timeout=settings.timeout, encoding=settings.encoding,
                                   delimiter=settings.delimiter, grace_period=settings.grace_period))

    async def send(self, host, port, command, **options) -> str:
        """
        Sends a command to host:port and returns the reply.
        :param options: timeout, encoding and delimiter, passed to CommandExecutor.execute()
        """
        key = ConnectionKey(host, port)
        request = self.executor.request(command, **options)
        async with self._locks.hold(key):
            connection = await self.registry.acquire(key.host, key.port)
            return await self.executor.execute(connection, request)

    def close(self):
        self.registry.release_all()


class CommandOptions(BaseModel):
    timeout: Optional[int] = None
    encoding: Optional[str] = None
    delimiter: Optional[str] = None

    def execute_options(self):
        """ the options that were given, as keyword arguments. A null delimiter selects grace period mode. """
        options = dict()
        if self.timeout:
            options['timeout'] = self.timeout
        if self.encoding:
            options['encoding'] = self.encoding
        if 'delimiter' in self.model_fields_set:
            options['delimiter'] = self.delimiter
        return options


class CommandBody(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = None
    command: Any = None
    options: CommandOptions = Field(default_factory=CommandOptions)


def command_text(body):
    """ converts a decoded JSON body to the command text that is sent. """
    if body is None:
        return ''
    if isinstance(body, str):
        return body
    return json.dumps(body, separators=(',', ':'))


async def read_command(request: Request) -> str:
    """ reads the command from the body of a request to the direct route. """
    raw = await request.body()
    content_type = request.headers.get('content-type', '')
    if raw and content_type.startswith('application/json'):
        try:
            return command_text(json.loads(raw))
        except ValueError as e:
            raise ValidationError('request body is not valid JSON: %s' % e) from e
    return raw.decode('utf-8', errors='replace')


def success(response):
    return {'success': True, 'response': response, 'timestamp': timestamp()}


def failure(status_code, error, code):
    return JSONResponse(status_code=status_code,
                        content={'success': False, 'error': error, 'code': code, 'timestamp': timestamp()})


def create_app(settings: BridgeSettings = None, bridge: Bridge = None) -> FastAPI:
    """
    Builds the gateway application.
    :param settings: the settings used to build the bridge, when no bridge is given
    :param bridge: the bridge that sends the commands. It is closed when the application shuts down.
    """
    bridge = bridge or Bridge.from_settings(settings or BridgeSettings())

    @asynccontextmanager
    async def lifespan(app):
        logger.info("gateway started")
        try:
            yield
        finally:
            bridge.close()
            logger.info("gateway stopped")

    app = FastAPI(title='tcpbridge', description='Sends HTTP requests as commands to TCP peers',
                  lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=['*'], allow_methods=['*'], allow_headers=['*'])
    app.state.bridge = bridge
    app.state.started = time.monotonic()

    @app.middleware('http')
    async def log_requests(request: Request, call_next):
        logger.info("%s %s" % (request.method, request.url.path))
        return await call_next(request)

    @app.exception_handler(ConnectorError)
    async def connector_error(request: Request, e: ConnectorError):
        if isinstance(e, ValidationError):
            logger.info("rejected %s: %s" % (request.url.path, e))
            return failure(400, str(e), e.code)
        logger.error("TCP command failed: %s" % e)
        return failure(500, str(e), e.code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, e: RequestValidationError):
        errors = '; '.join('%s: %s' % ('.'.join(str(p) for p in error['loc']), error['msg'])
                           for error in e.errors())
        return failure(400, errors, ValidationError.default_code)

    @app.post('/tcp/{host}/{port}')
    async def send_direct(host: str, port: str, request: Request):
        command = await read_command(request)
        logger.info("sending TCP command to %s:%s - %r" % (host, port, command))
        return success(await bridge.send(host, port, command))

    @app.post('/command')
    async def send_command(body: CommandBody):
        if not body.host or not body.port or not body.command:
            return failure(400, MISSING_PARAMETERS, ValidationError.default_code)
        options = body.options.execute_options()
        logger.info("sending TCP command to %s:%s - %r %s" % (body.host, body.port, body.command, options))
        return success(await bridge.send(body.host, body.port, command_text(body.command), **options))

    @app.get('/health')
    async def health():
        return {
            'status': 'healthy',
            'uptime': time.monotonic() - app.state.started,
            'timestamp': timestamp(),
            'connections': bridge.registry.count(),
        }

    @app.get('/connections')
    async def connections():
        keys = bridge.registry.keys()
        return {'active_connections': keys, 'count': len(keys)}

    return app
