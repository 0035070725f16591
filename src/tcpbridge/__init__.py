"""
HTTP to TCP bridge

Sends the body of an HTTP request as a command to a TCP peer and returns the peer's reply.

- SocketConnection: one live TCP connection to a peer. Lifecycle changes (connected, error, disconnected)
  are fired as ConnectorEvents; received data is fired as raw chunks.
- ConnectionRegistry: keeps at most one open connection per host and port so that commands reuse
  connections. A connection evicts itself from the registry when it disconnects. Concurrent requests
  for a connection that is still being established wait for the same attempt.
- CommandExecutor: writes a command followed by its delimiter and waits for the reply. The reply is
  complete when the delimiter arrives, or, with no delimiter, after a short grace period. A command that
  times out destroys its connection, since the peer is presumed unhealthy.
- Bridge / gateway: the HTTP surface. Serializes the commands sent to each host and port.


Threading

Everything runs on a single asyncio event loop. The only shared state is the registry's mapping from
key to connection, and it is only changed from event loop callbacks, so no locks are needed. Commands to
the same peer are not serialized by the executor; that is the bridge's job.
"""

__version__ = '0.1.0'
