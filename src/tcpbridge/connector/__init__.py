"""
The connector package opens and tracks TCP connections to peers.

A SocketConnection wraps one live transport and reports its lifecycle through an EventSource.
The ConnectionRegistry keeps at most one open connection per host and port and evicts
connections as soon as they report that they closed.
"""
