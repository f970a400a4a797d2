"""
Converge Connections

Connection plugins. Only the local connection ships with Converge; other
transports plug in through ``ConnectionRemoteExecutor(connection_factory=...)``.
"""

from converge.connections.base import Connection, Escalation, RunResult
from converge.connections.local import LocalConnection
from converge.engine.errors import ConnectivityError
from converge.engine.inventory import Host


def create_connection(host: Host) -> Connection:
    """Build an unconnected connection for a host based on its settings."""
    conn_type = host.connection
    if conn_type == 'local':
        return LocalConnection(host)
    raise ConnectivityError(
        host.name,
        f"Unsupported connection type: {conn_type}",
        connection_type=conn_type,
    )


__all__ = [
    'Connection',
    'Escalation',
    'RunResult',
    'LocalConnection',
    'create_connection',
]
