"""
Session management for both transports.

Every stream connection gets one session, run by its own handler thread and
tracked here so the broker can enumerate and shut them down. Datagrams have no
persistent session: each one is demultiplexed by its source address and
dispatched on the spot.
"""
import socket
import threading
import logging
from typing import Dict, List, Optional, Any

from .dispatch import Dispatcher
from .message import Message, ProtocolError, FramingError
from .protocol import ClientConnection, ConnectionClosed, DatagramEndpoint


logger = logging.getLogger(__name__)


class SessionManager:
    """Tracks live stream sessions"""

    def __init__(self):
        self._connections: Dict[str, ClientConnection] = {}
        self._connection_counter = 0
        self._closing = False
        self._lock = threading.Lock()

    def add_connection(self, client_socket: socket.socket, address: tuple) -> ClientConnection:
        """
        Add a new client connection.

        A connection registered after close_all() is shut down immediately;
        its handler then ends the session like any other closed peer.
        """
        with self._lock:
            connection_id = f"conn_{self._connection_counter}"
            self._connection_counter += 1

            connection = ClientConnection(client_socket, address, connection_id)
            self._connections[connection_id] = connection
            closing = self._closing

        if closing:
            logger.info(f"Refusing {connection_id}: sessions are closing")
            connection.shutdown()
        return connection

    def remove_connection(self, connection_id: str) -> None:
        """Forget a client connection"""
        with self._lock:
            if self._connections.pop(connection_id, None) is not None:
                logger.debug(f"Removed connection {connection_id}")

    def get_connection(self, connection_id: str) -> Optional[ClientConnection]:
        """Get a connection by ID"""
        with self._lock:
            return self._connections.get(connection_id)

    def list_sessions(self) -> List[ClientConnection]:
        with self._lock:
            return list(self._connections.values())

    def session_count(self) -> int:
        """Get number of active sessions"""
        with self._lock:
            return len(self._connections)

    def open(self) -> None:
        """Accept new sessions again after close_all()"""
        with self._lock:
            self._closing = False

    def close_all(self) -> None:
        """
        Unblock every session so its handler can clean up and exit.
        The handler threads themselves are joined by the server.
        """
        with self._lock:
            self._closing = True
            connections = list(self._connections.values())

        for connection in connections:
            connection.shutdown()
        logger.info("Signalled all sessions to close")

    def get_stats(self) -> Dict[str, Any]:
        """Get session statistics"""
        connections = self.list_sessions()

        return {
            'active_sessions': len(connections),
            'total_sessions': self._connection_counter,
            'sessions': [
                {
                    'id': conn.connection_id,
                    'address': conn.address,
                    'state': conn.state.name,
                }
                for conn in connections
            ]
        }


def run_stream_session(connection: ClientConnection, dispatcher: Dispatcher) -> None:
    """
    Serve one stream connection until it terminates, closes or misbehaves.

    A malformed frame is fatal to this session only. Cleanup runs on every
    exit path.
    """
    try:
        while not connection.is_terminated:
            message = connection.receive_message()

            reply = dispatcher.handle_message(connection, message)
            if reply is not None:
                connection.send_message(reply)

    except ConnectionClosed:
        logger.info(f"Client {connection.connection_id} closed the connection")
    except FramingError as e:
        logger.warning(f"Malformed frame from {connection.connection_id}, ending session: {e}")
    except (ProtocolError, OSError) as e:
        logger.warning(f"Transport error on {connection.connection_id}: {e}")
    finally:
        dispatcher.end_session(connection)
        connection.close()


def handle_datagram(data: bytes, address: tuple, sock: socket.socket, dispatcher: Dispatcher) -> None:
    """Dispatch a single datagram; malformed datagrams are dropped"""
    try:
        message = Message.deserialize(data)
    except FramingError as e:
        logger.warning(f"Discarding malformed datagram from {address}: {e}")
        return

    endpoint = DatagramEndpoint(address, sock)
    reply = dispatcher.handle_message(endpoint, message)
    if reply is None:
        return

    try:
        endpoint.send_message(reply)
    except ProtocolError as e:
        logger.warning(f"Failed to reply to {endpoint.label}: {e}")
