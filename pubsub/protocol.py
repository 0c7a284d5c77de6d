"""
Transport endpoints for the broker protocol.
A ClientConnection owns one stream socket; a DatagramEndpoint is an ephemeral
(address, port) identity answered through the shared datagram socket.
"""
import socket
import threading
import logging
from enum import IntEnum
from typing import Optional

from .message import Message, ProtocolError, FramingError, HEADER_SIZE


logger = logging.getLogger(__name__)


class ConnectionClosed(ProtocolError):
    """The peer closed the connection (zero-byte read)"""
    pass


class TransportSetupError(Exception):
    """A socket could not be bound, listened on or connected"""
    pass


class SessionState(IntEnum):
    """Session lifecycle states"""
    CONNECTED = 1
    TERMINATED = 2


class Endpoint:
    """Common session bookkeeping for both transports"""

    transport = 'unknown'

    def __init__(self, address: tuple):
        self.address = address
        self.state = SessionState.CONNECTED
        self._state_lock = threading.Lock()

    def mark_terminated(self) -> bool:
        """Move to TERMINATED; returns True only for the first caller"""
        with self._state_lock:
            if self.state == SessionState.TERMINATED:
                return False
            self.state = SessionState.TERMINATED
            return True

    @property
    def is_terminated(self) -> bool:
        return self.state == SessionState.TERMINATED

    def send_message(self, message: Message) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    @property
    def label(self) -> str:
        return f"{self.transport}:{self.address[0]}:{self.address[1]}"


class ClientConnection(Endpoint):
    """Represents a client connection over the stream transport"""

    transport = 'tcp'

    def __init__(self, socket: socket.socket, address: tuple, connection_id: str):
        super().__init__(address)
        self.socket = socket
        self.connection_id = connection_id
        self.closed = False

        self._lock = threading.Lock()
        self._send_lock = threading.Lock()

        logger.info(f"Opened connection {connection_id} with {address}")

    def send_message(self, message: Message) -> None:
        """Send a message to the client"""
        if self.closed:
            raise ProtocolError(f"Cannot send message: connection {self.connection_id} is closed")

        data = message.serialize()
        try:
            with self._send_lock:
                self.socket.sendall(data)
        except OSError as e:
            logger.error(f"Failed to send message to {self.connection_id}: {e}")
            raise ProtocolError(f"Send failed: {e}")

    def receive_message(self) -> Message:
        """
        Receive one complete frame, blocking until it has fully arrived.

        Raises ConnectionClosed when the peer closes the stream and
        FramingError when the header is malformed.
        """
        header = self._recv_exact(HEADER_SIZE)
        message_type, topic_len, payload_len = Message.parse_header(header)

        topic_data = self._recv_exact(topic_len)
        payload = self._recv_exact(payload_len)

        return Message.from_parts(message_type, topic_data, payload)

    def _recv_exact(self, length: int) -> bytes:
        """Receive exactly the specified number of bytes"""
        data = b''
        while len(data) < length:
            chunk = self.socket.recv(length - len(data))
            if not chunk:
                if data:
                    raise FramingError(f"Connection closed mid-frame ({len(data)} of {length} bytes)")
                raise ConnectionClosed(f"Connection {self.connection_id} closed by peer")
            data += chunk
        return data

    def shutdown(self) -> None:
        """Unblock a pending receive without releasing the socket"""
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            logger.debug(f"Connection {self.connection_id} already shut down")

    def close(self) -> None:
        """Close the connection"""
        with self._lock:
            if self.closed:
                return
            self.closed = True

            try:
                self.socket.close()
            except OSError as e:
                logger.debug(f"Error closing {self.connection_id}: {e}")

            logger.info(f"Closed connection {self.connection_id}")

    @property
    def label(self) -> str:
        return self.connection_id

    def __repr__(self) -> str:
        return f"ClientConnection({self.connection_id}, {self.address})"


class DatagramEndpoint(Endpoint):
    """
    A datagram client identified only by its source (address, port).

    The identity is transient: it lives as long as the peer keeps its socket
    and carries no authentication. Two endpoints with the same source address
    are the same subscriber.
    """

    transport = 'udp'

    def __init__(self, address: tuple, socket: Optional[socket.socket]):
        super().__init__(address)
        self.socket = socket

    def send_message(self, message: Message) -> None:
        data = message.serialize_datagram()
        try:
            self.socket.sendto(data, self.address)
        except OSError as e:
            raise ProtocolError(f"Datagram send to {self.address} failed: {e}")

    def __eq__(self, other) -> bool:
        if not isinstance(other, DatagramEndpoint):
            return NotImplemented
        return self.address == other.address

    def __hash__(self) -> int:
        return hash(('udp', self.address))

    def __repr__(self) -> str:
        return f"DatagramEndpoint({self.address})"
