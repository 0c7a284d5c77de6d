"""
Client library and CLI for the message broker.
Publishes stdin lines to one topic, or subscribes to one or more topics,
over either the stream (reliable) or the datagram (unreliable) transport.
"""
import socket
import sys
import time
import logging
import argparse
from typing import Callable, Iterable, List, Optional, TextIO

from pubsub.config import get_config, initialize_config
from pubsub.message import (
    Message,
    MessageType,
    FramingError,
    ProtocolError,
    create_subscribe_message,
    create_publish_message,
    create_terminate_message,
)
from pubsub.protocol import ClientConnection, ConnectionClosed, TransportSetupError
from pubsub.transcoder import decode_text


logger = logging.getLogger(__name__)


DeliverHandler = Callable[[Message], None]


class BrokerClient:
    """Base client: request/ACK logic shared by both transports"""

    transport = 'unknown'

    def __init__(self, host: str = '127.0.0.1', port: int = 9999):
        self.host = host
        self.port = port

        # Configuration
        self.config = get_config()
        self.poll_interval = self.config.get('client.poll_interval', 1)
        self.listen_timeout: Optional[float] = self.poll_interval

    # Transport hooks

    def connect(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def send(self, message: Message) -> None:
        raise NotImplementedError

    def receive(self, timeout: Optional[float] = None) -> Optional[Message]:
        """Return the next frame, or None if nothing arrived within timeout"""
        raise NotImplementedError

    def ack_timeout(self, kind: str) -> Optional[float]:
        """How long to wait for an ACK of the given request kind"""
        raise NotImplementedError

    # Protocol operations

    def subscribe(self, topic: str, on_deliver: Optional[DeliverHandler] = None) -> bool:
        """Subscribe to a topic; returns whether the ACK was seen"""
        self.send(create_subscribe_message(topic))
        return self.wait_for_ack(self.ack_timeout('subscribe'), on_deliver)

    def publish_text(self, topic: str, text: str) -> bool:
        """Publish text (base64-encoded on the wire); returns whether the ACK was seen"""
        self.send(create_publish_message(topic, text))
        return self.wait_for_ack(self.ack_timeout('publish'))

    def terminate(self, topic: str = '') -> bool:
        """Tell the broker this session is over"""
        self.send(create_terminate_message(topic))
        return self.wait_for_ack(self.ack_timeout('terminate'))

    def wait_for_ack(self, timeout: Optional[float], on_deliver: Optional[DeliverHandler] = None) -> bool:
        """
        Read frames until an ACK arrives or timeout expires (None waits forever).
        Deliveries that arrive first are handed to on_deliver, or dropped.
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            wait = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = min(remaining, self.poll_interval)

            message = self.receive(wait)
            if message is None:
                continue

            if message.message_type == MessageType.ACK:
                return True
            if message.message_type == MessageType.DELIVER and on_deliver is not None:
                on_deliver(message)

    def listen(self, on_deliver: DeliverHandler, count: Optional[int] = None) -> int:
        """Hand every delivery to on_deliver; stops after count deliveries if given"""
        received = 0

        while count is None or received < count:
            message = self.receive(self.listen_timeout)
            if message is None:
                continue

            if message.message_type == MessageType.DELIVER:
                on_deliver(message)
                received += 1
            elif message.message_type == MessageType.ACK:
                logger.info(f"Unsolicited ACK via {self.transport.upper()}")

        return received

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class StreamClient(BrokerClient):
    """Client over the reliable stream transport; replies pair strictly with requests"""

    transport = 'tcp'

    def __init__(self, host: str = '127.0.0.1', port: int = 9999):
        super().__init__(host, port)
        self._connection: Optional[ClientConnection] = None
        # Deliveries are awaited without polling
        self.listen_timeout = None

    def connect(self) -> None:
        """Connect to the broker"""
        if self._connection is not None:
            return

        try:
            sock = socket.create_connection((self.host, self.port))
        except OSError as e:
            raise TransportSetupError(f"Failed to connect to {self.host}:{self.port}: {e}")

        self._connection = ClientConnection(sock, (self.host, self.port), 'broker')
        logger.info(f"Connected to broker at {self.host}:{self.port}")

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def send(self, message: Message) -> None:
        self._connection.send_message(message)

    def receive(self, timeout: Optional[float] = None) -> Optional[Message]:
        """
        Wait up to timeout for a frame to start, then read all of it.

        The timeout only covers the wait for the first byte; once a frame has
        begun it is read to the end. Raises ConnectionClosed when the broker
        hangs up.
        """
        sock = self._connection.socket
        sock.settimeout(timeout)
        try:
            sock.recv(1, socket.MSG_PEEK)
        except socket.timeout:
            return None
        finally:
            sock.settimeout(None)

        return self._connection.receive_message()

    def ack_timeout(self, kind: str) -> Optional[float]:
        # The stream guarantees the next reply is ours; only TERMINATE is bounded
        if kind == 'terminate':
            return self.config.get('client.terminate_ack_timeout')
        return None


class DatagramClient(BrokerClient):
    """Client over the unreliable datagram transport; every wait is bounded"""

    transport = 'udp'

    def __init__(self, host: str = '127.0.0.1', port: int = 9999):
        super().__init__(host, port)
        self._socket: Optional[socket.socket] = None
        self.max_datagram_size = self.config.get('protocol.max_datagram_size')

    def connect(self) -> None:
        if self._socket is not None:
            return

        try:
            self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as e:
            raise TransportSetupError(f"Failed to open UDP socket: {e}")

    def close(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    def send(self, message: Message) -> None:
        self._socket.sendto(message.serialize_datagram(), (self.host, self.port))

    def receive(self, timeout: Optional[float] = None) -> Optional[Message]:
        """Return the next well-formed frame; malformed datagrams are dropped"""
        self._socket.settimeout(timeout)
        try:
            data, _ = self._socket.recvfrom(self.max_datagram_size + 1)
        except socket.timeout:
            return None

        try:
            return Message.deserialize(data)
        except FramingError as e:
            logger.warning(f"Discarding malformed datagram: {e}")
            return None

    def ack_timeout(self, kind: str) -> Optional[float]:
        return self.config.get(f'client.{kind}_ack_timeout')


TRANSPORTS = {
    'reliable': StreamClient,
    'tcp': StreamClient,
    'unreliable': DatagramClient,
    'udp': DatagramClient,
}

ROLES = {
    'publish': 'publish',
    'pub': 'publish',
    'subscribe': 'subscribe',
    'sub': 'subscribe',
}


def format_delivery(message: Message) -> str:
    """Render a delivered message, flagging payloads that are not valid base64"""
    encoded = message.payload.decode('ascii', errors='replace')
    return f"[RECEIVED] Topic='{message.topic}' base64={encoded} | text={decode_text(encoded)}"


def print_delivery(message: Message) -> None:
    print(format_delivery(message), flush=True)


def run_subscriber(client: BrokerClient, topics: Iterable[str], count: Optional[int] = None) -> int:
    """Subscribe to every topic, then print deliveries; always ends with TERMINATE"""
    topics = list(topics)
    transport = client.transport.upper()

    try:
        for topic in topics:
            if client.subscribe(topic, on_deliver=print_delivery):
                print(f"[ACK] SUBSCRIBE confirmed for '{topic}' via {transport}")
            else:
                # Datagrams may be lost; keep listening regardless
                print(f"[WARN] No ACK for SUBSCRIBE '{topic}' (continuing to listen)", file=sys.stderr)

        print(f"[READY] Subscribed to {len(topics)} topic(s). Waiting for messages...", flush=True)
        return client.listen(print_delivery, count)
    finally:
        end_session(client)


def end_session(client: BrokerClient) -> None:
    """
    Best-effort TERMINATE so the broker drops this client's subscriptions.

    A datagram broker has no other way to learn the client is gone.
    """
    try:
        if client.terminate():
            print(f"[ACK] TERM confirmed via {client.transport.upper()}")
    except (ProtocolError, OSError) as e:
        logger.debug(f"TERMINATE not delivered: {e}")


def run_publisher(client: BrokerClient, topic: str, stream: TextIO) -> int:
    """Publish each input line; sends TERMINATE at end of input"""
    transport = client.transport.upper()
    published = 0

    print(f"[PUBLISHER READY] Topic='{topic}'. Type messages; Ctrl+D to quit.", flush=True)

    for line in stream:
        text = line.rstrip('\n')
        try:
            acked = client.publish_text(topic, text)
        except FramingError as e:
            print(f"[ERROR] Message not sent: {e}", file=sys.stderr)
            continue

        published += 1
        if acked:
            print(f"[ACK] PUBLISH confirmed via {transport}")
        else:
            print(f"[INFO] PUBLISH sent; ACK not confirmed ({transport})")

    if client.terminate(topic):
        print(f"[ACK] TERM confirmed via {transport}")

    return published


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Pub/Sub broker client')
    parser.add_argument('host', help='Broker address')
    parser.add_argument('port', type=int, help='Broker port')
    parser.add_argument('transport', choices=sorted(TRANSPORTS), help='reliable (tcp) or unreliable (udp)')
    parser.add_argument('role', choices=sorted(ROLES), help='publish (pub) or subscribe (sub)')
    parser.add_argument('topics', nargs='+', help='One topic to publish to, or topics to subscribe to')
    parser.add_argument('--count', type=int, help='Subscriber: stop after this many messages')
    parser.add_argument('--log-level', default='WARNING', help='Logging level')

    args = parser.parse_args(argv)
    args.role = ROLES[args.role]
    if args.role == 'publish' and len(args.topics) != 1:
        parser.error('publisher requires exactly one topic')
    return args


def cli_main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point"""
    args = parse_args(argv)

    config = initialize_config({'logging.level': args.log_level.upper()})
    logging.basicConfig(
        level=getattr(logging, config.get('logging.level'), logging.WARNING),
        format=config.get('logging.format')
    )

    client_class = TRANSPORTS[args.transport]
    role = 'Subscriber' if args.role == 'subscribe' else 'Publisher'
    print(f"[CLIENT] Transport={client_class.transport.upper()}, Role={role}, "
          f"Server={args.host}:{args.port}")

    try:
        with client_class(args.host, args.port) as client:
            if args.role == 'subscribe':
                run_subscriber(client, args.topics, args.count)
            else:
                run_publisher(client, args.topics[0], sys.stdin)

    except TransportSetupError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nStopping...")
    except ConnectionClosed:
        print("[INFO] Server closed connection.", file=sys.stderr)
    except (ProtocolError, OSError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(cli_main())
