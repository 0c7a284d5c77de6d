"""
Broker process: serves the pub/sub protocol over TCP and UDP on one port.
"""
import argparse
import logging
import signal
import sys
import threading
from socketserver import ThreadingTCPServer, UDPServer, BaseRequestHandler
from typing import List, Optional, TextIO

from pubsub.broker import MessageBroker
from pubsub.config import initialize_config
from pubsub.protocol import TransportSetupError


logger = logging.getLogger(__name__)


class BrokerRequestHandler(BaseRequestHandler):
    """Request handler for stream connections; one thread per connection"""

    def setup(self):
        self._broker = self.server.broker
        self.connection = self._broker.add_client_connection(
            self.request,
            self.client_address
        )
        logger.info(f"Client connected: {self.client_address}")

    def handle(self):
        self._broker.serve_connection(self.connection)

    def finish(self):
        self._broker.remove_client_connection(self.connection.connection_id)
        logger.info(f"Client disconnected: {self.client_address}")


class BrokerDatagramHandler(BaseRequestHandler):
    """Request handler for datagrams; runs synchronously on the receive loop"""

    def handle(self):
        data, sock = self.request
        self.server.broker.serve_datagram(data, self.client_address, sock)


class BrokerServer(ThreadingTCPServer):
    """TCP server for the message broker"""

    allow_reuse_address = True
    # Session threads are tracked and joined on server_close()
    daemon_threads = False
    block_on_close = True

    def __init__(self, server_address, RequestHandlerClass, broker: MessageBroker):
        self.broker = broker
        self.request_queue_size = broker.config.get('server.backlog', 50)
        super().__init__(server_address, RequestHandlerClass)


class BrokerDatagramServer(UDPServer):
    """UDP server for the message broker"""

    allow_reuse_address = True

    def __init__(self, server_address, RequestHandlerClass, broker: MessageBroker):
        self.broker = broker
        # Read one byte past the datagram limit so oversized frames are detectable
        self.max_packet_size = broker.config.get('protocol.max_datagram_size') + 1
        super().__init__(server_address, RequestHandlerClass)


class BrokerService:
    """Runs both transports around a single broker"""

    def __init__(self, host: str, port: int, broker: Optional[MessageBroker] = None):
        self.broker = broker or MessageBroker()
        self.stop_event = threading.Event()

        try:
            self.tcp_server = BrokerServer((host, port), BrokerRequestHandler, self.broker)
        except OSError as e:
            raise TransportSetupError(f"Cannot listen on TCP {host}:{port}: {e}")

        # With port 0 the UDP side follows whatever port TCP was given
        port = self.tcp_server.server_address[1]
        try:
            self.udp_server = BrokerDatagramServer((host, port), BrokerDatagramHandler, self.broker)
        except OSError as e:
            self.tcp_server.server_close()
            raise TransportSetupError(f"Cannot bind UDP {host}:{port}: {e}")

        self._threads: List[threading.Thread] = []

    @property
    def server_address(self) -> tuple:
        return self.tcp_server.server_address

    def start(self) -> None:
        """Start serving both transports in background threads"""
        self.broker.start()

        for name, server in (('BrokerTCP', self.tcp_server), ('BrokerUDP', self.udp_server)):
            thread = threading.Thread(target=server.serve_forever, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

        logger.info(f"Broker server listening on {self.server_address} (TCP and UDP)")

    def shutdown(self) -> None:
        """Stop accepting, end every session and join all threads"""
        logger.info("Shutting down broker server...")
        self.stop_event.set()

        self.tcp_server.shutdown()
        self.udp_server.shutdown()

        self.broker.stop()

        self.tcp_server.server_close()
        self.udp_server.server_close()

        for thread in self._threads:
            thread.join(timeout=5)
        self._threads.clear()

        logger.info("Server stopped")


def control_loop(stream: TextIO, service: BrokerService) -> None:
    """Read operator commands: 'quit' stops the broker, 'stats' logs statistics"""
    for line in stream:
        command = line.strip().lower()
        if command == 'quit':
            logger.info("Quit command received")
            service.stop_event.set()
            return
        elif command == 'stats':
            logger.info(f"Broker stats: {service.broker.get_broker_stats()}")
        elif command:
            logger.warning(f"Unknown command: {command}")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Pub/Sub broker (TCP and UDP)')
    parser.add_argument('port', type=int, help='Port to listen on (TCP and UDP)')
    parser.add_argument('--host', default=None, help='Interface to bind (default: all)')
    parser.add_argument('--log-level', default=None, help='Logging level')
    return parser.parse_args(argv)


def main(argv=None):
    """Main server entry point"""
    args = parse_args(argv)

    overrides = {}
    if args.host:
        overrides['server.host'] = args.host
    if args.log_level:
        overrides['logging.level'] = args.log_level.upper()
    config = initialize_config(overrides)

    logging.basicConfig(
        level=getattr(logging, config.get('logging.level', 'INFO').upper(), logging.INFO),
        format=config.get('logging.format')
    )

    host = config.get('server.host')
    logger.info(f"Starting message broker server on {host}:{args.port}")

    try:
        service = BrokerService(host, args.port)
    except TransportSetupError as e:
        logger.error(str(e))
        sys.exit(1)

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        service.stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service.start()
    threading.Thread(
        target=control_loop,
        args=(sys.stdin, service),
        daemon=True,
        name="BrokerControl"
    ).start()

    logger.info("Type 'quit' or press Ctrl+C to stop the server")

    try:
        while not service.stop_event.wait(0.5):
            pass
    finally:
        service.shutdown()


if __name__ == '__main__':
    main()
