"""
Main message broker implementation.
Owns the subscription registry and wires sessions to the dispatcher.
"""
import threading
import logging
from typing import Dict, Any

from .config import get_config
from .dispatch import Dispatcher
from .protocol import ClientConnection
from .registry import SubscriptionRegistry
from .session import SessionManager, run_stream_session, handle_datagram


logger = logging.getLogger(__name__)


class MessageBroker:
    """Main message broker coordinating registry, dispatcher and sessions"""

    def __init__(self):
        self.config = get_config()

        # Initialize components
        self.registry = SubscriptionRegistry()
        self.dispatcher = Dispatcher(self.registry)
        self.sessions = SessionManager()

        self._running = False
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the message broker"""
        with self._lock:
            if self._running:
                return
            self._running = True
            self.sessions.open()
            logger.info("Message broker started")

    def stop(self) -> None:
        """Stop the message broker, asking every live session to wind down"""
        with self._lock:
            if not self._running:
                return

            logger.info("Stopping message broker...")
            self._running = False
            self.sessions.close_all()

            logger.info("Message broker stopped")

    def add_client_connection(self, client_socket, address) -> ClientConnection:
        """Add a new stream client connection"""
        return self.sessions.add_connection(client_socket, address)

    def remove_client_connection(self, connection_id: str) -> None:
        """Forget a stream client connection once its session is over"""
        self.sessions.remove_connection(connection_id)
        logger.info(f"Cleaned up client connection {connection_id}")

    def serve_connection(self, connection: ClientConnection) -> None:
        """Run the session for a stream connection until it ends"""
        run_stream_session(connection, self.dispatcher)

    def serve_datagram(self, data: bytes, address: tuple, sock) -> None:
        """Process one datagram received on the shared socket"""
        handle_datagram(data, address, sock, self.dispatcher)

    def get_broker_stats(self) -> Dict[str, Any]:
        """Get overall broker statistics"""
        registry_stats = self.registry.get_stats()
        session_stats = self.sessions.get_stats()

        return {
            'topics': registry_stats['topics'],
            'subscribed_endpoints': registry_stats['endpoints'],
            'subscriptions': registry_stats['subscriptions'],
            'topic_subscribers': registry_stats['topic_subscribers'],
            'active_sessions': session_stats['active_sessions'],
            'total_sessions': session_stats['total_sessions'],
        }
