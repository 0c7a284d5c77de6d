"""
Dispatch engine for the broker protocol.
Interprets each inbound frame, mutates the registry or fans out, and
produces the acknowledgment to send back.
"""
import logging
from typing import Callable, Dict, Optional

from .message import (
    Message, MessageType, ProtocolError, create_ack_message, create_deliver_message,
)
from .protocol import Endpoint
from .registry import SubscriptionRegistry
from .transcoder import decode_text


logger = logging.getLogger(__name__)


Handler = Callable[[Endpoint, Message], Optional[Message]]


class Dispatcher:
    """Routes messages from a session to the registry and to subscribers"""

    def __init__(self, registry: SubscriptionRegistry):
        self.registry = registry

        # Message handlers
        self._message_handlers: Dict[MessageType, Handler] = {}
        self._register_handlers()

    def _register_handlers(self) -> None:
        handlers = {
            MessageType.SUBSCRIBE: self._handle_subscribe,
            MessageType.PUBLISH: self._handle_publish,
            MessageType.TERMINATE: self._handle_terminate,
        }

        for message_type, handler in handlers.items():
            self.register_handler(message_type, handler)

    def register_handler(self, message_type: MessageType, handler: Handler) -> None:
        """Register a message handler"""
        self._message_handlers[message_type] = handler
        logger.debug(f"Registered handler for {message_type.name}")

    def handle_message(self, endpoint: Endpoint, message: Message) -> Optional[Message]:
        """Handle an incoming message, returning the reply to send if any"""
        if endpoint.is_terminated:
            logger.warning(f"Dropping {message.message_type.name} from terminated session {endpoint.label}")
            return None

        logger.debug(f"Handling {message.message_type.name} from {endpoint.label}")

        handler = self._message_handlers.get(message.message_type)
        if handler is None:
            logger.warning(f"Ignoring unexpected {message.message_type.name} from {endpoint.label}")
            return None

        return handler(endpoint, message)

    def end_session(self, endpoint: Endpoint) -> bool:
        """
        Terminate a session and drop its subscriptions.

        Safe to call from every exit path; only the first call has an effect.
        """
        if not endpoint.mark_terminated():
            return False

        topics = self.registry.unsubscribe_all(endpoint)
        logger.info(f"Session {endpoint.label} terminated ({len(topics)} subscription(s) released)")
        return True

    def _handle_subscribe(self, endpoint: Endpoint, message: Message) -> Message:
        if self.registry.subscribe(endpoint, message.topic):
            logger.info(f"{endpoint.label} subscribed to '{message.topic}'")
        else:
            logger.debug(f"{endpoint.label} already subscribed to '{message.topic}'")

        return create_ack_message(message.topic)

    def _handle_publish(self, endpoint: Endpoint, message: Message) -> Message:
        topic = message.topic
        if logger.isEnabledFor(logging.DEBUG):
            text = decode_text(message.payload.decode('ascii', errors='replace'))
            logger.debug(f"Publish on '{topic}' from {endpoint.label}: {text}")

        delivered = self.fan_out(topic, message.payload)
        logger.info(f"Published on '{topic}' from {endpoint.label}, delivered to {delivered} subscriber(s)")

        return create_ack_message(topic)

    def _handle_terminate(self, endpoint: Endpoint, message: Message) -> Message:
        self.end_session(endpoint)
        return create_ack_message(message.topic)

    def fan_out(self, topic: str, payload: bytes) -> int:
        """Deliver payload to every current subscriber of topic, best effort"""
        subscribers = self.registry.subscribers_of(topic)
        if not subscribers:
            return 0

        deliver = create_deliver_message(topic, payload)
        delivered = 0

        for subscriber in subscribers:
            try:
                subscriber.send_message(deliver)
                delivered += 1
            except ProtocolError as e:
                logger.warning(f"Failed to deliver to {subscriber.label}: {e}")

        return delivered
