"""
Topic-based publish/subscribe broker over stream and datagram transports.
"""

from .config import Config, get_config, initialize_config
from .transcoder import encode, decode, DecodeError
from .message import Message, MessageType, MessageBuilder, ProtocolError, FramingError
from .protocol import (
    ClientConnection, DatagramEndpoint, ConnectionClosed, SessionState, TransportSetupError,
)
from .registry import SubscriptionRegistry
from .dispatch import Dispatcher
from .session import SessionManager, run_stream_session, handle_datagram
from .broker import MessageBroker

__all__ = [
    'Config', 'get_config', 'initialize_config',
    'encode', 'decode', 'DecodeError',
    'Message', 'MessageType', 'MessageBuilder', 'ProtocolError', 'FramingError',
    'ClientConnection', 'DatagramEndpoint', 'ConnectionClosed', 'SessionState', 'TransportSetupError',
    'SubscriptionRegistry',
    'Dispatcher',
    'SessionManager', 'run_stream_session', 'handle_datagram',
    'MessageBroker'
]
