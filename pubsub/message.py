"""
Message frame format implementation using Python's struct module for binary serialization.
The same framing is used by the stream and the datagram transports.
"""
import struct
from typing import Tuple
from enum import IntEnum

from .config import get_config
from .transcoder import encode_text


class ProtocolError(Exception):
    """Protocol-related errors"""
    pass


class FramingError(ProtocolError):
    """Truncated, oversized or otherwise inconsistent frame"""
    pass


class MessageType(IntEnum):
    """Message types for different operations"""
    SUBSCRIBE = 1
    PUBLISH = 2
    DELIVER = 3
    ACK = 4
    TERMINATE = 5


HEADER_FORMAT = '>III'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 12 bytes


def _limit(name: str) -> int:
    return get_config().get(f'protocol.{name}')


class Message:
    """
    Binary message format:
    [4 bytes: message_type][4 bytes: topic_length][4 bytes: payload_length]
    [topic_data][payload_data]
    """

    HEADER_SIZE = HEADER_SIZE

    def __init__(self, message_type: MessageType, topic: str = '', payload: bytes = b''):
        self.message_type = MessageType(message_type)
        self.topic = topic
        self.payload = payload

    @property
    def topic_bytes(self) -> bytes:
        return self.topic.encode('utf-8')

    def serialize(self) -> bytes:
        """Serialize message to binary format"""
        topic_data = self.topic_bytes

        if len(topic_data) > _limit('max_topic_length'):
            raise FramingError(f"Topic too long: {len(topic_data)} bytes")
        if len(self.payload) > _limit('max_payload_length'):
            raise FramingError(f"Payload too long: {len(self.payload)} bytes")

        header = struct.pack(HEADER_FORMAT,
                             self.message_type,  # 4 bytes
                             len(topic_data),    # 4 bytes
                             len(self.payload))  # 4 bytes

        return header + topic_data + self.payload

    def serialize_datagram(self) -> bytes:
        """Serialize message, checking that the frame fits a single datagram"""
        data = self.serialize()
        if len(data) > _limit('max_datagram_size'):
            raise FramingError(f"Frame of {len(data)} bytes does not fit in one datagram")
        return data

    @staticmethod
    def parse_header(header: bytes) -> Tuple[MessageType, int, int]:
        """Unpack and validate a frame header"""
        if len(header) < HEADER_SIZE:
            raise FramingError(f"Invalid header: {len(header)} of {HEADER_SIZE} bytes")

        msg_type, topic_len, payload_len = struct.unpack(HEADER_FORMAT, header[:HEADER_SIZE])

        try:
            message_type = MessageType(msg_type)
        except ValueError:
            raise FramingError(f"Unknown message type {msg_type}")

        if topic_len > _limit('max_topic_length'):
            raise FramingError(f"Declared topic length {topic_len} exceeds limit")
        if payload_len > _limit('max_payload_length'):
            raise FramingError(f"Declared payload length {payload_len} exceeds limit")

        return message_type, topic_len, payload_len

    @classmethod
    def from_parts(cls, message_type: MessageType, topic_data: bytes, payload: bytes) -> 'Message':
        try:
            topic = topic_data.decode('utf-8')
        except UnicodeDecodeError:
            raise FramingError("Topic is not valid UTF-8")
        return cls(message_type, topic, payload)

    @classmethod
    def deserialize(cls, data: bytes) -> 'Message':
        """Deserialize a complete frame held in one buffer (one datagram)"""
        message_type, topic_len, payload_len = cls.parse_header(data)

        needed = HEADER_SIZE + topic_len + payload_len
        if len(data) < needed:
            raise FramingError(f"Truncated frame: expected {needed} bytes, got {len(data)}")

        topic_end = HEADER_SIZE + topic_len
        return cls.from_parts(message_type, data[HEADER_SIZE:topic_end], data[topic_end:needed])

    def __eq__(self, other) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return (self.message_type == other.message_type
                and self.topic == other.topic
                and self.payload == other.payload)

    def __repr__(self) -> str:
        return (f"Message(type={self.message_type.name}, topic={self.topic!r}, "
                f"payload_size={len(self.payload)})")

    __str__ = __repr__


class MessageBuilder:
    """Builder pattern for creating messages"""

    def __init__(self, message_type: MessageType):
        self._message_type = message_type
        self._topic = ''
        self._payload = b''

    def topic(self, name: str) -> 'MessageBuilder':
        self._topic = name
        return self

    def payload(self, data: bytes) -> 'MessageBuilder':
        self._payload = data
        return self

    def text_payload(self, text: str) -> 'MessageBuilder':
        """Set the payload to the base64 encoding of text"""
        self._payload = encode_text(text).encode('ascii')
        return self

    def build(self) -> Message:
        return Message(self._message_type, self._topic, self._payload)


def create_subscribe_message(topic: str) -> Message:
    return MessageBuilder(MessageType.SUBSCRIBE).topic(topic).build()

def create_publish_message(topic: str, text: str) -> Message:
    """Convenience function to publish text, base64-encoded"""
    return MessageBuilder(MessageType.PUBLISH).topic(topic).text_payload(text).build()

def create_deliver_message(topic: str, payload: bytes) -> Message:
    return MessageBuilder(MessageType.DELIVER).topic(topic).payload(payload).build()

def create_ack_message(topic: str = '') -> Message:
    return MessageBuilder(MessageType.ACK).topic(topic).build()

def create_terminate_message(topic: str = '') -> Message:
    return MessageBuilder(MessageType.TERMINATE).topic(topic).build()
