"""
Unit tests for the broker module.
Tests dispatch, fan-out, acknowledgments and session teardown.
"""
import unittest
import socket
import struct
from unittest.mock import Mock
from pubsub.broker import MessageBroker
from pubsub.dispatch import Dispatcher
from pubsub.message import Message, MessageType
from pubsub.protocol import ClientConnection, DatagramEndpoint, SessionState
from pubsub.registry import SubscriptionRegistry
from pubsub.session import run_stream_session, handle_datagram


def sent_frames(mock_socket):
    """Decode every frame passed to sendall on a mock socket"""
    return [Message.deserialize(call.args[0]) for call in mock_socket.sendall.call_args_list]


class TestDispatcher(unittest.TestCase):
    """Test cases for Dispatcher class"""

    def setUp(self):
        """Set up test fixtures"""
        self.registry = SubscriptionRegistry()
        self.dispatcher = Dispatcher(self.registry)
        self._port = 40000

    def make_connection(self):
        self._port += 1
        sock = Mock(spec=socket.socket)
        return ClientConnection(sock, ('127.0.0.1', self._port), f"conn-{self._port}"), sock

    def test_subscribe_replies_with_ack(self):
        """Test SUBSCRIBE registers the endpoint and is acknowledged"""
        conn, _ = self.make_connection()

        reply = self.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, "weather"))

        self.assertEqual(reply, Message(MessageType.ACK, "weather"))
        self.assertIn(conn, self.registry.subscribers_of("weather"))
        self.assertEqual(conn.state, SessionState.CONNECTED)

    def test_repeated_subscribe_acks_again(self):
        """Test re-subscribing is observable only through a second ACK"""
        conn, _ = self.make_connection()

        first = self.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, "weather"))
        second = self.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, "weather"))

        self.assertEqual(first, second)
        self.assertEqual(len(self.registry.subscribers_of("weather")), 1)

    def test_fan_out_completeness(self):
        """Test one publish yields one DELIVER per subscriber and one ACK"""
        for n in (0, 1, 5):
            with self.subTest(subscribers=n):
                self.registry = SubscriptionRegistry()
                self.dispatcher = Dispatcher(self.registry)
                subscribers = []
                for _ in range(n):
                    conn, sock = self.make_connection()
                    self.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, "T"))
                    subscribers.append(sock)
                publisher, publisher_sock = self.make_connection()

                reply = self.dispatcher.handle_message(
                    publisher, Message(MessageType.PUBLISH, "T", b"c3Vubnk="))

                self.assertEqual(reply, Message(MessageType.ACK, "T"))
                self.assertEqual(publisher_sock.sendall.call_count, 0)
                for sock in subscribers:
                    self.assertEqual(sent_frames(sock), [Message(MessageType.DELIVER, "T", b"c3Vubnk=")])

    def test_topic_isolation(self):
        """Test a subscriber of A receives nothing published on B"""
        conn, sock = self.make_connection()
        self.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, "A"))
        publisher, _ = self.make_connection()

        self.dispatcher.handle_message(publisher, Message(MessageType.PUBLISH, "B", b"eA=="))

        sock.sendall.assert_not_called()

    def test_publisher_receives_own_publish(self):
        """Test a publisher subscribed to its own topic gets a DELIVER"""
        conn, sock = self.make_connection()
        self.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, "echo"))

        reply = self.dispatcher.handle_message(conn, Message(MessageType.PUBLISH, "echo", b"aGk="))

        self.assertEqual(reply, Message(MessageType.ACK, "echo"))
        self.assertEqual(sent_frames(sock), [Message(MessageType.DELIVER, "echo", b"aGk=")])

    def test_failed_delivery_does_not_abort_fan_out(self):
        """Test one broken subscriber does not stop delivery to the rest"""
        broken, broken_sock = self.make_connection()
        broken_sock.sendall.side_effect = BrokenPipeError("gone")
        healthy, healthy_sock = self.make_connection()
        for conn in (broken, healthy):
            self.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, "T"))
        publisher, _ = self.make_connection()

        reply = self.dispatcher.handle_message(publisher, Message(MessageType.PUBLISH, "T", b"eA=="))

        self.assertEqual(reply.message_type, MessageType.ACK)
        self.assertEqual(len(sent_frames(healthy_sock)), 1)

    def test_publish_with_undecodable_payload_still_acks(self):
        """Test payloads that are not base64 are relayed untouched"""
        conn, sock = self.make_connection()
        self.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, "T"))

        reply = self.dispatcher.handle_message(conn, Message(MessageType.PUBLISH, "T", b"!!bad!"))

        self.assertEqual(reply.message_type, MessageType.ACK)
        self.assertEqual(sent_frames(sock)[0].payload, b"!!bad!")

    def test_fan_out_to_datagram_subscriber(self):
        """Test deliveries to datagram endpoints go through their socket"""
        udp_sock = Mock(spec=socket.socket)
        endpoint = DatagramEndpoint(('10.0.0.5', 7000), udp_sock)
        self.dispatcher.handle_message(endpoint, Message(MessageType.SUBSCRIBE, "alerts"))
        publisher, _ = self.make_connection()

        self.dispatcher.handle_message(publisher, Message(MessageType.PUBLISH, "alerts", b"aGk="))

        udp_sock.sendto.assert_called_once_with(
            Message(MessageType.DELIVER, "alerts", b"aGk=").serialize(), ('10.0.0.5', 7000))

    def test_terminate_cleans_up(self):
        """Test TERMINATE removes every subscription and ends the session"""
        conn, _ = self.make_connection()
        for topic in ("a", "b"):
            self.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, topic))

        reply = self.dispatcher.handle_message(conn, Message(MessageType.TERMINATE))

        self.assertEqual(reply.message_type, MessageType.ACK)
        self.assertEqual(conn.state, SessionState.TERMINATED)
        self.assertEqual(self.registry.subscribers_of("a"), frozenset())
        self.assertEqual(self.registry.subscribers_of("b"), frozenset())

    def test_no_dispatch_after_terminate(self):
        """Test frames from a terminated endpoint are ignored"""
        conn, _ = self.make_connection()
        self.dispatcher.handle_message(conn, Message(MessageType.TERMINATE))

        reply = self.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, "late"))

        self.assertIsNone(reply)
        self.assertEqual(self.registry.subscribers_of("late"), frozenset())

    def test_end_session_runs_once(self):
        """Test the cleanup path only unsubscribes once"""
        conn, _ = self.make_connection()
        self.registry.unsubscribe_all = Mock(return_value=set())

        self.assertTrue(self.dispatcher.end_session(conn))
        self.assertFalse(self.dispatcher.end_session(conn))

        self.registry.unsubscribe_all.assert_called_once_with(conn)

    def test_unexpected_types_are_ignored(self):
        """Test clients cannot inject DELIVER or ACK frames"""
        conn, _ = self.make_connection()

        self.assertIsNone(self.dispatcher.handle_message(conn, Message(MessageType.DELIVER, "T", b"eA==")))
        self.assertIsNone(self.dispatcher.handle_message(conn, Message(MessageType.ACK, "T")))

    def test_register_handler(self):
        """Test registering a custom handler"""
        conn, _ = self.make_connection()
        handler = Mock(return_value=None)

        self.dispatcher.register_handler(MessageType.ACK, handler)
        self.dispatcher.handle_message(conn, Message(MessageType.ACK, "x"))

        handler.assert_called_once()


class TestStreamSession(unittest.TestCase):
    """Test cases for the stream session loop"""

    def setUp(self):
        self.registry = SubscriptionRegistry()
        self.dispatcher = Dispatcher(self.registry)
        self.sock = Mock(spec=socket.socket)
        self.conn = ClientConnection(self.sock, ('127.0.0.1', 5555), "conn-s")

    def feed(self, *messages, tail=b""):
        data = b"".join(m.serialize() for m in messages) + tail
        chunks = [data]

        def fake_recv(length):
            if not chunks or not chunks[0]:
                return b""
            chunk, chunks[0] = chunks[0][:length], chunks[0][length:]
            return chunk

        self.sock.recv.side_effect = fake_recv

    def test_session_until_terminate(self):
        """Test replies are sent in order and the session ends on TERMINATE"""
        self.feed(Message(MessageType.SUBSCRIBE, "a"),
                  Message(MessageType.TERMINATE),
                  Message(MessageType.SUBSCRIBE, "never"))

        run_stream_session(self.conn, self.dispatcher)

        self.assertEqual(sent_frames(self.sock), [Message(MessageType.ACK, "a"), Message(MessageType.ACK)])
        self.assertEqual(self.registry.subscribers_of("a"), frozenset())
        self.assertEqual(self.registry.subscribers_of("never"), frozenset())
        self.assertTrue(self.conn.closed)

    def test_session_cleanup_on_close(self):
        """Test subscriptions are dropped when the peer disconnects"""
        self.feed(Message(MessageType.SUBSCRIBE, "a"))

        run_stream_session(self.conn, self.dispatcher)

        self.assertEqual(self.registry.subscribers_of("a"), frozenset())
        self.assertEqual(self.conn.state, SessionState.TERMINATED)
        self.assertTrue(self.conn.closed)

    def test_malformed_frame_is_fatal_to_session(self):
        """Test a bad frame ends the session with full cleanup"""
        self.feed(Message(MessageType.SUBSCRIBE, "a"),
                  tail=struct.pack(">III", 77, 0, 0))

        run_stream_session(self.conn, self.dispatcher)

        self.assertEqual(self.registry.subscribers_of("a"), frozenset())
        self.assertTrue(self.conn.closed)

    def test_transport_error_cleanup(self):
        """Test socket errors end the session with full cleanup"""
        self.registry.subscribe(self.conn, "a")
        self.sock.recv.side_effect = ConnectionResetError("reset")

        run_stream_session(self.conn, self.dispatcher)

        self.assertEqual(self.registry.subscribers_of("a"), frozenset())
        self.assertTrue(self.conn.closed)

    def test_cleanup_runs_exactly_once(self):
        """Test TERMINATE followed by teardown unsubscribes once"""
        self.feed(Message(MessageType.TERMINATE))
        self.registry.unsubscribe_all = Mock(return_value=set())

        run_stream_session(self.conn, self.dispatcher)

        self.registry.unsubscribe_all.assert_called_once_with(self.conn)


class TestDatagramHandling(unittest.TestCase):
    """Test cases for datagram dispatch"""

    def setUp(self):
        self.registry = SubscriptionRegistry()
        self.dispatcher = Dispatcher(self.registry)
        self.sock = Mock(spec=socket.socket)
        self.address = ('10.0.0.9', 6000)

    def test_subscribe_over_datagram(self):
        """Test the endpoint is keyed by source address and acknowledged"""
        handle_datagram(Message(MessageType.SUBSCRIBE, "alerts").serialize(),
                        self.address, self.sock, self.dispatcher)

        self.assertIn(DatagramEndpoint(self.address, None), self.registry.subscribers_of("alerts"))
        self.sock.sendto.assert_called_once_with(
            Message(MessageType.ACK, "alerts").serialize(), self.address)

    def test_malformed_datagram_is_discarded(self):
        """Test a truncated datagram is dropped without reply or side effects"""
        data = struct.pack(">III", 1, 50, 0) + b"short"

        handle_datagram(data, self.address, self.sock, self.dispatcher)

        self.sock.sendto.assert_not_called()
        self.assertEqual(self.registry.topic_count(), 0)

    def test_malformed_datagram_does_not_affect_later_ones(self):
        handle_datagram(b"\x00\x01", self.address, self.sock, self.dispatcher)
        handle_datagram(Message(MessageType.SUBSCRIBE, "a").serialize(),
                        self.address, self.sock, self.dispatcher)

        self.assertEqual(len(self.registry.subscribers_of("a")), 1)

    def test_terminate_over_datagram(self):
        """Test TERMINATE drops every subscription of the source address"""
        for topic in ("a", "b"):
            handle_datagram(Message(MessageType.SUBSCRIBE, topic).serialize(),
                            self.address, self.sock, self.dispatcher)

        handle_datagram(Message(MessageType.TERMINATE).serialize(),
                        self.address, self.sock, self.dispatcher)

        self.assertEqual(self.registry.topic_count(), 0)
        self.assertEqual(self.sock.sendto.call_count, 3)

    def test_reply_failure_is_contained(self):
        """Test a failed reply does not raise out of the receive loop"""
        self.sock.sendto.side_effect = OSError("unreachable")

        handle_datagram(Message(MessageType.SUBSCRIBE, "a").serialize(),
                        self.address, self.sock, self.dispatcher)

        self.assertEqual(len(self.registry.subscribers_of("a")), 1)


class TestMessageBroker(unittest.TestCase):
    """Test cases for MessageBroker class"""

    def setUp(self):
        """Set up test fixtures"""
        self.broker = MessageBroker()
        self.broker.start()

    def tearDown(self):
        """Clean up test fixtures"""
        self.broker.stop()

    def test_broker_creation(self):
        """Test creating message broker"""
        self.assertIsNotNone(self.broker.registry)
        self.assertIsNotNone(self.broker.dispatcher)
        self.assertIsNotNone(self.broker.sessions)
        self.assertTrue(self.broker.running)
        self.assertIs(self.broker.dispatcher.registry, self.broker.registry)

    def test_add_and_remove_connection(self):
        conn = self.broker.add_client_connection(Mock(spec=socket.socket), ('127.0.0.1', 12345))
        self.assertEqual(self.broker.sessions.session_count(), 1)

        self.broker.remove_client_connection(conn.connection_id)
        self.assertEqual(self.broker.sessions.session_count(), 0)

    def test_stop_signals_live_sessions(self):
        sock = Mock(spec=socket.socket)
        self.broker.add_client_connection(sock, ('127.0.0.1', 12345))

        self.broker.stop()

        sock.shutdown.assert_called_once_with(socket.SHUT_RDWR)
        self.assertFalse(self.broker.running)

    def test_connection_after_stop_is_shut_down(self):
        self.broker.stop()
        sock = Mock(spec=socket.socket)

        self.broker.add_client_connection(sock, ('127.0.0.1', 12346))

        sock.shutdown.assert_called_once_with(socket.SHUT_RDWR)

    def test_restart_accepts_connections(self):
        self.broker.stop()
        self.broker.start()
        sock = Mock(spec=socket.socket)

        self.broker.add_client_connection(sock, ('127.0.0.1', 12347))

        sock.shutdown.assert_not_called()

    def test_serve_datagram(self):
        sock = Mock(spec=socket.socket)
        self.broker.serve_datagram(Message(MessageType.SUBSCRIBE, "t").serialize(), ('10.1.1.1', 9), sock)

        self.assertEqual(self.broker.registry.topic_count(), 1)

    def test_broker_stats(self):
        conn = self.broker.add_client_connection(Mock(spec=socket.socket), ('127.0.0.1', 12345))
        self.broker.dispatcher.handle_message(conn, Message(MessageType.SUBSCRIBE, "t"))

        stats = self.broker.get_broker_stats()

        self.assertEqual(stats['topics'], 1)
        self.assertEqual(stats['subscriptions'], 1)
        self.assertEqual(stats['active_sessions'], 1)
        self.assertEqual(stats['topic_subscribers'], {"t": 1})


if __name__ == '__main__':
    unittest.main()
