"""
Unit tests for the base64 transcoder.
"""
import base64
import os
import unittest

from pubsub.transcoder import (
    encode,
    decode,
    encode_text,
    decode_text,
    DecodeError,
    DECODE_ERROR_MARKER,
)


class TestEncode(unittest.TestCase):

    def test_known_vectors(self):
        """Test the RFC 4648 vectors, covering both padding cases"""
        vectors = {
            b"": "",
            b"f": "Zg==",
            b"fo": "Zm8=",
            b"foo": "Zm9v",
            b"foob": "Zm9vYg==",
            b"fooba": "Zm9vYmE=",
            b"foobar": "Zm9vYmFy",
        }
        for raw, text in vectors.items():
            self.assertEqual(encode(raw), text)

    def test_matches_standard_library(self):
        """Test agreement with the standard alphabet on arbitrary bytes"""
        for size in (1, 2, 3, 31, 255, 256):
            data = os.urandom(size)
            self.assertEqual(encode(data), base64.b64encode(data).decode("ascii"))

    def test_all_byte_values(self):
        data = bytes(range(256))
        self.assertEqual(decode(encode(data)), data)


class TestDecode(unittest.TestCase):

    def test_round_trip(self):
        for data in (b"", b"\x00", b"sunny", "héllo wörld".encode("utf-8"), os.urandom(100)):
            self.assertEqual(decode(encode(data)), data)

    def test_rejects_bad_length(self):
        for text in ("A", "AB", "ABC", "ABCDE"):
            with self.assertRaises(DecodeError):
                decode(text)

    def test_rejects_characters_outside_alphabet(self):
        for text in ("AB-D", "AB_D", "AB D", "ABé=", "AB\nD"):
            with self.assertRaises(DecodeError):
                decode(text)

    def test_rejects_non_trailing_padding(self):
        for text in ("=AAA", "A=AA", "AB=C", "A===", "Zg==Zm8=", "===="):
            with self.assertRaises(DecodeError):
                decode(text)

    def test_accepts_trailing_padding(self):
        self.assertEqual(decode("Zg=="), b"f")
        self.assertEqual(decode("Zm8="), b"fo")

    def test_decode_error_is_value_error(self):
        self.assertTrue(issubclass(DecodeError, ValueError))


class TestTextHelpers(unittest.TestCase):

    def test_text_round_trip(self):
        self.assertEqual(encode_text("sunny"), "c3Vubnk=")
        self.assertEqual(decode_text("c3Vubnk="), "sunny")

    def test_decode_failure_marker(self):
        self.assertEqual(decode_text("not base64!"), DECODE_ERROR_MARKER)


if __name__ == '__main__':
    unittest.main()
