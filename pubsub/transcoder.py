"""
Base64 transcoding for message payloads.

Payloads that carry user data travel as base64 text so that arbitrary bytes
survive any text-oriented display on either end. The reverse lookup table is
built once at import time and never mutated afterwards.
"""
from typing import List


ALPHABET = 'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/'
PAD = '='

DECODE_ERROR_MARKER = '<b64-decode-error>'

_INVALID = 255
_PADDING = 254


class DecodeError(ValueError):
    """Raised when text is not valid base64"""
    pass


def _build_reverse_table() -> List[int]:
    table = [_INVALID] * 256
    for index, char in enumerate(ALPHABET):
        table[ord(char)] = index
    table[ord(PAD)] = _PADDING
    return table


_REVERSE = _build_reverse_table()


def encode(data: bytes) -> str:
    """Encode bytes to base64 text"""
    out = []
    length = len(data)

    for i in range(0, length, 3):
        value = data[i] << 16
        if i + 1 < length:
            value |= data[i + 1] << 8
        if i + 2 < length:
            value |= data[i + 2]

        out.append(ALPHABET[(value >> 18) & 63])
        out.append(ALPHABET[(value >> 12) & 63])
        out.append(ALPHABET[(value >> 6) & 63] if i + 1 < length else PAD)
        out.append(ALPHABET[value & 63] if i + 2 < length else PAD)

    return ''.join(out)


def decode(text: str) -> bytes:
    """
    Decode base64 text to bytes.

    Raises DecodeError if the length is not a multiple of 4, if a character
    falls outside the alphabet, or if padding appears anywhere but the tail.
    """
    if len(text) % 4:
        raise DecodeError(f"Invalid base64 length {len(text)}: not a multiple of 4")

    codes = []
    for position, char in enumerate(text):
        code = _REVERSE[ord(char)] if ord(char) < 256 else _INVALID
        if code == _INVALID:
            raise DecodeError(f"Invalid base64 character {char!r} at position {position}")
        codes.append(code)

    # Padding is only legal as the last one or two characters
    padding = 0
    if codes and codes[-1] == _PADDING:
        padding = 2 if codes[-2] == _PADDING else 1
    if _PADDING in codes[:len(codes) - padding]:
        raise DecodeError("Invalid base64 padding: '=' in non-trailing position")

    out = bytearray()
    for i in range(0, len(codes), 4):
        c0, c1, c2, c3 = codes[i:i + 4]
        value = (c0 << 18) | (c1 << 12)
        out.append((value >> 16) & 0xFF)
        if c2 != _PADDING:
            value |= c2 << 6
            out.append((value >> 8) & 0xFF)
            if c3 != _PADDING:
                value |= c3
                out.append(value & 0xFF)

    return bytes(out)


def encode_text(text: str) -> str:
    """Encode UTF-8 text to base64"""
    return encode(text.encode('utf-8'))


def decode_text(text: str) -> str:
    """Decode base64 to UTF-8 text, returning a marker instead of failing"""
    try:
        return decode(text).decode('utf-8', errors='replace')
    except DecodeError:
        return DECODE_ERROR_MARKER
