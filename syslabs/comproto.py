"""Message framing shared by the command client and server."""

from __future__ import annotations

import string
from enum import IntEnum


class MessageType(IntEnum):
    CONNECTION_REQ = 1
    CONNECTION_REP = 2
    SEND_COMMAND = 3
    COMMAND_RES = 4
    QUIT_REQ = 5
    QUIT_REP = 6
    QUIT_ALL_REQ = 7


HEADER_SIZE = 8


def substring_from_second_space(text: str) -> str:
    """Text after the second space, leading spaces removed; empty if there is none."""
    first = text.find(" ")
    if first < 0:
        return ""
    second = text.find(" ", first + 1)
    if second < 0:
        return ""
    return text[second + 1:].lstrip(" ")


def extract_number(text: str) -> str:
    """All ASCII digits of text, in order."""
    return "".join(ch for ch in text if ch in string.digits)


def encode_message(msg_type, data: str) -> str:
    """Frame data with a length field, the type and padding, as sent on a pipe."""
    length = HEADER_SIZE + len(data.encode())
    return f"{length:3d} {int(msg_type):1d}   {data}"