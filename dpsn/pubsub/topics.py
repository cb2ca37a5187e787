"""
Topic naming helpers.

A DPSN topic is a path whose first segment, the topic root, is the hex
hash of a topic registered on-chain. The root is the unit that gets signed.
"""

import re
import time

from eth_utils import keccak, to_hex

TOPIC_ROOT_PATTERN = re.compile(r"^0x[0-9a-fA-F]+$")


def topic_root(topic: str) -> str:
    """Return the segment of the topic before the first '/'."""
    return topic.split("/", 1)[0]


def is_hex_topic_root(root: str) -> bool:
    return bool(TOPIC_ROOT_PATTERN.match(root))


def topic_root_bytes(root: str) -> bytes:
    """
    Convert a hex topic root into the bytes that get signed.

    The root is read as a big-endian unsigned integer, so leading zero
    bytes are not part of the signed payload.
    """
    value = int(root, 16)
    return value.to_bytes((value.bit_length() + 7) // 8, "big")


def hash_topic_name(name: str) -> str:
    """Keccak-256 of the UTF-8 name, as 0x-hex."""
    return to_hex(keccak(text=name))


def generate_topic_hash(topic_name: str, timestamp: int | None = None) -> str:
    """
    Generate the registration hash for a topic name.

    The hash seeds on the unix timestamp in seconds, so two registrations of
    the same name within one second produce the same hash.
    """
    if timestamp is None:
        timestamp = int(time.time())
    return hash_topic_name(f"{timestamp}_{topic_name}")
