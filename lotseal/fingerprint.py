"""
Batch payload fingerprinting.

The fingerprint of a payload is SHA-256 over the exact UTF-8 bytes of the
payload text, rendered as lowercase hexadecimal (64 characters). The text is
hashed as validated: it is never re-serialized, so two payloads that differ
only in key order or whitespace produce different fingerprints.
"""

import hashlib
import re
from typing import Union

from .util import constant_time_compare

DIGEST_HEX_LENGTH = 64

_DIGEST_RE = re.compile(r"^[0-9a-f]{%d}$" % DIGEST_HEX_LENGTH)


def fingerprint(payload_text: Union[str, bytes]) -> str:
    """
    Compute the fingerprint of a payload.

    Args:
        payload_text: The payload exactly as it was validated

    Returns:
        Lowercase hex SHA-256 digest
    """
    if isinstance(payload_text, str):
        payload_text = payload_text.encode('utf-8')
    return hashlib.sha256(payload_text).hexdigest()


def is_digest(value: str) -> bool:
    """Check that a value looks like a fingerprint produced by this module."""
    return isinstance(value, str) and bool(_DIGEST_RE.match(value))


def verify_fingerprint(declared_digest: str, payload_text: Union[str, bytes]) -> bool:
    """
    Verify that a payload matches a declared fingerprint.

    Verifiers recompute the digest from the payload; the declared value is
    never trusted on its own.
    """
    if not is_digest(declared_digest):
        return False
    return constant_time_compare(fingerprint(payload_text), declared_digest)
