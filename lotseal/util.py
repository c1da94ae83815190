"""
Small helpers shared across lotseal: JSON encodings, hashing, base64 and
UTC timestamps.
"""

import base64
import hashlib
import hmac
import json
import math
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Union

_BytesLike = Union[bytes, str]

_FRACTION = re.compile(r'\.(\d+)')


def _as_bytes(data: _BytesLike) -> bytes:
    return data.encode('utf-8') if isinstance(data, str) else data


def canonicalize(obj: Any) -> bytes:
    """
    Canonical JSON bytes for signing: sorted keys, no insignificant
    whitespace, UTF-8.
    """
    return json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def _js_number(value: float) -> str:
    """Format a float with the ECMAScript Number-to-String rules."""
    if math.isnan(value) or math.isinf(value):
        return 'null'
    if value == 0:
        return '0'
    sign = '-' if value < 0 else ''
    # repr gives the shortest round-tripping digits, as JS does
    mantissa, _, exponent = repr(abs(value)).partition('e')
    whole, _, fraction = mantissa.partition('.')
    digits = whole + fraction
    point = len(whole) + (int(exponent) if exponent else 0)
    stripped = digits.lstrip('0')
    point -= len(digits) - len(stripped)
    digits = stripped.rstrip('0')
    k, n = len(digits), point

    if k <= n <= 21:
        text = digits + '0' * (n - k)
    elif 0 < n <= 21:
        text = digits[:n] + '.' + digits[n:]
    elif -6 < n <= 0:
        text = '0.' + '0' * -n + digits
    else:
        e = n - 1
        head = digits[0] if k == 1 else digits[0] + '.' + digits[1:]
        text = f"{head}e{'+' if e >= 0 else '-'}{abs(e)}"
    return sign + text


def compact_json(obj: Any) -> str:
    """
    Serialize an object the way a browser's JSON.stringify does: key order
    kept, no whitespace, non-ASCII kept, and floats in JS number notation
    (``1.0`` becomes ``1``, ``1e-05`` becomes ``0.00001``). Integers are
    written exactly, even past 2**53.
    """
    if obj is None or isinstance(obj, (bool, str)):
        return json.dumps(obj, ensure_ascii=False)
    if isinstance(obj, int):
        return str(obj)
    if isinstance(obj, float):
        return _js_number(obj)
    if isinstance(obj, dict):
        items = (json.dumps(str(k), ensure_ascii=False) + ':' + compact_json(v) for k, v in obj.items())
        return '{' + ','.join(items) + '}'
    if isinstance(obj, (list, tuple)):
        return '[' + ','.join(compact_json(v) for v in obj) + ']'
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def sha256_hex(data: _BytesLike) -> str:
    return hashlib.sha256(_as_bytes(data)).hexdigest()


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def utc_rfc3339(dt: datetime) -> str:
    """Render an aware datetime as an RFC3339 UTC string."""
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_rfc3339(s: str) -> datetime:
    """
    Parse an RFC3339 string (``Z`` or offset suffix) to an aware datetime.

    Fractional seconds of any length are accepted; naive values are taken
    as UTC.
    """
    text = _FRACTION.sub(lambda m: '.' + (m.group(1) + '000000')[:6], s.replace("Z", "+00:00"), count=1)
    dt = datetime.fromisoformat(text)
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def b64e(raw: bytes) -> str:
    return base64.b64encode(raw).decode('ascii')


def b64d(text: str) -> bytes:
    return base64.b64decode(text.encode('ascii'))


def constant_time_compare(a: _BytesLike, b: _BytesLike) -> bool:
    return hmac.compare_digest(_as_bytes(a), _as_bytes(b))


def generate_nonce(length: int = 16) -> str:
    """Random hex nonce of ``length`` bytes."""
    return secrets.token_hex(length)


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """Hide all but the last few characters of a credential before logging it."""
    hidden = max(len(value) - visible_chars, 0)
    if hidden == 0:
        return '*' * len(value)
    return '*' * hidden + value[hidden:]
