"""Bucket state codec.

State is stored as a Redis hash with three fields:

- ``v``: codec version, currently ``"1"``
- ``tokens``: shortest round-trip decimal form of the float (``repr``), so
  repeated encode/decode cycles never drift
- ``ts``: last refill as integer microseconds since epoch (fixed point,
  exact in a double for any realistic timestamp)

Unknown fields are ignored so a newer writer can add fields without breaking
older readers. The Lua script writes the same layout.
"""

import math
from typing import Dict, Mapping, Optional, Union

from bucketgate.app.exceptions import EncodingError

from .models import BucketState

CODEC_VERSION = "1"

FIELD_VERSION = "v"
FIELD_TOKENS = "tokens"
FIELD_TIMESTAMP = "ts"

MICROS_PER_SECOND = 1_000_000

RawValue = Union[str, bytes]


def _text(value: RawValue) -> str:
    if isinstance(value, bytes):
        return value.decode("ascii")
    return str(value)


def encode_state(state: BucketState) -> Dict[str, str]:
    """Encode state into a hash mapping."""
    return {
        FIELD_VERSION: CODEC_VERSION,
        FIELD_TOKENS: repr(float(state.tokens)),
        FIELD_TIMESTAMP: str(int(round(state.last_refill * MICROS_PER_SECOND))),
    }


def decode_state(
    raw: Optional[Mapping[RawValue, RawValue]],
    key: Optional[str] = None,
) -> Optional[BucketState]:
    """Decode a hash mapping as returned by HGETALL.

    Args:
        raw: Hash contents with str or bytes keys/values
        key: Store key, used in error messages only

    Returns:
        Decoded state, or None when the hash is empty (missing key)

    Raises:
        EncodingError: If required fields are missing or malformed
    """
    if not raw:
        return None

    try:
        fields = {_text(k): _text(v) for k, v in raw.items()}
    except UnicodeDecodeError as e:
        raise EncodingError(f"non-ascii content ({e})", key) from e

    if FIELD_TOKENS not in fields or FIELD_TIMESTAMP not in fields:
        raise EncodingError(f"missing fields, got {sorted(fields)}", key)

    try:
        tokens = float(fields[FIELD_TOKENS])
        ts_micros = int(fields[FIELD_TIMESTAMP])
    except ValueError as e:
        raise EncodingError(str(e), key) from e

    if not math.isfinite(tokens) or tokens < 0:
        raise EncodingError(f"tokens out of range: {fields[FIELD_TOKENS]}", key)
    if ts_micros < 0:
        raise EncodingError(f"timestamp out of range: {ts_micros}", key)

    return BucketState(tokens=tokens, last_refill=ts_micros / MICROS_PER_SECOND)
