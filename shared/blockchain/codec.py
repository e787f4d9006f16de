"""
Ledger Value Codec
==================

Single decoding step for numeric values coming off the ledger.

The same uint256 can arrive as a Python int, a decimal or ``0x`` hex
string, a ``{"low": ..., "high": ...}`` mapping (two 128-bit felts) or a
``[low, high]`` pair. Everything past the ledger-client boundary sees a
plain ``int``.

Version: 0.1.0
"""

from collections.abc import Mapping, Sequence
from typing import Any

from shared.errors import ValidationError

U128 = 1 << 128
U256_MAX = (1 << 256) - 1


def _felt(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("boolean is not a ledger integer", value=value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        except ValueError:
            raise ValidationError("unparseable ledger integer", value=value) from None
    raise ValidationError("unsupported ledger integer encoding", value=repr(value))


def decode_uint(value: Any) -> int:
    """
    Decode any supported uint256 representation to ``int``.

    Args:
        value: int, str, {low, high} mapping or [low, high] sequence

    Returns:
        Non-negative integer

    Raises:
        ValidationError: unknown shape, negative, or out of range
    """
    if isinstance(value, Mapping):
        if "low" not in value or "high" not in value:
            raise ValidationError("uint256 mapping needs low and high", value=dict(value))
        low, high = _felt(value["low"]), _felt(value["high"])
        if not (0 <= low < U128 and 0 <= high < U128):
            raise ValidationError("uint256 limb out of range", value=dict(value))
        result = low + (high << 128)
    elif isinstance(value, Sequence) and not isinstance(value, str | bytes):
        if len(value) != 2:
            raise ValidationError("uint256 pair must have two limbs", value=list(value))
        return decode_uint({"low": value[0], "high": value[1]})
    else:
        result = _felt(value)

    if result < 0 or result > U256_MAX:
        raise ValidationError("ledger integer out of uint256 range", value=result)
    return result


def encode_u256(value: int) -> dict[str, str]:
    """Encode an int as the ``{low, high}`` hex limbs a ledger returns."""
    if value < 0 or value > U256_MAX:
        raise ValidationError("value out of uint256 range", value=value)
    return {"low": hex(value % U128), "high": hex(value >> 128)}


def decode_optional_uint(value: Any) -> int | None:
    """Decode a uint where 0 / None mean "unset"."""
    if value is None:
        return None
    decoded = decode_uint(value)
    return decoded or None
