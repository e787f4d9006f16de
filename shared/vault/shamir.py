"""
Shamir Secret Sharing
=====================

t-of-n threshold sharing over the prime field GF(2^521 - 1).

A secret of up to 64 bytes is the constant term of a random polynomial
of degree ``t - 1``; share ``i`` is the polynomial evaluated at ``x = i``.
Any ``t`` shares recover the secret by Lagrange interpolation at zero;
fewer reveal nothing about it.

Version: 0.1.0
"""

import secrets

from pydantic import BaseModel, Field

from shared.errors import DecryptionFailed, InsufficientShares, ValidationError

# Mersenne prime M521
PRIME = 2**521 - 1
MAX_SECRET_BYTES = 64


class Share(BaseModel):
    """One point on the sharing polynomial."""

    index: int = Field(..., ge=1, description="x coordinate (1..n)")
    value: int = Field(..., ge=0, lt=PRIME, description="y coordinate")

    model_config = {"frozen": True}

    def encode(self) -> str:
        """Wire form ``"{index}-{hex}"``."""
        return f"{self.index}-{self.value:x}"

    @classmethod
    def decode(cls, text: str) -> "Share":
        """
        Parse the wire form.

        Raises:
            ValidationError: malformed share string
        """
        index, sep, value = text.strip().partition("-")
        if not sep or not index.isdigit() or not value:
            raise ValidationError("malformed share", share_index=index or None)
        try:
            return cls(index=int(index), value=int(value, 16))
        except ValueError as e:
            raise ValidationError("malformed share", share_index=index) from e


def _check_parameters(threshold: int, total: int) -> None:
    if threshold < 2:
        raise ValidationError("threshold must be at least 2", threshold=threshold)
    if threshold > total:
        raise ValidationError("threshold cannot exceed total shares", threshold=threshold, total=total)


def _evaluate(coefficients: list[int], x: int) -> int:
    # Horner's rule
    result = 0
    for coefficient in reversed(coefficients):
        result = (result * x + coefficient) % PRIME
    return result


def split_secret(secret: bytes, threshold: int, total: int) -> list[Share]:
    """
    Split a secret into ``total`` shares, any ``threshold`` of which recover it.

    Args:
        secret: Secret bytes (at most 64)
        threshold: Minimum shares needed (t >= 2)
        total: Total shares to create (n >= t)

    Returns:
        Shares with indices 1..n
    """
    _check_parameters(threshold, total)
    if not secret or len(secret) > MAX_SECRET_BYTES:
        raise ValidationError("secret must be 1-64 bytes", length=len(secret))

    coefficients = [int.from_bytes(secret, "big")]
    coefficients.extend(secrets.randbelow(PRIME) for _ in range(threshold - 1))

    return [Share(index=x, value=_evaluate(coefficients, x)) for x in range(1, total + 1)]


def reconstruct_secret(shares: list[Share], threshold: int, length: int) -> bytes:
    """
    Recover a secret from at least ``threshold`` distinct shares.

    Args:
        shares: Collected shares (duplicates by index are tolerated)
        threshold: Threshold the secret was split with
        length: Byte length of the original secret

    Returns:
        The secret

    Raises:
        InsufficientShares: fewer than ``threshold`` distinct shares
        ValidationError: two shares disagree at the same index
        DecryptionFailed: the shares interpolate to a value that cannot be the secret
    """
    distinct: dict[int, int] = {}
    for share in shares:
        existing = distinct.setdefault(share.index, share.value)
        if existing != share.value:
            raise ValidationError("conflicting shares for one index", share_index=share.index)

    if len(distinct) < threshold:
        raise InsufficientShares(
            f"need {threshold} shares, have {len(distinct)}",
            threshold=threshold,
            available=len(distinct),
        )

    points = sorted(distinct.items())[:threshold]
    secret = 0
    for i, (xi, yi) in enumerate(points):
        numerator = 1
        denominator = 1
        for j, (xj, _) in enumerate(points):
            if i != j:
                numerator = (numerator * -xj) % PRIME
                denominator = (denominator * (xi - xj)) % PRIME
        lagrange = numerator * pow(denominator, PRIME - 2, PRIME)
        secret = (secret + yi * lagrange) % PRIME

    try:
        return secret.to_bytes(length, "big")
    except OverflowError:
        raise DecryptionFailed("shares do not reconstruct a valid secret") from None
