"""
Exception hierarchy for the Dogecoin transaction engine.

Four families mirror where a failure comes from:
- EncodingError: malformed caller input (addresses, WIF strings).
- ConstructionError: structural preconditions of scripts and transactions.
- ResolutionError: prevout lookup and broadcast against remote providers.
- CryptoError: key material and signature faults.
"""

from __future__ import annotations


class DogeError(Exception):
    """Base class for every error raised by the engine."""

    pass


class DogeConfigError(DogeError):
    """Configuration or key-material error for the DOGE wallet."""

    pass


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


class EncodingError(DogeError, ValueError):
    pass


class InvalidChecksum(EncodingError):
    pass


class InvalidLength(EncodingError):
    pass


class InvalidCharacter(EncodingError):
    pass


class InvalidVersion(EncodingError):
    pass


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class ConstructionError(DogeError):
    pass


class InvalidMultisigParams(ConstructionError):
    pass


class InvalidPublicKey(ConstructionError):
    pass


class SignatureCountMismatch(ConstructionError):
    pass


class SignatureOrderError(ConstructionError):
    pass


class InvalidAmount(ConstructionError):
    pass


class UnsupportedLockingScript(ConstructionError):
    pass


class InsufficientFunds(ConstructionError):
    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient funds: need {required} sats (amount + fee), "
            f"prevout holds {available} sats"
        )


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class ResolutionError(DogeError):
    """
    Failure talking to a prevout or broadcast provider.

    Carries the provider name and the outpoint (if any) so the caller can
    retry by hand against the same or a different source.
    """

    def __init__(self, message: str, provider: str, outpoint: object | None = None) -> None:
        self.detail = message
        self.provider = provider
        self.outpoint = outpoint
        where = f"[{provider}]" if outpoint is None else f"[{provider} {outpoint}]"
        super().__init__(f"{where} {message}")


class PrevoutNotFound(ResolutionError):
    pass


class TransportError(ResolutionError):
    pass


class RateLimited(ResolutionError):
    pass


class BroadcastRejected(ResolutionError):
    pass


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


class CryptoError(DogeError):
    pass


class InvalidPrivateKey(CryptoError):
    pass


class KeyMismatch(CryptoError):
    pass


class SignatureVerificationFailed(CryptoError):
    pass
