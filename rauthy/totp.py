"""
Time-based one-time password generation (RFC 6238) for stored credentials.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

import pyotp

from .credential import Credential, decode_secret, normalize_secret
from .exceptions import TokenError

logger = logging.getLogger(__name__)


@dataclass
class TotpToken:
    """A current code and the Unix time at which it stops being valid."""
    token: str
    next_step_time: int


@dataclass
class TokenBatch:
    """Codes for a whole registry, plus the credentials that failed."""
    tokens: Dict[str, TotpToken] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.errors


def _build_totp(credential: Credential) -> pyotp.TOTP:
    """Build the pyotp generator, falling back to a permissive secret decode."""
    try:
        decode_secret(credential.secret, strict=True)
        secret = credential.secret.rstrip("=")
    except ValueError as e:
        logger.debug(f"Secret of {credential.id!r} is not strict base32 ({e}), using permissive decode")
        secret = normalize_secret(credential.secret)
        try:
            decode_secret(secret, strict=False)
        except ValueError as e:
            raise TokenError(f"Invalid secret for {credential.id!r}: {e}") from e

    try:
        return pyotp.TOTP(
            secret,
            digits=credential.digits,
            digest=credential.algorithm.digest,
            name=credential.name,
            issuer=credential.issuer or None,
            interval=credential.period,
        )
    except ValueError as e:
        raise TokenError(f"Couldn't create a generator for {credential.id!r}: {e}") from e


def current_token(credential: Credential, now: Optional[float] = None) -> TotpToken:
    """
    Compute the code for the time window containing ``now``.

    Args:
        credential: The credential to generate a code for
        now: Unix time in seconds, defaults to the current time

    Returns:
        TotpToken with the zero-padded code and the start of the next window

    Raises:
        TokenError: If the secret cannot be decoded or the parameters are invalid
    """
    if now is None:
        now = time.time()
    if credential.period <= 0:
        raise TokenError(f"Invalid period for {credential.id!r}: {credential.period}")
    if credential.digits <= 0:
        raise TokenError(f"Invalid code length for {credential.id!r}: {credential.digits}")

    totp = _build_totp(credential)
    counter = int(now // credential.period)
    try:
        token = totp.generate_otp(counter)
    except ValueError as e:
        raise TokenError(f"Couldn't generate a token for {credential.id!r}: {e}") from e
    return TotpToken(token=token, next_step_time=(counter + 1) * credential.period)


def services_tokens(credentials: Mapping[str, Credential], now: Optional[float] = None) -> TokenBatch:
    """
    Compute current codes for every credential.

    A credential that fails is reported in ``TokenBatch.errors`` and logged;
    the call only raises when every credential failed.

    Raises:
        TokenError: If no code at all could be generated
    """
    if now is None:
        now = time.time()
    batch = TokenBatch()
    for credential_id, credential in credentials.items():
        try:
            batch.tokens[credential_id] = current_token(credential, now)
        except TokenError as e:
            logger.warning(f"Token generation failed for {credential_id!r}: {e}")
            batch.errors[credential_id] = str(e)

    if batch.errors and not batch.tokens:
        raise TokenError("Couldn't generate a token for any credential", errors=batch.errors)
    return batch
