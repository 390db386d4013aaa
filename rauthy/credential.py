"""
TOTP credentials and provisioning URI parsing.

URI format:
    otpauth://totp/{issuer}:{name}?secret={secret}&issuer={issuer}&algorithm={algorithm}&digits={digits}&period={period}

where everything except ``secret`` is optional. ``secret`` is a base32
shared secret of at least 128 bits, ``algorithm`` is sha1, sha256 or sha512,
``digits`` the code length and ``period`` the validity window in seconds.
"""

import base64
import binascii
import hashlib
import logging
import string
from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Dict, Any
from urllib.parse import urlsplit, parse_qs, unquote

from . import config
from .exceptions import ParseError

logger = logging.getLogger(__name__)

_BASE32_ALPHABET = set(string.ascii_uppercase + "234567")
# Lengths (mod 8) a base32 string can have once its padding is stripped.
_BASE32_VALID_REMAINDERS = (0, 2, 4, 5, 7)


class Algorithm(Enum):
    """Hash algorithms a credential can use."""
    SHA1 = "SHA1"
    SHA256 = "SHA256"
    SHA512 = "SHA512"

    @property
    def digest(self):
        return getattr(hashlib, self.value.lower())

    @classmethod
    def parse(cls, value: str) -> 'Algorithm':
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ParseError(f"Unsupported algorithm: {value!r}") from None


def normalize_secret(secret: str) -> str:
    """Uppercase a base32 secret and drop whitespace, dashes and padding."""
    cleaned = "".join(secret.split()).replace("-", "")
    return cleaned.upper().rstrip("=")


def decode_secret(secret: str, strict: bool = True) -> bytes:
    """
    Decode a base32 secret.

    In strict mode the secret must use the uppercase RFC 4648 alphabet,
    have a valid length and decode to at least 128 bits. Otherwise the
    secret is normalized first and any decodable length is accepted.

    Raises:
        ValueError: If the secret cannot be decoded
    """
    if strict:
        text = secret.rstrip("=")
        if not text or any(c not in _BASE32_ALPHABET for c in text):
            raise ValueError("Secret is not valid base32")
    else:
        text = normalize_secret(secret)
        if not text:
            raise ValueError("Secret is empty")

    if len(text) % 8 not in _BASE32_VALID_REMAINDERS:
        raise ValueError(f"Secret has an invalid base32 length ({len(text)})")
    padded = text + "=" * (-len(text) % 8)
    try:
        raw = base64.b32decode(padded, casefold=not strict)
    except binascii.Error as e:
        raise ValueError(f"Secret is not valid base32: {e}") from e

    if strict and len(raw) < config.TOTP_MIN_SECRET_BYTES:
        raise ValueError(
            f"Secret is too short: {len(raw)} bytes "
            f"(minimum {config.TOTP_MIN_SECRET_BYTES})"
        )
    return raw


def make_id(issuer: str, name: str) -> str:
    # Plain concatenation: ("AB", "C") and ("A", "BC") share an id.
    return f"{issuer}{name}"


@dataclass
class Credential:
    """A single TOTP entry."""
    issuer: str
    name: str
    secret: str
    algorithm: Algorithm = Algorithm(config.TOTP_DEFAULT_ALGORITHM)
    digits: int = config.TOTP_DEFAULT_DIGITS
    period: int = config.TOTP_DEFAULT_PERIOD
    icon: str = ""
    id: str = field(default="")

    def __post_init__(self):
        if not self.id:
            self.id = make_id(self.issuer, self.name)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display."""
        data = asdict(self)
        data['algorithm'] = self.algorithm.value
        return data

    @classmethod
    def from_uri(cls, uri: str) -> 'Credential':
        """
        Create a credential from an otpauth:// provisioning URI.

        The strict parser is tried first. When it rejects the secret or one of
        the numeric parameters, the permissive parser is tried, which accepts
        short or badly padded secrets and unusual code lengths.

        Raises:
            ParseError: If neither parser accepts the URI
        """
        try:
            return parse_uri(uri, strict=True)
        except ParseError as strict_error:
            logger.debug(f"Strict URI parse failed ({strict_error}), trying permissive parse")
            try:
                return parse_uri(uri, strict=False)
            except ParseError as e:
                raise ParseError(f"Couldn't parse the provided URL as a TOTP URL: {e}") from e


def _single_param(params: Dict[str, list], name: str):
    values = params.get(name)
    if not values:
        return None
    return values[0]


def _int_param(params: Dict[str, list], name: str, default: int) -> int:
    value = _single_param(params, name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ParseError(f"Parameter '{name}' must be an integer, got {value!r}") from None


def parse_uri(uri: str, strict: bool = True) -> Credential:
    """
    Parse an otpauth://totp/ URI into a Credential.

    Args:
        uri: The provisioning URI
        strict: Enforce secret length and code length rules

    Raises:
        ParseError: With a message describing what is wrong
    """
    parts = urlsplit(uri.strip())
    if parts.scheme.lower() != config.OTPAUTH_SCHEME:
        raise ParseError(f"Invalid scheme {parts.scheme!r}, expected '{config.OTPAUTH_SCHEME}'")
    if parts.netloc.lower() != config.OTPAUTH_TYPE:
        raise ParseError(f"Invalid OTP type {parts.netloc!r}, expected '{config.OTPAUTH_TYPE}'")

    label = unquote(parts.path.lstrip("/"))
    if ":" in label:
        issuer, name = label.split(":", 1)
        name = name.lstrip()
    else:
        issuer, name = "", label
    if not name:
        raise ParseError("Account name is missing from the URI label")

    params = parse_qs(parts.query, keep_blank_values=True)

    query_issuer = _single_param(params, "issuer")
    if query_issuer:
        issuer = query_issuer

    secret = _single_param(params, "secret")
    if not secret:
        raise ParseError("Parameter 'secret' is missing")
    secret = normalize_secret(secret) if not strict else secret
    try:
        decode_secret(secret, strict=strict)
    except ValueError as e:
        raise ParseError(str(e)) from e

    algorithm_value = _single_param(params, "algorithm")
    algorithm = Algorithm.parse(algorithm_value) if algorithm_value else Algorithm(config.TOTP_DEFAULT_ALGORITHM)

    digits = _int_param(params, "digits", config.TOTP_DEFAULT_DIGITS)
    period = _int_param(params, "period", config.TOTP_DEFAULT_PERIOD)
    if period <= 0:
        raise ParseError(f"Parameter 'period' must be positive, got {period}")
    if period > config.TOTP_MAX_PERIOD:
        raise ParseError(f"Parameter 'period' is too large, got {period}")
    if digits <= 0:
        raise ParseError(f"Parameter 'digits' must be positive, got {digits}")
    if digits > config.TOTP_MAX_DIGITS:
        raise ParseError(f"Parameter 'digits' must be at most {config.TOTP_MAX_DIGITS}, got {digits}")
    if strict and digits not in config.TOTP_STRICT_DIGITS:
        raise ParseError(f"Parameter 'digits' must be one of {config.TOTP_STRICT_DIGITS}, got {digits}")

    return Credential(
        issuer=issuer,
        name=name,
        secret=secret.rstrip("="),
        algorithm=algorithm,
        digits=digits,
        period=period,
    )
