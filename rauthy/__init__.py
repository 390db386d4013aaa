"""
Rauthy Authenticator
Copyright (c) 2025

THREAT MODEL:
TOTP secrets are stored in a single file encrypted with a key derived from the
user's password. The vault protects that file at rest; it does not defend
against an attacker who can run code as the same user on this device.
"""
from .credential import Algorithm, Credential
from .exceptions import (
    AuthenticationError,
    DecodeError,
    EncodeError,
    ParseError,
    TokenError,
    VaultError,
    VaultIOError,
    VaultLockedError,
)
from .storage import Vault, VaultFormat, VaultState
from .totp import TokenBatch, TotpToken, current_token, services_tokens

__all__ = [
    "Algorithm",
    "AuthenticationError",
    "Credential",
    "DecodeError",
    "EncodeError",
    "ParseError",
    "TokenBatch",
    "TokenError",
    "TotpToken",
    "Vault",
    "VaultError",
    "VaultFormat",
    "VaultIOError",
    "VaultLockedError",
    "VaultState",
    "current_token",
    "services_tokens",
]
