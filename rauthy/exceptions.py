"""
Exception types raised by the vault.

Every failure in the vault core is recoverable at the call site, so all of
them derive from VaultError and none of them terminate the process.
"""


class VaultError(Exception):
    """Base class for all vault errors."""


class AuthenticationError(VaultError):
    """The data could not be authenticated.

    Raised for a wrong password and for a corrupt or truncated file alike;
    callers cannot tell the two apart.
    """


class DecodeError(VaultError):
    """Decrypted vault contents are not a valid credential registry."""


class EncodeError(VaultError):
    """The credential registry holds a value the vault file cannot store."""


class VaultIOError(VaultError):
    """The vault file could not be read, written or protected."""


class VaultLockedError(VaultError):
    """An operation that needs the key was called on a locked vault."""


class ParseError(VaultError):
    """A provisioning URI could not be turned into a credential."""


class TokenError(VaultError):
    """A one-time code could not be generated.

    ``errors`` maps credential ids to the individual failure messages when
    raised for a batch.
    """

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors or {}
