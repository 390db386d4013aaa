"""
Shared pytest fixtures for the vault test suite.
"""

import struct

import pytest

from rauthy.credential import Algorithm, Credential
from rauthy.crypto import CryptoManager
from rauthy.storage import Vault

PASSWORD = "correct horse battery staple"

LEGACY_ALGORITHM_VARIANTS = {Algorithm.SHA1: 0, Algorithm.SHA256: 1, Algorithm.SHA512: 2}


def legacy_payload(registry):
    """Assemble the headerless registry layout older releases wrote."""
    def text(value):
        data = value.encode('utf-8')
        return struct.pack('<Q', len(data)) + data

    chunks = [struct.pack('<Q', len(registry))]
    for key, credential in registry.items():
        chunks += [
            text(key),
            text(credential.id),
            text(credential.issuer),
            text(credential.secret),
            text(credential.name),
            struct.pack('<I', LEGACY_ALGORITHM_VARIANTS[credential.algorithm]),
            struct.pack('<QQ', credential.digits, credential.period),
            text(credential.icon),
        ]
    return b''.join(chunks)


@pytest.fixture
def crypto():
    return CryptoManager()


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def vault_dir(tmp_path):
    """Empty application data directory."""
    path = tmp_path / "data"
    path.mkdir()
    return str(path)


@pytest.fixture
def vault(vault_dir):
    """Unlocked vault with no file on disk yet."""
    v = Vault(vault_dir)
    v.unlock(PASSWORD)
    yield v
    v.close()


@pytest.fixture
def github():
    return Credential(
        issuer="GitHub",
        name="alice@example.com",
        secret="KRSXG5CTMVRXEZLUKN2XAZLSKNSWG4TFOQ",
    )


@pytest.fixture
def rfc_credential():
    """RFC 6238 test secret "12345678901234567890" in base32."""
    return Credential(
        issuer="RFC",
        name="6238",
        secret="GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ",
        algorithm=Algorithm.SHA1,
        digits=8,
        period=30,
    )
