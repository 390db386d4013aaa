"""
Binary encoding of the credential registry.

Layout (all integers little-endian):

    version     u32
    count       u32
    count x record:
        key         str
        id          str
        issuer      str
        name        str
        secret      str
        algorithm   u8   (index into ALGORITHMS)
        digits      u32
        period      u64
        icon        str

where ``str`` is a u32 byte length followed by UTF-8 bytes.

Vault files written by older releases hold a different, headerless layout
that is only ever read (see decode_legacy):

    count       u64
    count x record:
        key         str64
        id          str64
        issuer      str64
        secret      str64
        name        str64
        algorithm   u32  (index into ALGORITHMS)
        digits      u64
        period      u64
        icon        str64

where ``str64`` is a u64 byte length followed by UTF-8 bytes.
"""

import struct
from typing import Dict

from .credential import Algorithm, Credential
from .exceptions import DecodeError, EncodeError

VERSION = 1
ALGORITHMS = (Algorithm.SHA1, Algorithm.SHA256, Algorithm.SHA512)

_U8 = struct.Struct('<B')
_U32 = struct.Struct('<I')
_U64 = struct.Struct('<Q')

Registry = Dict[str, Credential]


def _pack_str(value: str) -> bytes:
    data = value.encode('utf-8')
    return _U32.pack(len(data)) + data


def encode(registry: Registry) -> bytes:
    """
    Serialize a registry to bytes.

    Raises:
        EncodeError: If a credential holds a value the layout cannot store,
            such as a code length above 2**32 - 1 or an unknown algorithm
    """
    chunks = [_U32.pack(VERSION), _U32.pack(len(registry))]
    for key, credential in registry.items():
        try:
            chunks.append(_pack_str(key))
            chunks.append(_pack_str(credential.id))
            chunks.append(_pack_str(credential.issuer))
            chunks.append(_pack_str(credential.name))
            chunks.append(_pack_str(credential.secret))
            chunks.append(_U8.pack(ALGORITHMS.index(credential.algorithm)))
            chunks.append(_U32.pack(credential.digits))
            chunks.append(_U64.pack(credential.period))
            chunks.append(_pack_str(credential.icon))
        except (struct.error, ValueError, AttributeError) as e:
            raise EncodeError(f"Can't store credential {key!r}: {e}") from e
    return b''.join(chunks)


class _Reader:
    """Sequential reader over a byte buffer that raises DecodeError on underrun."""

    def __init__(self, data: bytes):
        self.data = memoryview(data)
        self.offset = 0

    def take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise DecodeError(
                f"Unexpected end of data at offset {self.offset} "
                f"(wanted {size} bytes, {len(self.data) - self.offset} left)"
            )
        chunk = self.data[self.offset:end].tobytes()
        self.offset = end
        return chunk

    def unpack(self, fmt: struct.Struct) -> int:
        return fmt.unpack(self.take(fmt.size))[0]

    def string(self, length: struct.Struct = _U32) -> str:
        size = self.unpack(length)
        raw = self.take(size)
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecodeError(f"Invalid UTF-8 string at offset {self.offset - size}") from e

    def algorithm(self, fmt: struct.Struct) -> Algorithm:
        index = self.unpack(fmt)
        if index >= len(ALGORITHMS):
            raise DecodeError(f"Unknown algorithm index {index}")
        return ALGORITHMS[index]

    def finish(self) -> None:
        if self.offset != len(self.data):
            raise DecodeError(f"{len(self.data) - self.offset} trailing bytes after registry")


def decode(data: bytes) -> Registry:
    """
    Deserialize bytes produced by encode().

    Raises:
        DecodeError: If the data is truncated, has trailing bytes or holds
            invalid values
    """
    reader = _Reader(data)
    version = reader.unpack(_U32)
    if version != VERSION:
        raise DecodeError(f"Unsupported registry version {version}")

    count = reader.unpack(_U32)
    registry: Registry = {}
    for _ in range(count):
        key = reader.string()
        credential_id = reader.string()
        issuer = reader.string()
        name = reader.string()
        secret = reader.string()
        algorithm = reader.algorithm(_U8)
        digits = reader.unpack(_U32)
        period = reader.unpack(_U64)
        icon = reader.string()
        if key in registry:
            raise DecodeError(f"Duplicate registry key {key!r}")
        registry[key] = Credential(
            id=credential_id,
            issuer=issuer,
            name=name,
            secret=secret,
            algorithm=algorithm,
            digits=digits,
            period=period,
            icon=icon,
        )

    reader.finish()
    return registry


def decode_legacy(data: bytes) -> Registry:
    """
    Deserialize a registry written by an older release.

    Code lengths that do not fit the current layout are rejected here, so a
    vault that opens can always be written back.

    Raises:
        DecodeError: If the data is truncated, has trailing bytes or holds
            invalid values
    """
    reader = _Reader(data)
    count = reader.unpack(_U64)
    registry: Registry = {}
    for _ in range(count):
        key = reader.string(_U64)
        credential_id = reader.string(_U64)
        issuer = reader.string(_U64)
        secret = reader.string(_U64)
        name = reader.string(_U64)
        algorithm = reader.algorithm(_U32)
        digits = reader.unpack(_U64)
        period = reader.unpack(_U64)
        icon = reader.string(_U64)
        if digits > 0xFFFFFFFF:
            raise DecodeError(f"Code length {digits} of {key!r} is out of range")
        if key in registry:
            raise DecodeError(f"Duplicate registry key {key!r}")
        registry[key] = Credential(
            id=credential_id,
            issuer=issuer,
            name=name,
            secret=secret,
            algorithm=algorithm,
            digits=digits,
            period=period,
            icon=icon,
        )

    reader.finish()
    return registry


def decode_any(data: bytes) -> Registry:
    """
    Deserialize either layout, trying the current one first.

    The two layouts cannot both parse the same bytes: a legacy payload read
    as the current layout always fails the version check or leaves trailing
    bytes.

    Raises:
        DecodeError: From the current layout, if neither layout fits
    """
    try:
        return decode(data)
    except DecodeError as e:
        try:
            return decode_legacy(data)
        except DecodeError:
            raise e from None
