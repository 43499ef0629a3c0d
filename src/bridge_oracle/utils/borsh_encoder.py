"""
Borsh layouts for Solana program data.

Instruction data, account state and emitted events of the bridge program are
Borsh-encoded with borsh-construct and tagged with an 8-byte discriminator.
Each layout is declared next to the type it describes. This module holds the
shared pieces: discriminators, Solana and EVM primitives, Rust-style enums
and the ``build``/``parse`` entry points that map construct errors onto the
oracle's error families.
"""

import hashlib
import io
from typing import Any

import construct
from borsh_construct import U8, CStruct
from solders.pubkey import Pubkey

from ..errors import DecodeError

DISCRIMINATOR_SIZE = 8


def _discriminator(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


def event_discriminator(name: str) -> bytes:
    """Discriminator prefixing an emitted event, sha256("event:<Name>")[:8]."""
    return _discriminator("event", name)


def instruction_discriminator(name: str) -> bytes:
    """Discriminator prefixing instruction data, sha256("global:<name>")[:8]."""
    return _discriminator("global", name)


def account_discriminator(name: str) -> bytes:
    """Discriminator prefixing account data, sha256("account:<Name>")[:8]."""
    return _discriminator("account", name)


class _PubkeyAdapter(construct.Adapter):
    """32 raw bytes exposed as a solders Pubkey."""

    def __init__(self) -> None:
        super().__init__(construct.Bytes(32))

    def _decode(self, obj: bytes, context, path) -> Pubkey:
        return Pubkey.from_bytes(obj)

    def _encode(self, obj: Pubkey, context, path) -> bytes:
        return bytes(obj)


PUBKEY = _PubkeyAdapter()
EVM_ADDRESS = construct.Bytes(20)
HASH = construct.Bytes(32)
DISCRIMINATOR = construct.Bytes(DISCRIMINATOR_SIZE)


class TaggedUnion(construct.Adapter):
    """
    Rust enum: a u8 variant index followed by the variant's fields.

    Values are single-key dicts, ``{"Variant": fields}``, in both directions,
    so unions nest inside structs and vectors like any other field.
    """

    def __init__(self, *variants: construct.Renamed) -> None:
        self.names = [variant.name for variant in variants]
        cases = dict(enumerate(variants))
        super().__init__(
            CStruct(
                "variant" / U8,
                "fields" / construct.Switch(lambda this: this["variant"], cases),
            )
        )

    def _decode(self, obj, context, path) -> dict[str, Any]:
        if obj.variant >= len(self.names):
            raise construct.MappingError(f"unknown variant {obj.variant}", path=path)
        return {self.names[obj.variant]: obj.fields}

    def _encode(self, obj: dict[str, Any], context, path) -> dict[str, Any]:
        ((name, fields),) = obj.items()
        if name not in self.names:
            raise construct.MappingError(f"unknown variant {name}", path=path)
        return {"variant": self.names.index(name), "fields": fields}


def build(layout: construct.Construct, value: Any) -> bytes:
    """
    Serialize ``value`` with ``layout``.

    Raises:
        ValueError: If a field is out of range or has the wrong size
    """
    try:
        return layout.build(value)
    except construct.ConstructError as e:
        raise ValueError(f"Cannot encode value: {e}") from e


def parse(layout: construct.Construct, data: bytes, allow_trailing: bool = False) -> Any:
    """
    Deserialize ``data`` with ``layout``.

    Account data may be padded past its layout, so ``allow_trailing`` lets
    callers accept bytes left unread.

    Raises:
        DecodeError: On truncated data, an unknown variant or trailing bytes
    """
    data = bytes(data)
    stream = io.BytesIO(data)
    try:
        value = layout.parse_stream(stream)
    except construct.ConstructError as e:
        raise DecodeError(f"Malformed data: {e}", e) from e
    trailing = len(data) - stream.tell()
    if trailing and not allow_trailing:
        raise DecodeError(f"{trailing} trailing bytes after decoding")
    return value
