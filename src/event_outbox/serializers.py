"""
Payload serializers.

`JsonSerializer` is the default. `FernetSerializer` wraps any other serializer
and encrypts its output, so event payloads and snapshots are unreadable at rest
without the key.
"""
from typing import Any

import pydantic_core
from cryptography.fernet import Fernet, InvalidToken
from pydantic import TypeAdapter

from .errors import SerializationError


class JsonSerializer:
    def serialize(self, obj: Any) -> bytes:
        try:
            return pydantic_core.to_json(obj)
        except pydantic_core.PydanticSerializationError as e:
            raise SerializationError(f"Cannot serialize {type(obj).__name__}: {e}") from e

    def deserialize(self, data: bytes, type: Any = None) -> Any:
        try:
            if type is None:
                return pydantic_core.from_json(data)
            return TypeAdapter(type).validate_json(data)
        except (ValueError, pydantic_core.ValidationError) as e:
            raise SerializationError(f"Cannot deserialize payload: {e}") from e


class FernetSerializer:
    """Encrypts the bytes produced by `inner` with a Fernet key."""

    def __init__(self, key: bytes | str, inner: Any = None):
        self.fernet = Fernet(key)
        self.inner = inner if inner is not None else JsonSerializer()

    def serialize(self, obj: Any) -> bytes:
        return self.fernet.encrypt(self.inner.serialize(obj))

    def deserialize(self, data: bytes, type: Any = None) -> Any:
        try:
            decrypted = self.fernet.decrypt(data)
        except InvalidToken as e:
            # Wrong key, or the payload was written before a key rotation.
            raise SerializationError("Payload could not be decrypted with the configured key") from e
        return self.inner.deserialize(decrypted, type)
