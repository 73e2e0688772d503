from __future__ import annotations

from typing import Protocol, runtime_checkable

from antnode.crypto import KeyMaterial


@runtime_checkable
class KeyStore(Protocol):
    def exists(self, name: str) -> bool: ...

    def load_or_create(self, name: str, password: str) -> tuple[KeyMaterial, bool]: ...


__all__ = ["KeyStore"]
