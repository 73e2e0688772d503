from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Signer(Protocol):
    """Capability set shared by the local and the remote signer."""

    def public_key(self) -> bytes: ...

    def ethereum_address(self) -> bytes: ...

    def sign(self, payload: bytes) -> bytes: ...


__all__ = ["Signer"]
