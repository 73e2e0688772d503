from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from antnode.crypto import KeyMaterial
from antnode.protocols.signer import Signer

if TYPE_CHECKING:
    from antnode.node import NodeOptions


@runtime_checkable
class NodeHandle(Protocol):
    async def shutdown(self, timeout: float) -> None: ...


class NodeFactory(Protocol):
    def __call__(
        self,
        addr: str,
        public_key: bytes,
        signer: Signer,
        network_id: int,
        logger: logging.Logger,
        libp2p_key: KeyMaterial,
        pss_key: KeyMaterial,
        options: NodeOptions,
    ) -> NodeHandle | Awaitable[NodeHandle]: ...


__all__ = ["NodeFactory", "NodeHandle"]
