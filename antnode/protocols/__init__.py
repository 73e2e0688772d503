from antnode.protocols.keystore import KeyStore
from antnode.protocols.node import NodeFactory, NodeHandle
from antnode.protocols.signer import Signer

__all__ = [
    "KeyStore",
    "NodeFactory",
    "NodeHandle",
    "Signer",
]
