"""The boundary to the node runtime.

The runtime itself (networking, storage, incentives) lives elsewhere. This
module defines what it is handed at construction time and how it is located.
"""

from __future__ import annotations

import importlib
import logging
from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field

from antnode.config import (
    NodeSettings,
    ResolverConnectionConfig,
    parse_resolver_connection_strings,
)
from antnode.crypto import KeyMaterial
from antnode.errors import BootstrapValidationError
from antnode.network import NetworkProfile
from antnode.protocols.node import NodeFactory
from antnode.protocols.signer import Signer

logger = logging.getLogger(__name__)


class NodeOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    data_dir: str = ""
    cache_capacity: int = 0
    db_open_files_limit: int = 0
    db_block_cache_capacity: int = 0
    db_write_buffer_size: int = 0
    db_disable_seeks_compaction: bool = False
    api_addr: str = ""
    debug_api_addr: str = ""
    addr: str = ""
    nat_addr: str = ""
    enable_ws: bool = False
    enable_quic: bool = False
    welcome_message: str = ""
    bootnodes: tuple[str, ...] = ()
    cors_allowed_origins: tuple[str, ...] = ()
    dashboard_authorization: str = ""
    standalone: bool = False
    tracing_enabled: bool = False
    tracing_endpoint: str = ""
    tracing_service_name: str = ""
    global_pinning_enabled: bool = False
    payment_threshold: str = ""
    payment_tolerance: str = ""
    payment_early: str = ""
    resolver_connection_configs: tuple[ResolverConnectionConfig, ...] = ()
    gateway_mode: bool = False
    bootnode_mode: bool = False
    swap_endpoint: str = ""
    swap_factory_address: str = ""
    swap_initial_deposit: str = ""
    swap_enable: bool = False
    full_node_mode: bool = False
    transaction: str = ""
    block_hash: str = ""
    postage_contract_address: str = ""
    price_oracle_address: str = ""
    block_time: timedelta = Field(default=timedelta(0))
    deploy_gas_price: str = ""
    warmup_time: timedelta = Field(default=timedelta(0))
    chain_id: int = -1
    mine_enabled: bool = False
    mine_trust: bool = False
    mine_contract_address: str = ""
    uniswap_enable: bool = False
    uniswap_endpoint: str = ""
    uniswap_valid_time: timedelta = Field(default=timedelta(0))


def build_node_options(settings: NodeSettings, profile: NetworkProfile) -> NodeOptions:
    """Flatten settings plus the resolved network profile into constructor options."""
    debug_api_addr = settings.api.debug_api_addr if settings.api.debug_api_enable else ""

    return NodeOptions(
        data_dir=str(settings.data_dir) if settings.data_dir is not None else "",
        cache_capacity=settings.storage.cache_capacity,
        db_open_files_limit=settings.storage.db_open_files_limit,
        db_block_cache_capacity=settings.storage.db_block_cache_capacity,
        db_write_buffer_size=settings.storage.db_write_buffer_size,
        db_disable_seeks_compaction=settings.storage.db_disable_seeks_compaction,
        api_addr=settings.api.addr,
        debug_api_addr=debug_api_addr,
        addr=settings.p2p.addr,
        nat_addr=settings.p2p.nat_addr,
        enable_ws=settings.p2p.ws_enable,
        enable_quic=settings.p2p.quic_enable,
        welcome_message=settings.p2p.welcome_message,
        bootnodes=profile.bootnodes,
        cors_allowed_origins=tuple(settings.api.cors_allowed_origins),
        dashboard_authorization=settings.api.dashboard_authorization,
        standalone=settings.standalone,
        tracing_enabled=settings.tracing.enabled,
        tracing_endpoint=settings.tracing.endpoint,
        tracing_service_name=settings.tracing.service_name,
        global_pinning_enabled=settings.storage.global_pinning_enabled,
        payment_threshold=settings.payment.threshold,
        payment_tolerance=settings.payment.tolerance,
        payment_early=settings.payment.early,
        resolver_connection_configs=tuple(parse_resolver_connection_strings(settings.resolver_endpoints)),
        gateway_mode=settings.api.gateway_mode,
        bootnode_mode=settings.bootnode_mode,
        swap_endpoint=settings.swap.endpoint,
        swap_factory_address=settings.swap.factory_address,
        swap_initial_deposit=settings.swap.initial_deposit,
        swap_enable=settings.swap.enable,
        full_node_mode=settings.full_node,
        transaction=settings.postage.transaction_hash,
        block_hash=settings.postage.block_hash,
        postage_contract_address=settings.postage.contract_address,
        price_oracle_address=settings.postage.price_oracle_address,
        block_time=profile.block_time,
        deploy_gas_price=settings.swap.deployment_gas_price,
        warmup_time=settings.warmup_time,
        chain_id=profile.chain_id,
        mine_enabled=settings.mine.enable,
        mine_trust=settings.mine.trust,
        mine_contract_address=settings.mine.contract_address,
        uniswap_enable=settings.uniswap.enable,
        uniswap_endpoint=settings.uniswap.endpoint,
        uniswap_valid_time=settings.uniswap.valid_time,
    )


def load_node_factory(spec: str) -> NodeFactory:
    """Import ``module:attribute`` and return it as the node constructor."""
    module_name, sep, attribute = spec.partition(":")
    if not sep or not module_name or not attribute:
        raise BootstrapValidationError(f"node factory {spec!r} must look like 'module:attribute'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise BootstrapValidationError(f"import node factory module {module_name!r}: {exc}") from exc
    factory = getattr(module, attribute, None)
    if factory is None or not callable(factory):
        raise BootstrapValidationError(f"node factory {spec!r} is not callable")
    logger.debug("using node factory %s", spec)
    return factory


class IdleNode:
    """Stand-in runtime used when no node factory is configured.

    It keeps the process alive under the shutdown orchestrator so the
    bootstrap path can be exercised end to end.
    """

    def __init__(
        self,
        addr: str,
        public_key: bytes,
        signer: Signer,
        network_id: int,
        logger: logging.Logger,
        libp2p_key: KeyMaterial,
        pss_key: KeyMaterial,
        options: NodeOptions,
    ) -> None:
        self.addr = addr
        self.public_key = public_key
        self.signer = signer
        self.network_id = network_id
        self.options = options
        self._logger = logger
        self._logger.info(
            "no node runtime configured; idling on network %d (chain id %d, %d boot nodes)",
            network_id,
            options.chain_id,
            len(options.bootnodes),
        )

    async def shutdown(self, timeout: float) -> None:
        self._logger.debug("idle node stopped")


__all__ = ["IdleNode", "NodeOptions", "build_node_options", "load_node_factory"]
