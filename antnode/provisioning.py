"""Key and signer provisioning for a node start.

Everything here runs once, sequentially, before the node is constructed.
Any exception aborts the start; nothing is retried except the initial clef
connection inside :func:`antnode.clef.wait_for_clef`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from antnode.clef import ClefSigner, ConnectFunc, ExternalSigner, SleepFunc, default_ipc_path, dial, wait_for_clef
from antnode.config import NodeSettings
from antnode.crypto import DefaultSigner, KeyMaterial
from antnode.errors import BootstrapError, CryptoError
from antnode.keystore import open_keystore
from antnode.password import PromptFunc, prompt_hidden, resolve_password
from antnode.protocols.keystore import KeyStore
from antnode.protocols.signer import Signer

logger = logging.getLogger(__name__)

ACCOUNT_KEY_NAME = "sana"
IDENTITY_KEY_NAME = "libp2p"
MESSAGING_KEY_NAME = "pss"

CLEF_DISABLED_WARNING = "clef is not enabled; portability and security of your keys is sub optimal"


@dataclass(frozen=True, slots=True)
class NodeKeys:
    account: KeyMaterial | None
    libp2p: KeyMaterial
    pss: KeyMaterial


@dataclass(frozen=True, slots=True)
class SignerConfig:
    signer: Signer
    public_key: bytes
    libp2p_key: KeyMaterial
    pss_key: KeyMaterial


def _load_key(keystore: KeyStore, name: str, password: str) -> KeyMaterial:
    key, created = keystore.load_or_create(name, password)
    if created:
        logger.debug("new %s key created", name)
    else:
        logger.debug("using existing %s key", name)
    return key


def provision_keys(keystore: KeyStore, password: str, *, include_account: bool = True) -> NodeKeys:
    """Load or create the account, network identity and messaging keys, in that order.

    The first failing key stops the rest from being touched.
    """
    account = _load_key(keystore, ACCOUNT_KEY_NAME, password) if include_account else None
    libp2p = _load_key(keystore, IDENTITY_KEY_NAME, password)
    pss = _load_key(keystore, MESSAGING_KEY_NAME, password)
    return NodeKeys(account=account, libp2p=libp2p, pss=pss)


def _connect_clef(settings: NodeSettings, connect: ConnectFunc, sleep: SleepFunc) -> ClefSigner:
    endpoint = settings.clef.endpoint or default_ipc_path()
    external: ExternalSigner = wait_for_clef(
        endpoint,
        settings.clef.max_retries,
        connect=connect,
        sleep=sleep,
    )
    control = dial(endpoint)

    wanted = settings.clef.ethereum_address or None
    try:
        return ClefSigner(external, control, wanted)
    except BootstrapError:
        control.close()
        external.close()
        raise


def configure_signer(
    settings: NodeSettings,
    *,
    keystore: KeyStore | None = None,
    prompt: PromptFunc = prompt_hidden,
    connect: ConnectFunc = ExternalSigner.connect,
    sleep: SleepFunc = time.sleep,
) -> SignerConfig:
    """Provision keys and the signer that the node will run with.

    With clef enabled the account key stays in clef and only the network
    identity and messaging keys are kept locally. The ethereum address query
    at the end must succeed for the signer to be accepted.
    """
    if keystore is None:
        keystore = open_keystore(settings.data_dir)

    password = resolve_password(
        keystore,
        password=settings.password,
        password_file=settings.password_file,
        prompt=prompt,
    )

    signer: Signer
    if settings.clef.enable:
        keys = provision_keys(keystore, password, include_account=False)
        signer = _connect_clef(settings, connect, sleep)
        public_key = signer.public_key()
    else:
        logger.warning(CLEF_DISABLED_WARNING)
        keys = provision_keys(keystore, password)
        if keys.account is None:
            raise CryptoError(f"{ACCOUNT_KEY_NAME} key was not provisioned")
        signer = DefaultSigner(keys.account)
        public_key = keys.account.public_key

    address = signer.ethereum_address()
    # Packaging scripts parse these three lines.
    logger.info("sana public key %s", public_key.hex())
    logger.info("pss public key %s", keys.pss.public_key.hex())
    logger.info("using ethereum address %s", address.hex())

    return SignerConfig(
        signer=signer,
        public_key=public_key,
        libp2p_key=keys.libp2p,
        pss_key=keys.pss,
    )


__all__ = [
    "ACCOUNT_KEY_NAME",
    "CLEF_DISABLED_WARNING",
    "IDENTITY_KEY_NAME",
    "MESSAGING_KEY_NAME",
    "NodeKeys",
    "SignerConfig",
    "configure_signer",
    "provision_keys",
]
