"""Remote signing through a clef endpoint.

Clef speaks JSON-RPC over HTTP or over a local IPC endpoint (a Unix socket, or
a named pipe on Windows), reached through web3 providers. Two connections are
opened to the same endpoint: the *external signer* (version handshake and
``account_signData``) and a *control* channel used for account selection.
Public key and address queries always round-trip to clef; nothing about the
account is computed from local state.
"""

from __future__ import annotations

import logging
import platform
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, TypeAlias, cast

from web3 import Web3
from web3.exceptions import Web3Exception
from web3.providers import BaseProvider
from web3.types import RPCEndpoint

from antnode.crypto import recover_public_key
from antnode.errors import AccountNotAvailableError, CryptoError, SignerConnectionError, SigningError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
RETRY_BACKOFF_S = 5.0
DEFAULT_RPC_TIMEOUT_S = 30.0

MIMETYPE_TEXT_PLAIN = "text/plain"
# Signed once per public key query; the signature is only used for recovery.
PUBLIC_KEY_RECOVERY_MESSAGE = b"public key recovery message"


class RpcError(Exception):
    """Clef answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"rpc error {code}: {message}")
        self.code = code
        self.message = message


class RpcClient(Protocol):
    def call(self, method: str, *params: object) -> Any: ...

    def close(self) -> None: ...


class ProviderRpcClient:
    """JSON-RPC calls through a web3 provider.

    The provider owns request ids, framing and the connection itself (HTTP
    session, Unix socket or Windows named pipe); this class only turns the
    response envelope into a result or an :class:`RpcError`.
    """

    def __init__(self, provider: BaseProvider) -> None:
        self.provider = provider
        self._closed = False

    def call(self, method: str, *params: object) -> Any:
        if self._closed:
            raise ConnectionError("clef rpc client is closed")
        response = self.provider.make_request(cast(RPCEndpoint, method), list(params))
        error = response.get("error")
        if error is not None:
            if isinstance(error, dict):
                raise RpcError(int(error.get("code", 0)), str(error.get("message", "")))
            raise RpcError(0, str(error))
        if "result" not in response:
            raise ValueError(f"clef response to {method} carries neither result nor error")
        return response["result"]

    def close(self) -> None:
        # Sockets and sessions are held by the provider and released with it.
        self._closed = True


def dial(endpoint: str, *, timeout: float = DEFAULT_RPC_TIMEOUT_S) -> ProviderRpcClient:
    """Open a JSON-RPC client for an ``http(s)://`` URL or an IPC path.

    Nothing is sent until the first call; connection failures surface there.
    """
    provider: BaseProvider
    if endpoint.startswith(("http://", "https://")):
        provider = Web3.HTTPProvider(endpoint, request_kwargs={"timeout": timeout})
    else:
        provider = Web3.IPCProvider(endpoint, timeout=timeout)
    return ProviderRpcClient(provider)


def default_ipc_path() -> str:
    """Location where clef listens by default on this platform."""
    system = platform.system()
    if system == "Windows":
        return r"\\.\pipe\clef.ipc"
    home = Path.home()
    if system == "Darwin":
        return str(home / "Library" / "Signer" / "clef.ipc")
    return str(home / ".clef" / "clef.ipc")


class ExternalSigner:
    """Signing connection to clef, established with a version handshake."""

    def __init__(self, client: RpcClient, version: str) -> None:
        self._client = client
        self.version = version

    @classmethod
    def connect(cls, endpoint: str) -> ExternalSigner:
        client = dial(endpoint)
        try:
            version = client.call("account_version")
        except Exception:
            client.close()
            raise
        return cls(client, str(version))

    def sign_data(self, account: str, mimetype: str, data: bytes) -> bytes:
        result = self._client.call("account_signData", mimetype, account, "0x" + data.hex())
        return _decode_hex(result)

    def close(self) -> None:
        self._client.close()


ConnectFunc: TypeAlias = Callable[[str], ExternalSigner]
SleepFunc: TypeAlias = Callable[[float], None]

# Failures that mean "clef is not there yet" rather than a bug in the caller.
_CONNECT_ERRORS: tuple[type[Exception], ...] = (OSError, Web3Exception, RpcError, ValueError)


def wait_for_clef(
    endpoint: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    *,
    connect: ConnectFunc = ExternalSigner.connect,
    sleep: SleepFunc = time.sleep,
) -> ExternalSigner:
    """Connect to clef, making at most ``max_retries`` attempts.

    Attempts are separated by a fixed ``RETRY_BACKOFF_S`` sleep. When the
    budget is spent the last connection error is chained to the raised
    :class:`SignerConnectionError`.
    """
    remaining = max(max_retries, 1)
    attempts = 0
    last_error: Exception | None = None
    while remaining > 0:
        attempts += 1
        try:
            return connect(endpoint)
        except _CONNECT_ERRORS as exc:
            last_error = exc
        remaining -= 1
        if remaining == 0:
            break
        logger.warning("failing to connect to clef signer: %s", last_error)
        sleep(RETRY_BACKOFF_S)

    raise SignerConnectionError(
        f"connect to clef signer at {endpoint}: {last_error}",
        endpoint=endpoint,
        attempts=attempts,
    ) from last_error


def _decode_hex(value: object) -> bytes:
    if not isinstance(value, str):
        raise ValueError(f"expected hex string, got {type(value).__name__}")
    return bytes.fromhex(value.removeprefix("0x"))


def _normalize_address(address: str | bytes) -> str:
    if isinstance(address, bytes):
        return address.hex()
    return address.lower().removeprefix("0x")


class ClefSigner:
    """Signer backed by an account held in clef."""

    def __init__(
        self,
        external: ExternalSigner,
        control: RpcClient,
        ethereum_address: str | bytes | None = None,
    ) -> None:
        self._external = external
        self._control = control
        accounts = self._list_accounts()
        if ethereum_address is not None:
            wanted = _normalize_address(ethereum_address)
            if wanted not in accounts:
                raise AccountNotAvailableError(f"account 0x{wanted} is not available in clef")
            self._account = wanted
        else:
            if not accounts:
                raise SignerConnectionError("clef has no accounts")
            self._account = accounts[0]

    @property
    def account(self) -> str:
        return "0x" + self._account

    def _list_accounts(self) -> list[str]:
        try:
            raw = self._control.call("account_list")
        except _CONNECT_ERRORS as exc:
            raise SignerConnectionError(f"list clef accounts: {exc}") from exc
        if not isinstance(raw, list):
            raise SignerConnectionError("list clef accounts: unexpected response")
        return [_normalize_address(str(address)) for address in raw]

    def _sign(self, payload: bytes) -> bytes:
        try:
            return self._external.sign_data(self.account, MIMETYPE_TEXT_PLAIN, payload)
        except RpcError as exc:
            raise SigningError(f"clef refused to sign: {exc.message}") from exc
        except (OSError, Web3Exception, ValueError) as exc:
            raise SignerConnectionError(f"clef sign request: {exc}") from exc

    def public_key(self) -> bytes:
        try:
            signature = self._sign(PUBLIC_KEY_RECOVERY_MESSAGE)
        except SigningError as exc:
            raise SignerConnectionError(f"recover clef public key: {exc}") from exc
        try:
            return recover_public_key(signature, PUBLIC_KEY_RECOVERY_MESSAGE)
        except CryptoError as exc:
            raise SignerConnectionError(f"recover clef public key: {exc}") from exc

    def ethereum_address(self) -> bytes:
        if self._account not in self._list_accounts():
            raise SignerConnectionError(f"account {self.account} is no longer available in clef")
        return bytes.fromhex(self._account)

    def sign(self, payload: bytes) -> bytes:
        return self._sign(payload)


__all__ = [
    "ClefSigner",
    "DEFAULT_MAX_RETRIES",
    "ExternalSigner",
    "ProviderRpcClient",
    "PUBLIC_KEY_RECOVERY_MESSAGE",
    "RETRY_BACKOFF_S",
    "RpcError",
    "default_ipc_path",
    "dial",
    "wait_for_clef",
]
