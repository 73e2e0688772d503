from __future__ import annotations

import json
import logging
import socket
import sys
import threading
from pathlib import Path

import pytest
from web3.exceptions import Web3Exception
from web3.providers import HTTPProvider, IPCProvider

from antnode import clef
from antnode.clef import (
    PUBLIC_KEY_RECOVERY_MESSAGE,
    RETRY_BACKOFF_S,
    ClefSigner,
    ExternalSigner,
    ProviderRpcClient,
    RpcError,
    default_ipc_path,
    dial,
    wait_for_clef,
)
from antnode.crypto import KeyMaterial, recover_public_key
from antnode.errors import AccountNotAvailableError, SignerConnectionError, SigningError
from antnode.protocols.signer import Signer
from tests.fakes import FakeExternalSigner, FakeRpcClient, FlakyConnect, RecordingSleep, make_key


class TestWaitForClef:
    def test_succeeds_on_nth_attempt_with_backoff(self, caplog: pytest.LogCaptureFixture) -> None:
        connect = FlakyConnect(result="signer", succeed_on=5)
        sleep = RecordingSleep()

        with caplog.at_level(logging.WARNING, logger="antnode.clef"):
            result = wait_for_clef("/tmp/clef.ipc", 5, connect=connect, sleep=sleep)

        assert result == "signer"
        assert connect.attempts == 5
        assert sleep.delays == [RETRY_BACKOFF_S] * 4
        assert caplog.text.count("failing to connect to clef signer") == 4

    def test_first_attempt_success_never_sleeps(self) -> None:
        sleep = RecordingSleep()

        wait_for_clef("/tmp/clef.ipc", 5, connect=FlakyConnect(result="signer", succeed_on=1), sleep=sleep)

        assert sleep.delays == []

    def test_exhausted_budget_raises_with_last_error(self) -> None:
        errors = iter([ConnectionRefusedError("first"), FileNotFoundError("last")])
        connect = FlakyConnect(result=None, error_factory=lambda: next(errors))

        with pytest.raises(SignerConnectionError, match="last") as excinfo:
            wait_for_clef("/tmp/clef.ipc", 2, connect=connect, sleep=RecordingSleep())

        assert connect.attempts == 2
        assert excinfo.value.endpoint == "/tmp/clef.ipc"
        assert excinfo.value.attempts == 2
        assert isinstance(excinfo.value.__cause__, FileNotFoundError)

    def test_rpc_and_provider_failures_are_retried(self) -> None:
        errors = iter([RpcError(-32000, "not ready"), Web3Exception("refused")])
        connect = FlakyConnect(result="signer", succeed_on=3, error_factory=lambda: next(errors))

        assert wait_for_clef("http://localhost:8550", 3, connect=connect, sleep=RecordingSleep()) == "signer"

    def test_programming_errors_are_not_retried(self) -> None:
        connect = FlakyConnect(result=None, error_factory=lambda: KeyError("bug"))

        with pytest.raises(KeyError):
            wait_for_clef("/tmp/clef.ipc", 5, connect=connect, sleep=RecordingSleep())

        assert connect.attempts == 1


class TestClefSigner:
    @pytest.fixture
    def key(self) -> KeyMaterial:
        return make_key("clef")

    @pytest.fixture
    def external(self, key: KeyMaterial) -> FakeExternalSigner:
        return FakeExternalSigner([key, make_key("spare")])

    @pytest.fixture
    def control(self, external: FakeExternalSigner) -> FakeRpcClient:
        return FakeRpcClient({"account_list": lambda: external.accounts})

    def test_defaults_to_first_account(
        self,
        key: KeyMaterial,
        external: FakeExternalSigner,
        control: FakeRpcClient,
    ) -> None:
        signer = ClefSigner(external, control)

        assert isinstance(signer, Signer)
        assert signer.account == "0x" + key.ethereum_address.hex()
        assert signer.ethereum_address() == key.ethereum_address

    def test_public_key_is_recovered_from_remote_signature(
        self,
        key: KeyMaterial,
        external: FakeExternalSigner,
        control: FakeRpcClient,
    ) -> None:
        signer = ClefSigner(external, control)

        assert signer.public_key() == key.public_key
        assert external.requests[-1] == (signer.account, "text/plain", PUBLIC_KEY_RECOVERY_MESSAGE)

    def test_sign_round_trips_to_clef(
        self,
        key: KeyMaterial,
        external: FakeExternalSigner,
        control: FakeRpcClient,
    ) -> None:
        signer = ClefSigner(external, control)

        signature = signer.sign(b"chunk address")

        assert recover_public_key(signature, b"chunk address") == key.public_key

    def test_no_accounts_is_connection_error(self, external: FakeExternalSigner) -> None:
        with pytest.raises(SignerConnectionError, match="no accounts"):
            ClefSigner(external, FakeRpcClient({"account_list": []}))

    def test_missing_pinned_account(self, external: FakeExternalSigner, control: FakeRpcClient) -> None:
        with pytest.raises(AccountNotAvailableError):
            ClefSigner(external, control, "0x" + "ab" * 20)

    def test_account_list_failure_is_connection_error(self, external: FakeExternalSigner) -> None:
        control = FakeRpcClient({"account_list": BrokenPipeError("gone")})

        with pytest.raises(SignerConnectionError, match="gone"):
            ClefSigner(external, control)

    def test_sign_rejection_is_signing_error(self, external: FakeExternalSigner, control: FakeRpcClient) -> None:
        signer = ClefSigner(external, control)
        external.sign_error = RpcError(-32000, "Request denied")

        with pytest.raises(SigningError, match="Request denied"):
            signer.sign(b"payload")

    def test_sign_transport_failure_is_connection_error(
        self,
        external: FakeExternalSigner,
        control: FakeRpcClient,
    ) -> None:
        signer = ClefSigner(external, control)
        external.sign_error = ConnectionResetError("reset")

        with pytest.raises(SignerConnectionError):
            signer.sign(b"payload")

    def test_remote_errors_on_queries_become_connection_errors(
        self,
        external: FakeExternalSigner,
        control: FakeRpcClient,
    ) -> None:
        signer = ClefSigner(external, control)
        external.sign_error = RpcError(-32000, "Request denied")

        with pytest.raises(SignerConnectionError):
            signer.public_key()

        control.handlers["account_list"] = []
        with pytest.raises(SignerConnectionError, match="no longer available"):
            signer.ethereum_address()


class StubProvider:
    """Answers ``make_request`` from a queue of canned JSON-RPC envelopes."""

    def __init__(self, *responses: dict[str, object]) -> None:
        self.responses = list(responses)
        self.requests: list[tuple[str, list[object]]] = []

    def make_request(self, method: str, params: list[object]) -> dict[str, object]:
        self.requests.append((method, params))
        return self.responses.pop(0)


class TestProviderRpcClient:
    def test_returns_result(self) -> None:
        provider = StubProvider({"jsonrpc": "2.0", "id": 1, "result": "6.1.0"})
        client = ProviderRpcClient(provider)

        assert client.call("account_signData", "text/plain", "0xab", "0x00") == "6.1.0"
        assert provider.requests == [("account_signData", ["text/plain", "0xab", "0x00"])]

    def test_error_object_raises_rpc_error(self) -> None:
        client = ProviderRpcClient(
            StubProvider({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "Request denied"}}),
        )

        with pytest.raises(RpcError) as excinfo:
            client.call("account_signData", "text/plain", "0x00", "0x")

        assert excinfo.value.code == -32000
        assert excinfo.value.message == "Request denied"

    def test_envelope_without_result_is_rejected(self) -> None:
        client = ProviderRpcClient(StubProvider({"jsonrpc": "2.0", "id": 1}))

        with pytest.raises(ValueError, match="neither result nor error"):
            client.call("account_list")

    def test_closed_client_refuses_calls(self) -> None:
        client = ProviderRpcClient(StubProvider())
        client.close()

        with pytest.raises(ConnectionError):
            client.call("account_list")


class TestDial:
    def test_http_endpoint_uses_http_provider(self) -> None:
        client = dial("https://clef.example:8550")

        assert isinstance(client.provider, HTTPProvider)
        assert client.provider.endpoint_uri == "https://clef.example:8550"

    def test_ipc_path_uses_ipc_provider(self, tmp_path: Path) -> None:
        client = dial(str(tmp_path / "clef.ipc"))

        assert isinstance(client.provider, IPCProvider)

    def test_windows_pipe_path_does_not_connect_eagerly(self) -> None:
        client = dial(r"\\.\pipe\clef.ipc")

        assert isinstance(client.provider, IPCProvider)

    def test_missing_ipc_endpoint_is_retried_then_reported(self, tmp_path: Path) -> None:
        endpoint = str(tmp_path / "absent.ipc")
        sleep = RecordingSleep()

        with pytest.raises(SignerConnectionError) as excinfo:
            wait_for_clef(endpoint, 2, sleep=sleep)

        assert excinfo.value.attempts == 2
        assert sleep.delays == [RETRY_BACKOFF_S]
        assert isinstance(excinfo.value.__cause__, OSError)


def test_external_signer_connect_closes_client_on_handshake_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    client = FakeRpcClient({"account_version": RpcError(-32601, "method not found")})
    monkeypatch.setattr(clef, "dial", lambda endpoint: client)

    with pytest.raises(RpcError):
        ExternalSigner.connect("/tmp/clef.ipc")

    assert client.closed is True


def test_external_signer_connect_reads_version(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(clef, "dial", lambda endpoint: FakeRpcClient({"account_version": "6.1.0"}))

    assert ExternalSigner.connect("/tmp/clef.ipc").version == "6.1.0"


@pytest.mark.parametrize(
    ("system", "suffix"),
    [("Linux", ".clef/clef.ipc"), ("Darwin", "Library/Signer/clef.ipc")],
)
def test_default_ipc_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, system: str, suffix: str) -> None:
    monkeypatch.setattr("antnode.clef.platform.system", lambda: system)
    monkeypatch.setattr("antnode.clef.Path.home", lambda: tmp_path)

    assert default_ipc_path() == str(tmp_path / suffix)


def test_default_ipc_path_windows(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("antnode.clef.platform.system", lambda: "Windows")

    assert default_ipc_path() == r"\\.\pipe\clef.ipc"


@pytest.mark.skipif(sys.platform == "win32", reason="unix domain sockets")
def test_ipc_round_trip(tmp_path: Path) -> None:
    path = str(tmp_path / "clef.ipc")
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(path)
    server.listen(1)

    def serve() -> None:
        conn, _ = server.accept()
        with conn:
            request = json.loads(conn.recv(65536))
            response = json.dumps({"jsonrpc": "2.0", "id": request["id"], "result": ["0x" + "11" * 20]})
            # Split the reply to exercise reassembly.
            conn.sendall(response[:10].encode())
            conn.sendall(response[10:].encode())

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    client = dial(path, timeout=5.0)
    try:
        assert client.call("account_list") == ["0x" + "11" * 20]
    finally:
        client.close()
        thread.join(timeout=5.0)
        server.close()
