"""Tests for method classification and dispatch."""

import asyncio

import pytest

from inpage_provider.bridge import HostBridge
from inpage_provider.error import ErrorCode, ProviderRpcError
from inpage_provider.ids import IdCorrelator
from inpage_provider.registry import PendingCallRegistry
from inpage_provider.router import (
    HOST_METHODS,
    MethodClass,
    MethodRouter,
    classify,
)
from inpage_provider.types import ProviderState, ResultShape, RpcRequest


class RecordingSink:
    def __init__(self) -> None:
        self.messages: list[dict] = []

    def post_message(self, message: dict) -> None:
        self.messages.append(message)


class FakeForwarder:
    """Upstream stand-in that answers from a table."""

    def __init__(self, results: dict | None = None, error: Exception | None = None):
        self.results = results or {}
        self.error = error
        self.calls: list[dict] = []

    async def call(self, payload: dict) -> dict:
        self.calls.append(payload)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return {
            "jsonrpc": "2.0",
            "id": payload["id"],
            "result": self.results.get(payload["method"]),
        }

    async def close(self) -> None:
        pass


class ErrorEnvelopeForwarder:
    """Upstream stand-in that reports failures inside the envelope."""

    def __init__(self, error: dict) -> None:
        self.error = error

    async def call(self, payload: dict) -> dict:
        return {"jsonrpc": "2.0", "id": payload["id"], "error": self.error}

    async def close(self) -> None:
        pass


class Harness:
    """A router wired to recording collaborators."""

    def __init__(self, address: str = "0xabc", forwarder=None) -> None:
        self.state = ProviderState(address=address, chain_id="0x1", network_version="1")
        self.correlator = IdCorrelator()
        self.registry = PendingCallRegistry(self.correlator)
        self.sink = RecordingSink()
        self.bridge = HostBridge(self.sink, self.registry, lambda: self.state.ready)
        self.router = MethodRouter(
            self.state, self.correlator, self.registry, self.bridge, forwarder
        )

    async def start(self, request: RpcRequest, shape=ResultShape.UNWRAPPED):
        """Dispatch in the background and wait for the host message."""
        task = asyncio.create_task(self.router.dispatch(request, shape))
        await asyncio.sleep(0)
        return task


class TestClassify:
    """Tests for the classification table."""

    @pytest.mark.parametrize(
        "method",
        [
            "eth_accounts",
            "cfx_accounts",
            "eth_coinbase",
            "cfx_coinbase",
            "net_version",
            "eth_chainId",
            "cfx_chainId",
        ],
    )
    def test_local(self, method: str) -> None:
        assert classify(method) is MethodClass.LOCAL

    @pytest.mark.parametrize(
        "method",
        [
            "eth_sign",
            "personal_sign",
            "personal_ecRecover",
            "eth_signTypedData_v4",
            "cfx_signTypedData_v3",
            "eth_sendTransaction",
            "eth_requestAccounts",
            "wallet_watchAsset",
            "wallet_addEthereumChain",
            "wallet_switchEthereumChain",
        ],
    )
    def test_host(self, method: str) -> None:
        assert classify(method) is MethodClass.HOST

    @pytest.mark.parametrize(
        "method",
        [
            "eth_newFilter",
            "eth_newBlockFilter",
            "eth_newPendingTransactionFilter",
            "eth_uninstallFilter",
            "eth_subscribe",
        ],
    )
    def test_unsupported(self, method: str) -> None:
        assert classify(method) is MethodClass.UNSUPPORTED

    def test_everything_else_is_upstream(self) -> None:
        assert classify("eth_blockNumber") is MethodClass.UPSTREAM
        assert classify("eth_getBalance") is MethodClass.UPSTREAM

    def test_case_sensitive(self) -> None:
        assert classify("ETH_ACCOUNTS") is MethodClass.UPSTREAM


class TestHostMessageBuilders:
    """Tests for the payloads handed to the host."""

    def build(self, method: str, params) -> tuple:
        return HOST_METHODS[method](RpcRequest(method=method, params=params))

    def test_personal_sign_hex(self) -> None:
        handler, params = self.build("personal_sign", ["0x48656c6c6f", "0xabc"])
        assert handler == "signPersonalMessage"
        assert params == {"raw": "0x48656c6c6f", "data": "0x48656c6c6f"}

    def test_personal_sign_text(self) -> None:
        handler, params = self.build("personal_sign", ["Hello", "0xabc"])
        assert handler == "signPersonalMessage"
        assert params == {"raw": "Hello", "data": "0x48656c6c6f"}

    def test_eth_sign_utf8(self) -> None:
        handler, params = self.build("eth_sign", ["0xabc", "0x48656c6c6f"])
        assert handler == "signPersonalMessage"
        assert params["data"] == "0x48656c6c6f"

    def test_eth_sign_odd_length_hex_drops_last_nibble(self) -> None:
        handler, params = self.build("eth_sign", ["0xabc", "0xabc"])
        assert handler == "signMessage"
        assert params == {"raw": "0xabc", "data": "0xab"}

    def test_eth_sign_text(self) -> None:
        handler, params = self.build("eth_sign", ["0xabc", "Hello"])
        assert handler == "signPersonalMessage"
        assert params["data"] == "0x48656c6c6f"

    def test_eth_sign_binary(self) -> None:
        handler, params = self.build("eth_sign", ["0xabc", "0xffff"])
        assert handler == "signMessage"
        assert params == {"raw": "0xffff", "data": "0xffff"}

    def test_ec_recover(self) -> None:
        handler, params = self.build("personal_ecRecover", ["0x48", "0xsig"])
        assert handler == "ecRecover"
        assert params == {"message": "0x48", "signature": "0xsig"}

    def test_typed_data_v4(self) -> None:
        typed = '{"primaryType": "Mail"}'
        handler, params = self.build("eth_signTypedData_v4", ["0xabc", typed])
        assert handler == "signTypedMessage"
        assert params == {
            "raw": typed,
            "data": {"primaryType": "Mail"},
            "version": "v4",
        }

    def test_typed_data_legacy_is_v3(self) -> None:
        _, params = self.build("eth_signTypedData", ["0xabc", "{}"])
        assert params["version"] == "v3"

    def test_typed_data_invalid_json(self) -> None:
        with pytest.raises(ProviderRpcError) as exc_info:
            self.build("eth_signTypedData_v4", ["0xabc", "{not json"])
        assert exc_info.value.code == ErrorCode.INVALID_PARAMS

    def test_send_transaction(self) -> None:
        tx = {"from": "0xabc", "to": "0xdef", "value": "0x1"}
        assert self.build("eth_sendTransaction", [tx]) == ("signTransaction", tx)

    def test_request_accounts(self) -> None:
        assert self.build("eth_requestAccounts", []) == ("requestAccounts", {})

    def test_watch_asset(self) -> None:
        handler, params = self.build(
            "wallet_watchAsset",
            {"type": "ERC20", "options": {"address": "0xt", "symbol": "TKN"}},
        )
        assert handler == "watchAsset"
        assert params == {
            "type": "ERC20",
            "contract": "0xt",
            "symbol": "TKN",
            "decimals": 0,
        }

    def test_watch_asset_missing_options(self) -> None:
        with pytest.raises(ProviderRpcError) as exc_info:
            self.build("wallet_watchAsset", {"type": "ERC20"})
        assert exc_info.value.code == ErrorCode.INVALID_PARAMS

    def test_switch_chain(self) -> None:
        assert self.build("wallet_switchEthereumChain", [{"chainId": "0x89"}]) == (
            "switchEthereumChain",
            {"chainId": "0x89"},
        )

    def test_missing_params(self) -> None:
        with pytest.raises(ProviderRpcError) as exc_info:
            self.build("eth_sendTransaction", [])
        assert exc_info.value.code == ErrorCode.INVALID_PARAMS


@pytest.mark.asyncio
class TestLocalDispatch:
    """Tests for methods answered from state."""

    async def test_accounts(self) -> None:
        harness = Harness(address="0xabc")
        request = RpcRequest(method="eth_accounts")

        result = await harness.router.dispatch(request, ResultShape.UNWRAPPED)

        assert result == ["0xabc"]
        assert len(harness.registry) == 0
        assert harness.sink.messages == []

    async def test_accounts_without_address(self) -> None:
        harness = Harness(address="")
        result = await harness.router.dispatch(
            RpcRequest(method="eth_accounts"), ResultShape.UNWRAPPED
        )
        assert result == []

    async def test_wrapped_restores_string_id(self) -> None:
        harness = Harness()
        request = RpcRequest(method="eth_chainId", id="chain")

        result = await harness.router.dispatch(request, ResultShape.WRAPPED)

        assert result == {"jsonrpc": "2.0", "id": "chain", "result": "0x1"}
        assert len(harness.correlator) == 0

    async def test_net_version(self) -> None:
        harness = Harness()
        result = await harness.router.dispatch(
            RpcRequest(method="net_version"), ResultShape.UNWRAPPED
        )
        assert result == "1"


@pytest.mark.asyncio
class TestHostDispatch:
    """Tests for methods delegated to the host."""

    async def test_delegated_round_trip(self) -> None:
        """A string id crosses the bridge as a number and comes back intact."""
        harness = Harness(address="0xabc")
        request = RpcRequest(
            method="personal_sign", params=["0x48656c6c6f", "0xabc"], id="abc"
        )

        task = await harness.start(request, ResultShape.WRAPPED)

        [message] = harness.sink.messages
        assert isinstance(message["id"], int)
        assert message["method"] == "signPersonalMessage"
        assert message["params"] == {"raw": "0x48656c6c6f", "data": "0x48656c6c6f"}

        harness.bridge.deliver_result(message["id"], "0xsig")

        assert await task == {"jsonrpc": "2.0", "id": "abc", "result": "0xsig"}
        assert len(harness.registry) == 0
        assert len(harness.correlator) == 0

    async def test_not_ready(self) -> None:
        harness = Harness(address="")
        request = RpcRequest(method="eth_sendTransaction", params=[{"to": "0x1"}])

        with pytest.raises(ProviderRpcError) as exc_info:
            await harness.router.dispatch(request, ResultShape.UNWRAPPED)

        assert exc_info.value.code == ErrorCode.NOT_READY
        assert harness.sink.messages == []
        assert len(harness.registry) == 0

    async def test_request_accounts_before_ready(self) -> None:
        harness = Harness(address="")
        task = await harness.start(RpcRequest(method="eth_requestAccounts"))

        [message] = harness.sink.messages
        harness.bridge.deliver_result(message["id"], ["0xabc"])

        assert await task == ["0xabc"]

    async def test_host_error(self) -> None:
        harness = Harness()
        task = await harness.start(
            RpcRequest(method="eth_sendTransaction", params=[{"to": "0x1"}])
        )

        harness.bridge.deliver_error(harness.sink.messages[0]["id"], "denied")

        with pytest.raises(ProviderRpcError) as exc_info:
            await task
        assert exc_info.value.message == "denied"

    async def test_invalid_params_frees_mapping(self) -> None:
        harness = Harness()
        request = RpcRequest(method="eth_sendTransaction", params=[], id="tx")

        with pytest.raises(ProviderRpcError):
            await harness.router.dispatch(request, ResultShape.UNWRAPPED)

        assert len(harness.correlator) == 0
        assert len(harness.registry) == 0

    async def test_concurrent_calls_resolve_out_of_order(self) -> None:
        harness = Harness()
        first = await harness.start(RpcRequest(method="personal_sign", params=["a"]))
        second = await harness.start(RpcRequest(method="personal_sign", params=["b"]))
        first_id, second_id = (m["id"] for m in harness.sink.messages)

        harness.bridge.deliver_result(second_id, "sig-b")
        harness.bridge.deliver_result(first_id, "sig-a")

        assert await first == "sig-a"
        assert await second == "sig-b"


@pytest.mark.asyncio
class TestUnsupportedDispatch:
    """Tests for filters and subscriptions."""

    async def test_rejected_without_registration(self) -> None:
        harness = Harness()
        request = RpcRequest(method="eth_newFilter", params=[{}], id="filter")

        with pytest.raises(ProviderRpcError) as exc_info:
            await harness.router.dispatch(request, ResultShape.UNWRAPPED)

        assert exc_info.value.code == ErrorCode.UNSUPPORTED_METHOD
        assert exc_info.value.code.rpc_code == 4200
        assert len(harness.registry) == 0
        assert len(harness.correlator) == 0
        assert harness.sink.messages == []


@pytest.mark.asyncio
class TestUpstreamDispatch:
    """Tests for forwarded methods."""

    async def test_unwrapped(self) -> None:
        forwarder = FakeForwarder({"eth_blockNumber": "0x10"})
        harness = Harness(forwarder=forwarder)

        result = await harness.router.dispatch(
            RpcRequest(method="eth_blockNumber"), ResultShape.UNWRAPPED
        )

        assert result == "0x10"
        assert forwarder.calls[0]["method"] == "eth_blockNumber"
        assert len(harness.registry) == 0

    async def test_wrapped_restores_string_id(self) -> None:
        forwarder = FakeForwarder({"eth_blockNumber": "0x10"})
        harness = Harness(forwarder=forwarder)

        result = await harness.router.dispatch(
            RpcRequest(method="eth_blockNumber", id="blk"), ResultShape.WRAPPED
        )

        assert result == {"jsonrpc": "2.0", "id": "blk", "result": "0x10"}
        assert isinstance(forwarder.calls[0]["id"], int)
        assert len(harness.correlator) == 0

    async def test_failure_relayed(self) -> None:
        error = ProviderRpcError.upstream_failure("node down")
        harness = Harness(forwarder=FakeForwarder(error=error))
        request = RpcRequest(method="eth_getBalance", params=["0xabc"], id="bal")

        with pytest.raises(ProviderRpcError) as exc_info:
            await harness.router.dispatch(request, ResultShape.UNWRAPPED)

        assert exc_info.value is error
        assert len(harness.correlator) == 0

    async def test_error_envelope_raises(self) -> None:
        remote = {"code": 3, "message": "reverted"}
        harness = Harness(forwarder=ErrorEnvelopeForwarder(remote))
        request = RpcRequest(method="eth_call", params=[{}], id="call")

        with pytest.raises(ProviderRpcError) as exc_info:
            await harness.router.dispatch(request, ResultShape.UNWRAPPED)

        assert exc_info.value.code == ErrorCode.UPSTREAM_FAILURE
        assert exc_info.value.message == "reverted"
        assert exc_info.value.to_dict() == remote
        assert len(harness.correlator) == 0

    async def test_in_flight_counts_pending_forwards(self) -> None:
        forwarder = FakeForwarder({"eth_blockNumber": "0x10"})
        harness = Harness(forwarder=forwarder)

        task = asyncio.create_task(
            harness.router.dispatch(RpcRequest(method="eth_blockNumber"))
        )
        await asyncio.sleep(0)
        assert harness.router.in_flight(forwarder) == 1

        await task
        assert harness.router.in_flight(forwarder) == 0

    async def test_no_forwarder(self) -> None:
        harness = Harness(forwarder=None)

        with pytest.raises(ProviderRpcError) as exc_info:
            await harness.router.dispatch(
                RpcRequest(method="eth_blockNumber"), ResultShape.UNWRAPPED
            )

        assert exc_info.value.code == ErrorCode.UPSTREAM_FAILURE
