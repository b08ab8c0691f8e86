import json

import pytest
import requests

from paycadence.config import RPCConfig
from paycadence.rpc_client import EthereumRPCClient, RPCError, RPCTransportError, format_rpc_hint


class StubResponse:
    def __init__(self, payload=None, status_code: int = 200, text: str | None = None) -> None:
        self.payload = payload
        self.status_code = status_code
        self.ok = status_code < 400
        self.url = "http://node.test"
        self.text = text if text is not None else json.dumps(payload)

    def raise_for_status(self) -> None:
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self.payload is None:
            raise ValueError("no JSON")
        return self.payload


class StubSession:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, data=None, headers=None, auth=None, timeout=None):
        self.requests.append({"url": url, "body": json.loads(data), "auth": auth, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _client(session: StubSession, **config) -> EthereumRPCClient:
    client = EthereumRPCClient(RPCConfig(endpoint="http://node.test", **config))
    client._session = session
    return client


def test_call_returns_result_and_bounds_timeout() -> None:
    session = StubSession(StubResponse({"jsonrpc": "2.0", "id": "1", "result": "0x1"}))
    client = _client(session, timeout_seconds=7.5, user="u", password="p")

    assert client.chain_id() == 1
    sent = session.requests[0]
    assert sent["body"]["method"] == "eth_chainId"
    assert sent["timeout"] == 7.5
    assert sent["auth"] == ("u", "p")


def test_error_object_raises_rpc_error() -> None:
    payload = {"jsonrpc": "2.0", "id": "1", "error": {"code": -32000, "message": "nonce too low"}}
    client = _client(StubSession(StubResponse(payload)))

    with pytest.raises(RPCError) as excinfo:
        client.send_raw_transaction("0x00")

    assert excinfo.value.code == -32000
    assert excinfo.value.message == "nonce too low"


def test_timeout_is_flagged() -> None:
    client = _client(StubSession(error=requests.Timeout("slow")))

    with pytest.raises(RPCTransportError) as excinfo:
        client.block_number()

    assert excinfo.value.timed_out is True


def test_connection_failure_is_transport_error() -> None:
    client = _client(StubSession(error=requests.ConnectionError("refused")))

    with pytest.raises(RPCTransportError) as excinfo:
        client.block_number()

    assert excinfo.value.timed_out is False


def test_unauthorized_and_malformed_responses() -> None:
    unauthorized = _client(StubSession(StubResponse(None, status_code=401, text="denied")))
    with pytest.raises(RPCTransportError) as excinfo:
        unauthorized.gas_price()
    assert excinfo.value.status_code == 401

    malformed = _client(StubSession(StubResponse(None, text="<html>")))
    with pytest.raises(RPCTransportError):
        malformed.gas_price()


def test_hints_for_common_node_errors() -> None:
    assert "reconciles" in format_rpc_hint(RPCError(-32000, "already known"))
    assert "nonce" in format_rpc_hint({"code": -32000, "message": "nonce too low"})
    assert "Fund the account" in format_rpc_hint(RPCError(-32000, "insufficient funds for gas * price + value"))
    assert "personal namespace" in format_rpc_hint(RPCError(-32601, "the method does not exist"))
    assert format_rpc_hint(RPCError(-1, "something else")) is None
    assert format_rpc_hint(None) is None
