import json
from unittest import mock

import pytest
import responses

from parevm.bytecode import LegacyCode
from parevm.rpc import (
    EMPTY_ROOT_HASH,
    RpcError,
    RpcStorage,
    SpecId,
    precompile_addresses,
)
from parevm.storage import AccountBasic, keccak256

URL = "http://localhost:8545"

ALICE = bytes([0xAA] * 20)
EMPTY = bytes([0xBB] * 20)
CONTRACT = bytes([0xCC] * 20)
CODE = bytes.fromhex("6080604052")
ECRECOVER = (1).to_bytes(20, "big")
BLOCK_HASH = bytes([0x11] * 32)
OTHER_ROOT = bytes([0x22] * 32)


class FakeNode:
    def __init__(self):
        self.accounts = {
            ALICE: {"balance": 1000, "nonce": 7, "code": b"", "storage": {5: 42}},
            CONTRACT: {"balance": 0, "nonce": 1, "code": CODE, "storage": {}},
        }
        self.calls = []
        self.error_methods = set()

    def _account(self, address_hex):
        address = bytes.fromhex(address_hex[2:])
        return self.accounts.get(
            address, {"balance": 0, "nonce": 0, "code": b"", "storage": {}}
        )

    def __call__(self, request):
        payload = json.loads(request.body)
        self.calls.append(payload)
        method, params = payload["method"], payload["params"]
        if method in self.error_methods:
            body = {"jsonrpc": "2.0", "id": payload["id"],
                    "error": {"code": -32000, "message": "boom"}}
            return 200, {}, json.dumps(body)
        if method == "eth_getTransactionCount":
            result = hex(self._account(params[0])["nonce"])
        elif method == "eth_getBalance":
            result = hex(self._account(params[0])["balance"])
        elif method == "eth_getCode":
            result = "0x" + self._account(params[0])["code"].hex()
        elif method == "eth_getStorageAt":
            value = self._account(params[0])["storage"].get(int(params[1], 16), 0)
            result = hex(value)
        elif method == "eth_getProof":
            storage = self._account(params[0])["storage"]
            root = OTHER_ROOT if storage else EMPTY_ROOT_HASH
            result = {"storageHash": "0x" + root.hex()}
        elif method == "eth_getBlockByNumber":
            result = {"hash": "0x" + BLOCK_HASH.hex()} if int(params[0], 16) < 100 else None
        else:
            result = None
        body = {"jsonrpc": "2.0", "id": payload["id"], "result": result}
        return 200, {}, json.dumps(body)

    def methods(self):
        return [call["method"] for call in self.calls]


@pytest.fixture
def node():
    fake = FakeNode()
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.add_callback(responses.POST, URL, callback=fake, content_type="application/json")
        yield fake


@pytest.fixture
def rpc(node):
    return RpcStorage(URL, SpecId.CANCUN, "latest")


def test_precompiles_grow_with_forks():
    homestead = precompile_addresses(SpecId.HOMESTEAD)
    cancun = precompile_addresses(SpecId.CANCUN)
    assert len(homestead) == 4
    assert homestead < cancun
    assert (0x0A).to_bytes(20, "big") in cancun
    assert (0x0B).to_bytes(20, "big") not in cancun
    assert precompile_addresses(SpecId.BERLIN) == precompile_addresses(SpecId.ISTANBUL)


def test_basic_existing_account_is_cached(rpc, node):
    assert rpc.basic(ALICE) == AccountBasic(balance=1000, nonce=7)
    calls = len(node.calls)
    assert rpc.basic(ALICE) == AccountBasic(balance=1000, nonce=7)
    assert len(node.calls) == calls
    cached = rpc.get_cache_accounts()[ALICE]
    assert cached.balance == 1000
    assert cached.code_hash is None


def test_basic_empty_account_is_none_and_not_cached(rpc):
    assert rpc.basic(EMPTY) is None
    assert EMPTY not in rpc.get_cache_accounts()
    assert rpc.code_hash(EMPTY) is None


def test_basic_empty_precompile_exists(rpc):
    assert rpc.basic(ECRECOVER) == AccountBasic(balance=0, nonce=0)
    assert ECRECOVER in rpc.get_cache_accounts()


def test_contract_code_is_cached_by_hash(rpc):
    code_hash = rpc.code_hash(CONTRACT)
    assert code_hash == keccak256(CODE)
    code = rpc.code_by_hash(code_hash)
    assert isinstance(code, LegacyCode)
    assert code.original_len == len(CODE)
    assert code.bytecode.startswith(CODE)
    assert rpc.get_cache_bytecodes() == {code_hash: code}


def test_storage_cached_for_existing_account(rpc, node):
    assert rpc.storage(ALICE, 5) == 42
    assert rpc.get_cache_accounts()[ALICE].storage == {5: 42}
    calls = len(node.calls)
    assert rpc.storage(ALICE, 5) == 42
    assert len(node.calls) == calls


def test_storage_not_cached_for_empty_account(rpc):
    assert rpc.storage(EMPTY, 5) == 0
    assert EMPTY not in rpc.get_cache_accounts()


def test_has_storage_compares_with_empty_root(rpc):
    assert rpc.has_storage(ALICE) is True
    assert rpc.has_storage(EMPTY) is False


def test_block_hash_is_cached(rpc, node):
    assert rpc.block_hash(10) == BLOCK_HASH
    assert rpc.get_cache_block_hashes() == {10: BLOCK_HASH}
    calls = len(node.calls)
    assert rpc.block_hash(10) == BLOCK_HASH
    assert len(node.calls) == calls


def test_missing_block_raises(rpc):
    with pytest.raises(RpcError):
        rpc.block_hash(500)


def test_numeric_block_id_is_sent_as_hex(node):
    storage = RpcStorage(URL, SpecId.CANCUN, 17)
    basic = storage.basic(ALICE)
    assert basic == AccountBasic(balance=1000, nonce=7)
    assert {call["params"][-1] for call in node.calls} == {hex(17)}


def test_cache_snapshot_is_a_copy(rpc):
    rpc.basic(ALICE)
    snapshot = rpc.get_cache_accounts()
    snapshot[ALICE].storage[1] = 2
    snapshot.pop(ALICE)
    assert rpc.get_cache_accounts()[ALICE].storage == {}


@mock.patch("time.sleep")
def test_rpc_error_is_retried_then_raised(sleep, rpc, node):
    node.error_methods.add("eth_getBalance")
    with pytest.raises(RpcError):
        rpc.basic(ALICE)
    assert node.methods().count("eth_getBalance") == 9
    assert sleep.call_count == 8
    assert ALICE not in rpc.get_cache_accounts()


@mock.patch("time.sleep")
def test_fetch_backs_off_exponentially(sleep, rpc):
    outcomes = [RpcError("busy"), RpcError("busy"), "done"]

    def request():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert rpc.fetch(request) == "done"
    delays = [call.args[0] for call in sleep.call_args_list]
    assert delays == [0.125, 0.25]


@mock.patch("time.sleep")
def test_fetch_does_not_retry_other_errors(sleep, rpc):
    def request():
        raise KeyError("nope")

    with pytest.raises(KeyError):
        rpc.fetch(request)
    assert sleep.call_count == 0


def test_invalid_block_id_rejected():
    with pytest.raises(ValueError):
        RpcStorage(URL, SpecId.CANCUN, b"\x00" * 3)