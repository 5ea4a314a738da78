"""A storage that fetches chain state over JSON-RPC and caches what it reads."""

from __future__ import annotations

import copy
import enum
import itertools
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

import requests

from parevm.bytecode import (
    EIP7702_MAGIC_BYTES,
    Bytecode,
    Eip7702Bytecode,
    Eof,
    EofBytecode,
    EvmCode,
    LegacyRawBytecode,
    evm_code_from_bytecode,
)
from parevm.storage import (
    AccountBasic,
    BlockHashes,
    Bytecodes,
    ChainState,
    EvmAccount,
    Storage,
    keccak256,
)

T = TypeVar("T")

_RETRY_LIMIT = 8
_INITIAL_DELAY_SECONDS = 0.125
_REQUEST_TIMEOUT_SECONDS = 30.0
_EOF_MAGIC_BYTES = b"\xef\x00"

EMPTY_ROOT_HASH = bytes.fromhex(
    "56e81f171bcc55a6ff8345e692c0f86e5b48e01b996cadc001622fb5e363b421"
)


class SpecId(enum.IntEnum):
    """Ethereum hard forks, in activation order."""

    FRONTIER = 0
    FRONTIER_THAWING = 1
    HOMESTEAD = 2
    DAO_FORK = 3
    TANGERINE = 4
    SPURIOUS_DRAGON = 5
    BYZANTIUM = 6
    CONSTANTINOPLE = 7
    PETERSBURG = 8
    ISTANBUL = 9
    MUIR_GLACIER = 10
    BERLIN = 11
    LONDON = 12
    ARROW_GLACIER = 13
    GRAY_GLACIER = 14
    MERGE = 15
    SHANGHAI = 16
    CANCUN = 17
    PRAGUE = 18


def _precompile_count(spec_id: SpecId) -> int:
    if spec_id >= SpecId.PRAGUE:
        return 0x11
    if spec_id >= SpecId.CANCUN:
        return 0x0A
    if spec_id >= SpecId.ISTANBUL:
        return 0x09
    if spec_id >= SpecId.BYZANTIUM:
        return 0x08
    return 0x04


def precompile_addresses(spec_id: SpecId) -> frozenset[bytes]:
    """Return the addresses of the precompiled contracts active in a fork."""
    count = _precompile_count(SpecId(spec_id))
    return frozenset(number.to_bytes(20, "big") for number in range(1, count + 1))


class RpcError(Exception):
    """Raised when a JSON-RPC request fails or returns an error."""


def _block_param(block_id: int | str | bytes) -> Any:
    if isinstance(block_id, bool):
        raise TypeError("block id must be a number, a tag or a block hash")
    if isinstance(block_id, int):
        if block_id < 0:
            raise ValueError("block number must not be negative")
        return hex(block_id)
    if isinstance(block_id, (bytes, bytearray)):
        if len(block_id) != 32:
            raise ValueError("block hash must be 32 bytes")
        return {"blockHash": "0x" + bytes(block_id).hex()}
    if isinstance(block_id, str):
        return block_id
    raise TypeError("block id must be a number, a tag or a block hash")


def _hex_bytes(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def _parse_quantity(value: Any) -> int:
    if not isinstance(value, str):
        raise RpcError(f"expected a hex quantity, got {value!r}")
    try:
        return int(value, 16)
    except ValueError as err:
        raise RpcError(f"invalid hex quantity {value!r}") from err


def _parse_data(value: Any) -> bytes:
    if not isinstance(value, str):
        raise RpcError(f"expected hex data, got {value!r}")
    digits = value[2:] if value.startswith(("0x", "0X")) else value
    try:
        return bytes.fromhex(digits)
    except ValueError as err:
        raise RpcError(f"invalid hex data {value!r}") from err


def _bytecode_from_raw(code: bytes) -> Bytecode:
    if code.startswith(EIP7702_MAGIC_BYTES):
        return Eip7702Bytecode.from_raw(code)
    if code.startswith(_EOF_MAGIC_BYTES):
        return EofBytecode(Eof.decode(code))
    return LegacyRawBytecode(code)


class RpcStorage(Storage):
    """Reads state at one block from a JSON-RPC node, caching every result."""

    def __init__(
        self,
        url: str,
        spec_id: SpecId,
        block_id: int | str | bytes = "latest",
        session: requests.Session | None = None,
    ) -> None:
        self._url = url
        self._session = session if session is not None else requests.Session()
        self._block = _block_param(block_id)
        self._precompiles = precompile_addresses(spec_id)
        self._request_ids = itertools.count(1)
        self._lock = threading.Lock()
        # Kept so a block's pre-state can be rebuilt as an in-memory storage.
        self._accounts: ChainState = {}
        self._bytecodes: Bytecodes = {}
        self._block_hashes: BlockHashes = {}

    def _call(self, method: str, *params: Any) -> Any:
        with self._lock:
            request_id = next(self._request_ids)
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": list(params)}
        try:
            response = self._session.post(
                self._url, json=payload, timeout=_REQUEST_TIMEOUT_SECONDS
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as err:
            raise RpcError(f"{method}: {err}") from err
        if not isinstance(body, dict):
            raise RpcError(f"{method}: malformed response")
        error = body.get("error")
        if error is not None:
            raise RpcError(f"{method}: {error}")
        return body.get("result")

    def fetch(self, request: Callable[[], T]) -> T:
        """Run a request, retrying failures with exponential backoff."""
        lives = _RETRY_LIMIT
        delay = _INITIAL_DELAY_SECONDS
        while True:
            try:
                return request()
            except RpcError:
                if lives == 0:
                    raise
                time.sleep(delay)
                lives -= 1
                delay *= 2

    def _get(self, method: str, *params: Any) -> Any:
        return self.fetch(lambda: self._call(method, *params))

    def get_cache_accounts(self) -> ChainState:
        """Return a snapshot of the cached accounts."""
        with self._lock:
            return copy.deepcopy(self._accounts)

    def get_cache_bytecodes(self) -> Bytecodes:
        """Return a snapshot of the cached bytecodes."""
        with self._lock:
            return dict(self._bytecodes)

    def get_cache_block_hashes(self) -> BlockHashes:
        """Return a snapshot of the cached block hashes."""
        with self._lock:
            return dict(self._block_hashes)

    def basic(self, address: bytes) -> AccountBasic | None:
        address = bytes(address)
        with self._lock:
            account = self._accounts.get(address)
            if account is not None:
                return AccountBasic(balance=account.balance, nonce=account.nonce)

        address_hex = _hex_bytes(address)
        nonce = _parse_quantity(self._get("eth_getTransactionCount", address_hex, self._block))
        balance = _parse_quantity(self._get("eth_getBalance", address_hex, self._block))
        code = _parse_data(self._get("eth_getCode", address_hex, self._block))

        # New non-precompile accounts must stay distinguishable: creating
        # accounts costs extra gas in early forks.
        if address not in self._precompiles and balance == 0 and nonce == 0 and not code:
            return None

        code_hash = None
        evm_code: EvmCode | None = None
        if code:
            code_hash = keccak256(code)
            evm_code = evm_code_from_bytecode(_bytecode_from_raw(code))
        with self._lock:
            if code_hash is not None and evm_code is not None:
                self._bytecodes[code_hash] = evm_code
            self._accounts[address] = EvmAccount(
                balance=balance, nonce=nonce, code_hash=code_hash, code=None, storage={}
            )
        return AccountBasic(balance=balance, nonce=nonce)

    def code_hash(self, address: bytes) -> bytes | None:
        address = bytes(address)
        self.basic(address)
        with self._lock:
            account = self._accounts.get(address)
            return None if account is None else account.code_hash

    def code_by_hash(self, code_hash: bytes) -> EvmCode | None:
        with self._lock:
            return self._bytecodes.get(bytes(code_hash))

    def has_storage(self, address: bytes) -> bool:
        proof = self._get("eth_getProof", _hex_bytes(address), [], self._block)
        if not isinstance(proof, dict) or "storageHash" not in proof:
            raise RpcError("eth_getProof: malformed proof")
        return _parse_data(proof["storageHash"]) != EMPTY_ROOT_HASH

    def storage(self, address: bytes, index: int) -> int:
        address = bytes(address)
        with self._lock:
            account = self._accounts.get(address)
            if account is not None and index in account.storage:
                return account.storage[index]

        value = _parse_quantity(
            self._get("eth_getStorageAt", _hex_bytes(address), hex(index), self._block)
        )
        # Only cache for accounts that exist in the pre-state; caching a
        # default zero would make an empty account look non-empty (EIP-7610).
        self.basic(address)
        with self._lock:
            account = self._accounts.get(address)
            if account is not None:
                account.storage[index] = value
        return value

    def block_hash(self, number: int) -> bytes:
        with self._lock:
            cached = self._block_hashes.get(number)
        if cached is not None:
            return cached

        block = self._get("eth_getBlockByNumber", hex(number), False)
        if not isinstance(block, dict) or "hash" not in block:
            raise RpcError(f"block {number} not found")
        block_hash = _parse_data(block["hash"])
        with self._lock:
            self._block_hashes[number] = block_hash
        return block_hash