"""The storage interface that provides chain state for execution."""

from __future__ import annotations

import abc
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from Crypto.Hash import keccak

from parevm.bytecode import (
    Bytecode,
    BytecodeConversionError,
    EvmCode,
    LegacyAnalyzedBytecode,
    bytecode_from_evm_code,
)

_T = TypeVar("_T")


def keccak256(data: bytes) -> bytes:
    """Return the Keccak-256 digest of data."""
    return keccak.new(digest_bits=256, data=bytes(data)).digest()


KECCAK_EMPTY = keccak256(b"")


@dataclass
class AccountBasic:
    """Balance and nonce of an account."""

    balance: int = 0
    nonce: int = 0


@dataclass
class EvmAccount:
    """An EVM account with optional code and its storage."""

    balance: int = 0
    nonce: int = 0
    code_hash: bytes | None = None
    code: EvmCode | None = None
    storage: dict[int, int] = field(default_factory=dict)


@dataclass
class AccountInfo:
    """Account information as the executor consumes it."""

    balance: int
    nonce: int
    code_hash: bytes
    code: Bytecode | None = None


ChainState = dict[bytes, EvmAccount]
Bytecodes = dict[bytes, EvmCode]
BlockHashes = dict[int, bytes]


class Storage(abc.ABC):
    """Source of chain state; implementations raise on lookup failure."""

    @abc.abstractmethod
    def basic(self, address: bytes) -> AccountBasic | None:
        """Return basic account information, or None for a missing account."""

    @abc.abstractmethod
    def code_hash(self, address: bytes) -> bytes | None:
        """Return the code hash of an account, if it has code."""

    @abc.abstractmethod
    def code_by_hash(self, code_hash: bytes) -> EvmCode | None:
        """Return account code by its hash."""

    @abc.abstractmethod
    def has_storage(self, address: bytes) -> bool:
        """Return whether the account already has storage (EIP-7610)."""

    @abc.abstractmethod
    def storage(self, address: bytes, index: int) -> int:
        """Return the storage value of an account at an index."""

    @abc.abstractmethod
    def block_hash(self, number: int) -> bytes:
        """Return the hash of a block by its number."""


class StorageWrapperError(Exception):
    """Raised when the wrapped storage fails or holds unusable bytecode."""


def _from_storage(lookup: Callable[..., _T], *args: Any) -> _T:
    """Call a storage lookup, turning any failure into a StorageWrapperError."""
    try:
        return lookup(*args)
    except Exception as err:
        raise StorageWrapperError("storage error") from err


def _to_bytecode(code: EvmCode) -> Bytecode:
    try:
        return bytecode_from_evm_code(code)
    except BytecodeConversionError as err:
        raise StorageWrapperError("invalid byte code") from err


class StorageWrapper:
    """Presents a Storage through the executor's database interface."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def basic_ref(self, address: bytes) -> AccountInfo | None:
        basic = _from_storage(self.storage.basic, address)
        if basic is None:
            return None

        code_hash = _from_storage(self.storage.code_hash, address)

        code = None
        if code_hash is not None:
            evm_code = _from_storage(self.storage.code_by_hash, code_hash)
            if evm_code is not None:
                code = _to_bytecode(evm_code)

        return AccountInfo(
            balance=basic.balance,
            nonce=basic.nonce,
            code_hash=KECCAK_EMPTY if code_hash is None else code_hash,
            code=code,
        )

    def code_by_hash_ref(self, code_hash: bytes) -> Bytecode:
        evm_code = _from_storage(self.storage.code_by_hash, code_hash)
        if evm_code is None:
            return LegacyAnalyzedBytecode()
        return _to_bytecode(evm_code)

    def has_storage_ref(self, address: bytes) -> bool:
        return _from_storage(self.storage.has_storage, address)

    def storage_ref(self, address: bytes, index: int) -> int:
        return _from_storage(self.storage.storage, address, index)

    def block_hash_ref(self, number: int) -> bytes:
        return _from_storage(self.storage.block_hash, number)