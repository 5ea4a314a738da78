"""A storage that keeps chain data in memory."""

from __future__ import annotations

from collections.abc import Mapping

from parevm.bytecode import EvmCode
from parevm.storage import AccountBasic, EvmAccount, Storage, keccak256


class InMemoryStorage(Storage):
    """Serves accounts, bytecodes and block hashes from mappings."""

    def __init__(
        self,
        accounts: Mapping[bytes, EvmAccount] | None = None,
        bytecodes: Mapping[bytes, EvmCode] | None = None,
        block_hashes: Mapping[int, bytes] | None = None,
    ) -> None:
        self._accounts = dict(accounts) if accounts is not None else {}
        # Bytecodes and block hashes are shared, never modified here.
        self._bytecodes = bytecodes if bytecodes is not None else {}
        self._block_hashes = block_hashes if block_hashes is not None else {}

    def basic(self, address: bytes) -> AccountBasic | None:
        account = self._accounts.get(address)
        if account is None:
            return None
        return AccountBasic(balance=account.balance, nonce=account.nonce)

    def code_hash(self, address: bytes) -> bytes | None:
        account = self._accounts.get(address)
        return None if account is None else account.code_hash

    def code_by_hash(self, code_hash: bytes) -> EvmCode | None:
        return self._bytecodes.get(code_hash)

    def has_storage(self, address: bytes) -> bool:
        account = self._accounts.get(address)
        return account is not None and bool(account.storage)

    def storage(self, address: bytes, index: int) -> int:
        account = self._accounts.get(address)
        if account is None:
            return 0
        return account.storage.get(index, 0)

    def block_hash(self, number: int) -> bytes:
        block_hash = self._block_hashes.get(number)
        if block_hash is None:
            # Unknown blocks hash to the keccak of their decimal number.
            return keccak256(str(number).encode())
        return block_hash