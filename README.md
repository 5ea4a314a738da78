# parevm

Building blocks for executing the transactions of an EVM block in parallel:

- `parevm.scheduler`: `Scheduler`, a collaborative scheduler that hands out
  execution and validation tasks to worker threads. It tracks each
  transaction's incarnation and status, registers dependencies between
  transactions, handles validation aborts, and reports when the whole block
  is done.
- `parevm.bytecode`: EVM code in the forms an executor uses
  (`LegacyRawBytecode`, `LegacyAnalyzedBytecode`, `Eip7702Bytecode`,
  `EofBytecode`) and the storable forms (`LegacyCode`, `Eip7702Code`,
  `EofCode`). It also provides JUMPDEST analysis (`analyze_jump_table`,
  `to_analysed`), an EOF container decoder (`Eof.decode`), and conversions
  both ways (`evm_code_from_bytecode`, `bytecode_from_evm_code`).
- `parevm.storage`: account types (`AccountBasic`, `EvmAccount`,
  `AccountInfo`), `keccak256`, the abstract `Storage` interface that supplies
  chain state, and `StorageWrapper`, which presents a `Storage` through
  `*_ref` lookups as an executor's database.
- `parevm.in_memory`: `InMemoryStorage`, chain state held in dictionaries.
- `parevm.rpc`: `RpcStorage`, which reads state at one block from a JSON-RPC
  node, retries failed requests with exponential backoff, and caches what it
  reads.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Scheduling a block

Each worker thread asks the scheduler for tasks until `next_task()` returns
`None`. Finishing a task can hand back a follow-up task, and the worker should
run that one next:

```python
from parevm.scheduler import FinishExecFlags, Scheduler, TaskKind

scheduler = Scheduler(3)

def work():
    while (task := scheduler.next_task()) is not None:
        while task is not None:
            if task.kind is TaskKind.EXECUTION:
                # execute transaction task.tx_version.tx_idx here
                task = scheduler.finish_execution(task.tx_version, FinishExecFlags.NONE)
            else:
                # check the reads of task.tx_version here
                task = scheduler.finish_validation(task.tx_version, aborted=False)
```

`FinishExecFlags.NEED_VALIDATION` marks an execution that must be validated.
`FinishExecFlags.WROTE_NEW_LOCATION` marks one that wrote to a location its
previous incarnation did not write, so higher transactions are validated
again.

A worker that reads a value from a lower transaction still in flight calls
`scheduler.add_dependency(tx_idx, blocking_tx_idx)`. If this returns `True`,
the transaction is re-queued with a new incarnation once the blocking
transaction finishes executing. If it returns `False`, the blocking
transaction has already finished and the read can be retried.

When validation fails, call `scheduler.try_validation_abort(tx_version)` and
pass its result to `scheduler.finish_validation(tx_version, aborted=...)`.
Only one failed validation per version aborts it. A successful abort may
return the re-execution task. Call `scheduler.abort()` after a fatal error:
from then on `next_task()` returns `None`.

## Bytecode

```python
from parevm.bytecode import (
    Eip7702Bytecode, LegacyRawBytecode, bytecode_from_evm_code,
    evm_code_from_bytecode, to_analysed,
)

analysed = to_analysed(LegacyRawBytecode(bytes.fromhex("5b6000")))
stored = evm_code_from_bytecode(analysed)      # LegacyCode
assert bytecode_from_evm_code(stored) == analysed

delegation = Eip7702Bytecode.from_address(bytes(20))
```

`bytecode_from_evm_code` raises `BytecodeConversionError` when an `EofCode`
does not decode as an EOF container. `Eof.decode` raises `ValueError` on
malformed input.

## Serving chain state

```python
from parevm.in_memory import InMemoryStorage
from parevm.storage import EvmAccount, StorageWrapper

address = bytes.fromhex("01" * 20)
storage = InMemoryStorage(
    accounts={address: EvmAccount(balance=10**18, nonce=1)},
    bytecodes={},
    block_hashes={},
)

basic = storage.basic(address)                   # AccountBasic(balance=..., nonce=1)
info = StorageWrapper(storage).basic_ref(address)  # AccountInfo with KECCAK_EMPTY code hash
```

In `InMemoryStorage`, a missing storage slot reads as `0`. A missing block
hash defaults to the Keccak-256 hash of the block number written in decimal.
Any failure in the wrapped storage, and any stored code that cannot be
converted, comes out of `StorageWrapper` as `StorageWrapperError`.

To read state from a node instead, give `RpcStorage` the node's JSON-RPC URL,
the fork (`SpecId`), and the block to read at. The block can be a number, a
tag such as `"latest"`, or a 32-byte block hash:

```python
from parevm.rpc import RpcStorage, SpecId

rpc = RpcStorage("http://localhost:8545", SpecId.CANCUN, "latest", None)
balance = rpc.basic(address)
snapshot = rpc.get_cache_accounts()
```

`basic()` returns `None` for an account with no balance, no nonce and no code,
unless the address is one of the fork's precompiles (`precompile_addresses`).
If a request still fails after eight retries, `RpcError` is raised.

The snapshots from `get_cache_accounts`, `get_cache_bytecodes` and
`get_cache_block_hashes` can be passed directly to `InMemoryStorage` to replay
the same block offline.

## What this package does not do

The package contains no EVM interpreter and no multi-version memory of reads
and writes. It has no driver that runs a block end to end. Executing
transactions, recording their read and write sets, and deciding the flags
passed to `finish_execution` are up to the caller. There is no command-line
tool.