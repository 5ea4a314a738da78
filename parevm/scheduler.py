"""Collaborative scheduler for parallel execution and validation of transactions.

Worker threads pick tasks by advancing the smaller of the execution and
validation indices until they find a transaction ready for that task. Redoing
a task lowers the corresponding index back to the transaction.

An incarnation may write to a location that a higher transaction already
read, so finishing an incarnation creates validation tasks for higher
transactions. Validation is optimistic and parallel; aborting early matters
because every incarnation that read from an aborted one must abort too.
"""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass


class IncarnationStatus(enum.Enum):
    """Lifecycle state of a transaction's latest incarnation."""

    READY_TO_EXECUTE = enum.auto()
    EXECUTING = enum.auto()
    EXECUTED = enum.auto()
    VALIDATED = enum.auto()
    ABORTING = enum.auto()


@dataclass
class TxStatus:
    """The latest incarnation number of a transaction and its status."""

    incarnation: int = 0
    status: IncarnationStatus = IncarnationStatus.READY_TO_EXECUTE


@dataclass(frozen=True)
class TxVersion:
    """A specific incarnation of a transaction."""

    tx_idx: int
    tx_incarnation: int


class FinishExecFlags(enum.Flag):
    """Outcome flags reported when an execution finishes."""

    NONE = 0
    NEED_VALIDATION = enum.auto()
    WROTE_NEW_LOCATION = enum.auto()


class TaskKind(enum.Enum):
    """What a worker should do with a transaction version."""

    EXECUTION = "execution"
    VALIDATION = "validation"


@dataclass(frozen=True)
class Task:
    """A unit of work handed out by the scheduler."""

    kind: TaskKind
    tx_version: TxVersion

    @classmethod
    def execution(cls, tx_version: TxVersion) -> Task:
        return cls(TaskKind.EXECUTION, tx_version)

    @classmethod
    def validation(cls, tx_version: TxVersion) -> Task:
        return cls(TaskKind.VALIDATION, tx_version)


class _AtomicIndex:
    """A thread-safe integer with fetch-and-modify operations."""

    __slots__ = ("_value", "_lock")

    def __init__(self, value: int) -> None:
        self._value = value
        self._lock = threading.Lock()

    def load(self) -> int:
        return self._value

    def fetch_add(self, amount: int) -> int:
        with self._lock:
            previous = self._value
            self._value += amount
            return previous

    def fetch_sub(self, amount: int) -> int:
        return self.fetch_add(-amount)

    def fetch_min(self, value: int) -> int:
        with self._lock:
            previous = self._value
            if value < previous:
                self._value = value
            return previous


class _Slot:
    """Per-transaction status and dependents, each guarded by its own lock."""

    __slots__ = ("status_lock", "status", "dependents_lock", "dependents")

    def __init__(self) -> None:
        self.status_lock = threading.Lock()
        self.status = TxStatus()
        self.dependents_lock = threading.Lock()
        self.dependents: list[int] = []


_DONE_STATUSES = (IncarnationStatus.EXECUTED, IncarnationStatus.VALIDATED)


class Scheduler:
    """Coordinates execution and validation tasks among worker threads."""

    def __init__(self, block_size: int) -> None:
        if block_size < 0:
            raise ValueError("block size must not be negative")
        self._block_size = block_size
        self._slots = [_Slot() for _ in range(block_size)]
        self._execution_idx = _AtomicIndex(0)
        # Validation starts only once a transaction needs it; the first
        # transaction never does.
        self._validation_idx = _AtomicIndex(block_size)
        self._min_validation_idx = _AtomicIndex(block_size)
        self._num_validated = _AtomicIndex(0)
        self._aborted = threading.Event()

    def abort(self) -> None:
        """Stop handing out tasks, typically after a fatal execution error."""
        self._aborted.set()

    def _try_execute(self, tx_idx: int) -> TxVersion | None:
        if tx_idx < self._block_size:
            slot = self._slots[tx_idx]
            with slot.status_lock:
                tx = slot.status
                if tx.status is IncarnationStatus.READY_TO_EXECUTE:
                    tx.status = IncarnationStatus.EXECUTING
                    return TxVersion(tx_idx, tx.incarnation)
        return None

    def next_task(self) -> Task | None:
        """Return the next task to perform, or None when the block is done or aborted."""
        while not self._aborted.is_set():
            execution_idx = self._execution_idx.load()
            validation_idx = self._validation_idx.load()
            if execution_idx >= self._block_size and validation_idx >= self._block_size:
                pending = self._block_size - self._min_validation_idx.load()
                if self._num_validated.load() >= pending:
                    break
                time.sleep(0)
                continue

            # Prefer validation to minimise re-execution.
            if validation_idx < execution_idx:
                tx_idx = self._validation_idx.fetch_add(1)
                if tx_idx < self._block_size:
                    slot = self._slots[tx_idx]
                    with slot.status_lock:
                        tx = slot.status
                        if tx.status is IncarnationStatus.READY_TO_EXECUTE:
                            # Steal the execution job while holding the lock.
                            tx.status = IncarnationStatus.EXECUTING
                            return Task.execution(TxVersion(tx_idx, tx.incarnation))
                        if tx.status in _DONE_STATUSES:
                            return Task.validation(TxVersion(tx_idx, tx.incarnation))
                        catching_up = tx.status is IncarnationStatus.ABORTING
                    if catching_up:
                        # Refetch the latest indices before deciding again.
                        continue
                    # An executing transaction decides on validation itself
                    # when it finishes, so fall back to an execution job.

            tx_version = self._try_execute(self._execution_idx.fetch_add(1))
            if tx_version is not None:
                return Task.execution(tx_version)
        return None

    def add_dependency(self, tx_idx: int, blocking_tx_idx: int) -> bool:
        """Make tx_idx wait for the next incarnation of blocking_tx_idx.

        Return False when the blocking transaction already finished executing
        before the dependency could be registered.
        """
        blocking_slot = self._slots[blocking_tx_idx]
        # Holding this lock keeps the blocking transaction from finishing
        # re-execution before the dependency is added.
        with blocking_slot.status_lock:
            if blocking_slot.status.status in _DONE_STATUSES:
                return False

            slot = self._slots[tx_idx]
            with slot.status_lock:
                assert slot.status.status is IncarnationStatus.EXECUTING
                slot.status.status = IncarnationStatus.ABORTING

            with blocking_slot.dependents_lock:
                blocking_slot.dependents.append(tx_idx)
        return True

    def _set_ready_status(self, tx_idx: int) -> None:
        slot = self._slots[tx_idx]
        with slot.status_lock:
            assert slot.status.status is IncarnationStatus.ABORTING
            slot.status.status = IncarnationStatus.READY_TO_EXECUTE
            slot.status.incarnation += 1

    def finish_execution(
        self, tx_version: TxVersion, flags: FinishExecFlags
    ) -> Task | None:
        """Record a finished execution; may return a validation task for it."""
        tx_idx = tx_version.tx_idx
        slot = self._slots[tx_idx]
        need_validation = bool(flags & FinishExecFlags.NEED_VALIDATION)
        wrote_new_location = bool(flags & FinishExecFlags.WROTE_NEW_LOCATION)

        with slot.status_lock:
            tx = slot.status
            assert tx.status is IncarnationStatus.EXECUTING
            assert tx.incarnation == tx_version.tx_incarnation

            # Resume dependent transactions.
            with slot.dependents_lock:
                dependents, slot.dependents = slot.dependents, []
                for dependent in dependents:
                    self._set_ready_status(dependent)
                    self._execution_idx.fetch_min(dependent)

            if need_validation:
                min_validation_idx = min(
                    self._min_validation_idx.fetch_min(tx_idx), tx_idx
                )
            else:
                min_validation_idx = self._min_validation_idx.load()

            if min_validation_idx < self._block_size:
                if tx_idx < min_validation_idx:
                    # This transaction is lower: re-validate from the minimum.
                    if wrote_new_location:
                        self._validation_idx.fetch_min(min_validation_idx)
                elif tx_idx < self._validation_idx.load():
                    # Between the minimum and the current validation index.
                    if wrote_new_location:
                        self._validation_idx.fetch_min(tx_idx + 1)
                    if need_validation:
                        tx.status = IncarnationStatus.EXECUTED
                        return Task.validation(tx_version)
                    tx.status = IncarnationStatus.VALIDATED
                    self._num_validated.fetch_add(1)
                # Otherwise the validation index will catch up later.

            if need_validation:
                tx.status = IncarnationStatus.EXECUTED
            else:
                tx.status = IncarnationStatus.VALIDATED
                self._num_validated.fetch_add(1)
        return None

    def try_validation_abort(self, tx_version: TxVersion) -> bool:
        """Try to abort a version after failed validation; only one attempt succeeds."""
        slot = self._slots[tx_version.tx_idx]
        with slot.status_lock:
            tx = slot.status
            if tx.status is IncarnationStatus.VALIDATED:
                self._num_validated.fetch_sub(1)
            aborting = tx.status in _DONE_STATUSES
            if aborting:
                tx.status = IncarnationStatus.ABORTING
        return aborting

    def finish_validation(self, tx_version: TxVersion, aborted: bool) -> Task | None:
        """Finish a validation; after a successful abort return its re-execution task."""
        tx_idx = tx_version.tx_idx
        if aborted:
            self._set_ready_status(tx_idx)
            self._validation_idx.fetch_min(tx_idx + 1)
            if self._execution_idx.load() > tx_idx:
                new_version = self._try_execute(tx_idx)
                if new_version is not None:
                    return Task.execution(new_version)
        else:
            slot = self._slots[tx_idx]
            with slot.status_lock:
                if slot.status.status is IncarnationStatus.EXECUTED:
                    slot.status.status = IncarnationStatus.VALIDATED
                    self._num_validated.fetch_add(1)
        return None