import threading

import pytest

from parevm.scheduler import (
    FinishExecFlags,
    IncarnationStatus,
    Scheduler,
    Task,
    TaskKind,
    TxStatus,
    TxVersion,
)


def _drain_executions(scheduler, count):
    tasks = [scheduler.next_task() for _ in range(count)]
    assert all(task.kind is TaskKind.EXECUTION for task in tasks)
    return tasks


def test_tx_status_defaults():
    status = TxStatus()
    assert status.incarnation == 0
    assert status.status is IncarnationStatus.READY_TO_EXECUTE


def test_negative_block_size_rejected():
    with pytest.raises(ValueError):
        Scheduler(-1)


def test_empty_block_has_no_tasks():
    assert Scheduler(0).next_task() is None


def test_executions_handed_out_in_order():
    scheduler = Scheduler(3)
    tasks = _drain_executions(scheduler, 3)
    assert [task.tx_version for task in tasks] == [
        TxVersion(idx, 0) for idx in range(3)
    ]
    assert scheduler.next_task() is None


def test_finish_without_validation_returns_nothing():
    scheduler = Scheduler(2)
    tasks = _drain_executions(scheduler, 2)
    for task in tasks:
        assert scheduler.finish_execution(task.tx_version, FinishExecFlags.NONE) is None
    assert scheduler.next_task() is None


def test_need_validation_returns_validation_task():
    scheduler = Scheduler(2)
    first, second = _drain_executions(scheduler, 2)
    assert scheduler.finish_execution(first.tx_version, FinishExecFlags.NONE) is None
    task = scheduler.finish_execution(
        second.tx_version, FinishExecFlags.NEED_VALIDATION
    )
    assert task == Task.validation(second.tx_version)
    assert scheduler.finish_validation(second.tx_version, aborted=False) is None
    assert scheduler.next_task() is None


def test_successful_abort_reschedules_next_incarnation():
    scheduler = Scheduler(2)
    first, second = _drain_executions(scheduler, 2)
    scheduler.finish_execution(first.tx_version, FinishExecFlags.NONE)
    validation = scheduler.finish_execution(
        second.tx_version,
        FinishExecFlags.NEED_VALIDATION | FinishExecFlags.WROTE_NEW_LOCATION,
    )
    assert validation.kind is TaskKind.VALIDATION
    assert scheduler.try_validation_abort(validation.tx_version) is True
    # Only one failing validation per version can abort it.
    assert scheduler.try_validation_abort(validation.tx_version) is False
    retry = scheduler.finish_validation(validation.tx_version, aborted=True)
    assert retry == Task.execution(TxVersion(1, 1))


def test_abort_of_executing_transaction_fails():
    scheduler = Scheduler(1)
    (task,) = _drain_executions(scheduler, 1)
    assert scheduler.try_validation_abort(task.tx_version) is False


def test_dependency_resumes_dependent_transaction():
    scheduler = Scheduler(2)
    first, second = _drain_executions(scheduler, 2)
    assert scheduler.add_dependency(1, 0) is True
    assert scheduler.finish_execution(first.tx_version, FinishExecFlags.NONE) is None
    resumed = scheduler.next_task()
    assert resumed == Task.execution(TxVersion(1, second.tx_version.tx_incarnation + 1))


def test_dependency_on_finished_transaction_is_refused():
    scheduler = Scheduler(2)
    first, _ = _drain_executions(scheduler, 2)
    scheduler.finish_execution(first.tx_version, FinishExecFlags.NONE)
    assert scheduler.add_dependency(1, 0) is False


def test_abort_stops_task_distribution():
    scheduler = Scheduler(5)
    scheduler.abort()
    assert scheduler.next_task() is None


def test_revalidation_after_lower_transaction_rewrites():
    scheduler = Scheduler(3)
    t0, t1, t2 = _drain_executions(scheduler, 3)
    scheduler.finish_execution(t0.tx_version, FinishExecFlags.NONE)
    v1 = scheduler.finish_execution(t1.tx_version, FinishExecFlags.NEED_VALIDATION)
    assert v1 == Task.validation(t1.tx_version)
    scheduler.finish_validation(t1.tx_version, aborted=False)
    v2 = scheduler.finish_execution(t2.tx_version, FinishExecFlags.NEED_VALIDATION)
    assert v2 == Task.validation(t2.tx_version)
    scheduler.finish_validation(t2.tx_version, aborted=False)
    assert scheduler.next_task() is None


def test_concurrent_workers_execute_each_transaction_once():
    block_size = 50
    scheduler = Scheduler(block_size)
    executed = []
    lock = threading.Lock()

    def worker():
        task = scheduler.next_task()
        while task is not None:
            if task.kind is TaskKind.EXECUTION:
                with lock:
                    executed.append(task.tx_version.tx_idx)
                flags = (
                    FinishExecFlags.NEED_VALIDATION
                    if task.tx_version.tx_idx > 0
                    else FinishExecFlags.NONE
                )
                task = scheduler.finish_execution(task.tx_version, flags)
            else:
                task = scheduler.finish_validation(task.tx_version, aborted=False)
            if task is None:
                task = scheduler.next_task()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    assert not any(thread.is_alive() for thread in threads)
    assert sorted(executed) == list(range(block_size))
    assert scheduler.next_task() is None