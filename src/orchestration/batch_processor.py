"""Bounded-concurrency fan-out over accounts and regions.

BatchOrchestrator expands each batch into one task per (account,
region) pair and runs the tasks on a fixed number of worker threads,
enforcing a per-task timeout. Ordered batches run strictly one after
another.
"""

import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from src.core.logger import OperationLogger
from src.orchestration.models import (
    AccountTarget,
    ConcurrencySettings,
    OrderedAccountBatch,
    TaskResult,
    validate_batch_orders,
)


ServiceHandler = Callable[
    [str, AccountTarget, str, bool, str, Dict[str, Any], Optional[List[AccountTarget]]],
    Any,
]
EnvironmentSetup = Callable[[AccountTarget, str, Dict[str, Any]], Optional[Dict[str, Any]]]


class TaskTimeoutError(Exception):
    """Raised when a task exceeds the operation timeout."""

    def __init__(self, message: str, timeout_ms: int) -> None:
        super().__init__(message)
        self.timeout_ms = timeout_ms


@dataclass
class _EnvironmentTask:
    account: AccountTarget
    region: str
    log_prefix: str
    description: str
    run: Callable[[], Any]

    def timeout_message(self, timeout_ms: int) -> str:
        return f"{self.log_prefix} {self.description} operation timeout after {timeout_ms}ms"


def build_log_prefix(account: AccountTarget, region: str) -> str:
    return f"{account.label}:{region}"


def _start_daemon(task: _EnvironmentTask) -> Future:
    """Run a task on its own daemon thread.

    A task that outlives its timeout is abandoned; being a daemon, its
    thread never blocks interpreter exit.
    """
    future: Future = Future()

    def runner() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = task.run()
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(result)

    thread = threading.Thread(
        target=runner,
        name=f"environment-{task.log_prefix}",
        daemon=True,
    )
    thread.start()
    return future


class BatchOrchestrator:
    """Runs service handlers across account × region environments.

    Args:
        logger: Operation logger; defaults to a module logger
        default_concurrency: Settings used when a run passes none
    """

    def __init__(
        self,
        logger: Optional[OperationLogger] = None,
        default_concurrency: Optional[ConcurrencySettings] = None,
    ) -> None:
        self.logger = logger or OperationLogger()
        self.default_concurrency = default_concurrency or ConcurrencySettings()

    def run(
        self,
        service: str,
        operation: str,
        invoker_account_id: str,
        target_accounts: Sequence[AccountTarget],
        target_regions: Sequence[str],
        props: Dict[str, Any],
        dry_run: bool,
        handler: ServiceHandler,
        concurrency: Optional[ConcurrencySettings] = None,
        environment_setup: Optional[EnvironmentSetup] = None,
        organization_accounts: Optional[List[AccountTarget]] = None,
        collect_errors: bool = False,
    ) -> List[TaskResult]:
        """Run handler once for every (account, region) pair.

        Args:
            service: Service name for log output
            operation: Operation name for log output (e.g. 'enable')
            invoker_account_id: Account the run is invoked from
            target_accounts: Accounts to process
            target_regions: Regions to process in each account
            props: Properties passed to every handler call
            dry_run: Whether handlers must avoid mutating calls
            handler: Business operation for one environment
            concurrency: Worker pool bounds; defaults to default_concurrency
            environment_setup: Called before handler, its mapping overrides
                props for that task only
            organization_accounts: Full account list passed to handler
            collect_errors: Record failures in TaskResult.error instead of
                aborting the run

        Returns:
            One TaskResult per task, in account-major, region-minor order

        Raises:
            TaskTimeoutError: When a task exceeds the timeout
            Exception: The first task failure, unchanged, unless
                collect_errors is set
        """
        settings = concurrency or self.default_concurrency
        accounts = list(target_accounts)
        regions = list(target_regions)

        self.logger.process_start(
            f"Starting {service} {operation} operations for {len(accounts) * len(regions)} "
            f"environments ({len(accounts)} accounts × {len(regions)} regions) with max "
            f"{settings.max_concurrent_environments} concurrent"
        )

        tasks: List[_EnvironmentTask] = []
        for account in accounts:
            for region in regions:
                tasks.append(self._build_task(
                    service, operation, invoker_account_id, account, region, props,
                    dry_run, handler, environment_setup, organization_accounts,
                ))

        results = self._process_with_worker_pool(tasks, settings, collect_errors)

        self.logger.process_end(
            f"Completed {service} {operation} operations for {len(tasks)} environments"
        )
        return results

    def run_ordered(
        self,
        service: str,
        operation: str,
        invoker_account_id: str,
        account_batches: Sequence[OrderedAccountBatch],
        target_regions: Sequence[str],
        props: Dict[str, Any],
        dry_run: bool,
        handler: ServiceHandler,
        concurrency: Optional[ConcurrencySettings] = None,
        environment_setup: Optional[EnvironmentSetup] = None,
        organization_accounts: Optional[List[AccountTarget]] = None,
        collect_errors: bool = False,
    ) -> List[TaskResult]:
        """Run batches in ascending order, one batch at a time.

        No task of a batch starts before every task of the preceding
        batch has finished.

        Raises:
            ConfigurationError: When two batches share an order
        """
        batches = validate_batch_orders(account_batches)
        results: List[TaskResult] = []

        for batch in batches:
            self.logger.process_start(
                f"Starting batch {batch.order}({batch.name}) with {len(batch.accounts)} "
                f"accounts across {len(target_regions)} regions"
            )
            results.extend(self.run(
                service, operation, invoker_account_id, batch.accounts, target_regions,
                props, dry_run, handler,
                concurrency=concurrency,
                environment_setup=environment_setup,
                organization_accounts=organization_accounts,
                collect_errors=collect_errors,
            ))
            self.logger.process_end(f"Batch {batch.order}({batch.name}) completed")

        return results

    def run_enable(self, service: str, *args: Any, **kwargs: Any) -> List[TaskResult]:
        return self.run_ordered(service, 'enable', *args, **kwargs)

    def run_disable(self, service: str, *args: Any, **kwargs: Any) -> List[TaskResult]:
        return self.run_ordered(service, 'disable', *args, **kwargs)

    def _build_task(
        self,
        service: str,
        operation: str,
        invoker_account_id: str,
        account: AccountTarget,
        region: str,
        props: Dict[str, Any],
        dry_run: bool,
        handler: ServiceHandler,
        environment_setup: Optional[EnvironmentSetup],
        organization_accounts: Optional[List[AccountTarget]],
    ) -> _EnvironmentTask:
        log_prefix = build_log_prefix(account, region)

        def run() -> Any:
            self.logger.process_start(f"{service} {operation}", log_prefix)
            task_props = props
            if environment_setup:
                overrides = environment_setup(account, invoker_account_id, props)
                if overrides:
                    task_props = {**props, **overrides}
            value = handler(
                invoker_account_id, account, region, dry_run, log_prefix,
                task_props, organization_accounts,
            )
            self.logger.process_end(f"{service} {operation}", log_prefix)
            return value

        return _EnvironmentTask(account, region, log_prefix, f"{service} {operation}", run)

    def _process_with_worker_pool(
        self,
        tasks: List[_EnvironmentTask],
        settings: ConcurrencySettings,
        collect_errors: bool,
    ) -> List[TaskResult]:
        if not tasks:
            return []

        max_workers = settings.max_concurrent_environments
        timeout_seconds = settings.operation_timeout_ms / 1000.0
        results: List[Optional[TaskResult]] = [None] * len(tasks)
        pending: Deque[Tuple[int, _EnvironmentTask]] = deque(enumerate(tasks))
        running: Dict[Future, Tuple[int, float]] = {}

        if len(tasks) > max_workers:
            self.logger.info(
                f"Queue: {max_workers}/{max_workers} running, "
                f"{len(tasks) - max_workers} remaining"
            )

        def record_failure(index: int, error: BaseException) -> None:
            task = tasks[index]
            self.logger.error(f"Failed: {error}", task.log_prefix)
            if not collect_errors:
                pending.clear()
                raise error
            results[index] = TaskResult(task.account, task.region, error=error)

        while pending or running:
            while pending and len(running) < max_workers:
                index, task = pending.popleft()
                running[_start_daemon(task)] = (index, time.monotonic() + timeout_seconds)

            next_deadline = min(deadline for _, deadline in running.values())
            done, _ = wait(
                list(running),
                timeout=max(0.0, next_deadline - time.monotonic()),
                return_when=FIRST_COMPLETED,
            )

            for future in done:
                index, _ = running.pop(future)
                error = future.exception()
                if error is not None:
                    record_failure(index, error)
                else:
                    task = tasks[index]
                    results[index] = TaskResult(task.account, task.region, value=future.result())

            now = time.monotonic()
            for future, (index, deadline) in list(running.items()):
                if deadline <= now and not future.done():
                    del running[future]
                    timeout_ms = settings.operation_timeout_ms
                    record_failure(index, TaskTimeoutError(
                        tasks[index].timeout_message(timeout_ms), timeout_ms
                    ))

        return results
