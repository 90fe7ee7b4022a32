import asyncio
import logging
import time
from collections import Counter
from typing import Awaitable, Callable, Iterable, Mapping, Optional

from vcheck.core.config import get_settings
from vcheck.core.exceptions import CheckCancelled
from vcheck.models import CheckDefinition, CheckResult, CheckStatus, Host, VCenter
from vcheck.schemas import CheckEngineResult, CheckExecution, CheckRunSummary, CheckValidationResult
from vcheck.services.cancellation import CancellationSignal, CancelReason
from vcheck.services.engines.base import CheckEngine
from vcheck.services.store import CheckStore
from vcheck.services.threshold import evaluate_threshold
from vcheck.utils.time import utcnow

settings = get_settings()
logger = logging.getLogger(__name__)

FAILURE_STATUSES = {CheckStatus.FAILED, CheckStatus.ERROR, CheckStatus.TIMEOUT, CheckStatus.CRITICAL}


def summarize_results(results: Iterable[CheckResult]) -> CheckRunSummary:
    """Counts results per status for logging and notifications."""
    results = list(results)
    by_status = Counter(
        r.status.value if isinstance(r.status, CheckStatus) else str(r.status) for r in results
    )
    return CheckRunSummary(
        total=len(results),
        passed=sum(1 for r in results if r.status == CheckStatus.SUCCESS),
        failed=sum(1 for r in results if r.status in FAILURE_STATUSES),
        by_status=dict(by_status),
        total_execution_time=sum(r.execution_time or 0.0 for r in results),
    )


def _label(value) -> str:
    return str(getattr(value, "value", value))


class CheckExecutionService:
    """Runs check definitions against hosts and records the outcome.

    Owns the execution policy shared by every backend: definition validation,
    engine lookup, per-check timeout and cancellation, threshold override and
    best-effort persistence. Aggregate runs (host profile, cluster, batch) fan
    out over `execute_check` with semaphore-bounded concurrency.
    """

    def __init__(
        self,
        engines: Mapping[str, CheckEngine],
        store: CheckStore,
        max_checks_per_host: Optional[int] = None,
        max_concurrent_hosts: Optional[int] = None,
    ):
        self.engines = dict(engines)
        self.store = store
        self.max_checks_per_host = max_checks_per_host or settings.MAX_CONCURRENT_CHECKS_PER_HOST
        self.max_concurrent_hosts = max_concurrent_hosts or settings.MAX_CONCURRENT_HOSTS

    @staticmethod
    def is_definition_valid(definition: CheckDefinition, timeout_seconds: Optional[float] = None) -> bool:
        timeout = definition.timeout_seconds if timeout_seconds is None else timeout_seconds
        if not definition.name or not definition.name.strip():
            return False
        if not definition.script or not definition.script.strip():
            return False
        if timeout is None or timeout <= 0 or timeout > settings.MAX_TIMEOUT_SECONDS:
            return False
        return True

    async def _run_bounded(
        self,
        operation: Callable[[CancellationSignal], Awaitable[CheckEngineResult]],
        timeout_seconds: float,
        cancel: Optional[CancellationSignal] = None,
    ) -> CheckEngineResult:
        """Runs an engine call under the caller's signal and a timeout.

        Why: Timeout and caller abort must be told apart in the result, and
        the engine must get the chance to release its connection or kill its
        process before this returns. The engine task is therefore cancelled
        explicitly and awaited, and the reason is carried in `CheckCancelled`.

        Raises:
            CheckCancelled: When the timer elapsed or the caller cancelled first.
        """
        if cancel is not None and cancel.cancelled:
            raise CheckCancelled(CancelReason.CALLER)

        check_signal = CancellationSignal()
        engine_task = asyncio.ensure_future(operation(check_signal))
        caller_task = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        waiters = {engine_task} if caller_task is None else {engine_task, caller_task}
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
            if engine_task in done:
                return engine_task.result()

            reason = CancelReason.CALLER if caller_task is not None and caller_task in done else CancelReason.TIMEOUT
            check_signal.cancel(reason)
            engine_task.cancel()
            await asyncio.wait({engine_task})
            if not engine_task.cancelled() and engine_task.exception() is not None:
                logger.warning(f"Engine raised while being cancelled: {engine_task.exception()}")
            raise CheckCancelled(reason, timeout_seconds)
        finally:
            if caller_task is not None and not caller_task.done():
                caller_task.cancel()
            if not engine_task.done():
                engine_task.cancel()
                await asyncio.wait({engine_task})

    def _persist(self, result: CheckResult) -> None:
        try:
            self.store.save_result(result)
        except Exception:
            logger.exception(
                f"Failed to save result of check {result.check_definition_id} for host {result.host_id}"
            )

    async def execute_check(
        self,
        host: Host,
        definition: CheckDefinition,
        vcenter: VCenter,
        cancel: Optional[CancellationSignal] = None,
        *,
        manual_run: bool = True,
        run_by: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> CheckResult:
        """Executes one check on one host and stores the result.

        Why: This is the single place where a backend outcome turns into a
        recorded verdict, so every caller (UI, scheduler, batch) gets the same
        timeout, threshold and persistence behaviour.

        Args:
            host: Target host.
            definition: The check to run.
            vcenter: vCenter that manages the host.
            cancel: Optional caller-owned signal that aborts the run.
            manual_run: Recorded on the result to separate ad-hoc from scheduled runs.
            run_by: Optional user or schedule name recorded on the result.
            timeout_seconds: Overrides `definition.timeout_seconds` for this run.

        Returns:
            The CheckResult. Failures of any kind are reported in it, never raised.
        """
        start = time.perf_counter()
        timeout = definition.timeout_seconds if timeout_seconds is None else timeout_seconds
        result = CheckResult(
            host_id=host.id,
            check_definition_id=definition.id,
            executed_at=utcnow(),
            is_manual_run=manual_run,
            run_by=run_by,
        )

        try:
            logger.info(f"Executing check '{definition.name}' on host '{host.display_name}'")

            if not self.is_definition_valid(definition, timeout):
                result.status = CheckStatus.ERROR
                result.output = "Invalid check definition"
                result.error_message = "Check definition validation failed"
                result.execution_time = time.perf_counter() - start
                return result

            engine = self.engines.get(definition.execution_type)
            if engine is None:
                result.status = CheckStatus.ERROR
                result.output = f"No engine available for execution type: {definition.execution_type}"
                result.error_message = f"Unsupported execution type: {definition.execution_type}"
                result.execution_time = time.perf_counter() - start
                return result

            engine_result = await self._run_bounded(
                lambda signal: engine.execute(host, definition, vcenter, signal), timeout, cancel
            )

            result.status = CheckStatus.SUCCESS if engine_result.success else CheckStatus.FAILED
            result.output = engine_result.output or ""
            result.error_message = engine_result.error_message or ""
            result.raw_data = engine_result.raw_data
            if engine_result.warnings:
                result.details = "\n".join(engine_result.warnings)

            if engine_result.success and definition.has_threshold:
                verdict = evaluate_threshold(definition.threshold_criteria, engine_result.output)
                if verdict is not None:
                    result.status = CheckStatus.SUCCESS if verdict else CheckStatus.FAILED
                    if not verdict:
                        result.error_message = f"Threshold evaluation failed: {definition.threshold_criteria}"

            logger.info(
                f"Check '{definition.name}' on host '{host.display_name}' completed with status: "
                f"{_label(result.status)} in {(time.perf_counter() - start) * 1000:.0f}ms"
            )
        except CheckCancelled as e:
            if e.reason == CancelReason.TIMEOUT:
                result.status = CheckStatus.TIMEOUT
                result.error_message = f"Check execution timed out after {timeout} seconds"
                logger.warning(f"Check '{definition.name}' on host '{host.display_name}' timed out after {timeout} seconds")
            else:
                result.status = CheckStatus.SKIPPED
                result.error_message = "Check execution was cancelled"
                logger.warning(f"Check '{definition.name}' on host '{host.display_name}' was cancelled")
        except Exception as e:
            result.status = CheckStatus.ERROR
            result.error_message = str(e)
            logger.exception(f"Check '{definition.name}' on host '{host.display_name}' failed with exception")

        result.execution_time = time.perf_counter() - start
        self._persist(result)
        return result

    async def execute_host_profile_checks(
        self, host: Host, vcenter: VCenter, cancel: Optional[CancellationSignal] = None
    ) -> list[CheckResult]:
        """Runs every enabled check of the profile matching the host's type."""
        host_type = _label(host.host_type)
        logger.info(f"Executing host profile checks for host '{host.display_name}' (Type: {host_type})")

        profile = self.store.find_host_profile_by_type(host.host_type)
        if profile is None:
            logger.warning(f"No host profile found for host type: {host_type}")
            return []

        definitions = self.store.find_enabled_check_definitions(profile.check_ids or [])
        semaphore = asyncio.Semaphore(self.max_checks_per_host)

        async def run(definition: CheckDefinition) -> CheckResult:
            async with semaphore:
                return await self.execute_check(host, definition, vcenter, cancel)

        results = list(await asyncio.gather(*(run(d) for d in definitions)))
        summary = summarize_results(results)
        logger.info(
            f"Completed {summary.total} checks for host '{host.display_name}' with "
            f"{summary.passed} passed, {summary.failed} failed"
        )
        return results

    async def execute_cluster_checks(
        self, vcenter: VCenter, cluster_name: str, cancel: Optional[CancellationSignal] = None
    ) -> list[CheckResult]:
        """Runs host profile checks on every enabled host of a cluster.

        Raises:
            TargetResolutionError: If the vCenter cannot be resolved.
        """
        logger.info(f"Executing cluster checks for cluster '{cluster_name}'")
        try:
            hosts = self.store.find_hosts_by_cluster_and_vcenter(vcenter.id, cluster_name)
        except Exception:
            logger.exception(f"Failed to resolve hosts of cluster '{cluster_name}'")
            raise

        if not hosts:
            logger.warning(f"No hosts found in cluster '{cluster_name}'")
            return []

        semaphore = asyncio.Semaphore(self.max_concurrent_hosts)

        async def run(host: Host) -> list[CheckResult]:
            async with semaphore:
                return await self.execute_host_profile_checks(host, vcenter, cancel)

        results = [r for host_results in await asyncio.gather(*(run(h) for h in hosts)) for r in host_results]
        logger.info(
            f"Completed cluster checks for '{cluster_name}' - {len(results)} total checks across {len(hosts)} hosts"
        )
        return results

    async def execute_batch(
        self,
        executions: list[CheckExecution],
        max_concurrency: int = 5,
        cancel: Optional[CancellationSignal] = None,
        run_by: Optional[str] = None,
    ) -> list[CheckResult]:
        """Runs a list of (host, check, vCenter) triples under one concurrency limit.

        Higher `priority` executions are started first. Result order is not
        guaranteed to match the input.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        logger.info(
            f"Executing batch of {len(executions)} checks with concurrency limit of {max_concurrency}"
        )
        semaphore = asyncio.Semaphore(max_concurrency)

        async def run(execution: CheckExecution) -> CheckResult:
            async with semaphore:
                return await self.execute_check(
                    execution.host,
                    execution.check_definition,
                    execution.vcenter,
                    cancel,
                    manual_run=execution.is_manual_run,
                    run_by=run_by,
                    timeout_seconds=execution.timeout_seconds,
                )

        ordered = sorted(executions, key=lambda e: e.priority, reverse=True)
        results = list(await asyncio.gather(*(run(e) for e in ordered)))
        summary = summarize_results(results)
        logger.info(
            f"Batch execution completed - {summary.total} checks with "
            f"{summary.passed} passed, {summary.failed} failed"
        )
        return results

    async def validate_check(
        self,
        definition: CheckDefinition,
        sample_host: Host,
        vcenter: VCenter,
        cancel: Optional[CancellationSignal] = None,
    ) -> CheckValidationResult:
        """Dry-runs a definition through its engine's validation. Nothing is stored."""
        start = time.perf_counter()
        result = CheckValidationResult()
        try:
            logger.info(f"Validating check '{definition.name}' against host '{sample_host.display_name}'")

            if not self.is_definition_valid(definition):
                result.error_message = "Check definition is invalid"
                return result

            engine = self.engines.get(definition.execution_type)
            if engine is None:
                result.error_message = f"No engine available for execution type: {definition.execution_type}"
                return result

            engine_result = await self._run_bounded(
                lambda signal: engine.validate(sample_host, definition, vcenter, signal),
                definition.timeout_seconds,
                cancel,
            )
            result.is_valid = engine_result.success
            result.error_message = engine_result.error_message or ""
            result.sample_output = engine_result.output or ""
            result.warnings.extend(engine_result.warnings or [])

            logger.info(f"Check validation for '{definition.name}' completed - Valid: {result.is_valid}")
        except CheckCancelled as e:
            result.is_valid = False
            if e.reason == CancelReason.TIMEOUT:
                result.error_message = f"Check validation timed out after {definition.timeout_seconds} seconds"
            else:
                result.error_message = "Check validation was cancelled"
            logger.warning(f"Validation of check '{definition.name}' aborted ({e.reason.value})")
        except Exception as e:
            result.is_valid = False
            result.error_message = str(e)
            logger.exception(f"Check validation failed for '{definition.name}'")
        finally:
            result.execution_time = time.perf_counter() - start
        return result

    async def engine_availability(self) -> dict[str, bool]:
        """Probes every registered engine."""
        names = list(self.engines)
        answers = await asyncio.gather(
            *(self.engines[name].is_available() for name in names), return_exceptions=True
        )
        availability = {}
        for name, answer in zip(names, answers):
            if isinstance(answer, BaseException):
                logger.error(f"Availability probe for engine '{name}' failed: {answer}")
                availability[name] = False
            else:
                availability[name] = bool(answer)
        return availability


def create_execution_service(db_engine=None) -> CheckExecutionService:
    """Wires the default engines and store into a CheckExecutionService."""
    from vcheck.core.database import engine as default_engine
    from vcheck.services.credentials import CredentialService
    from vcheck.services.engines import build_engine_registry
    from vcheck.services.powershell import PowerShellService
    from vcheck.services.vsphere import VSphereRestService

    engines = build_engine_registry(CredentialService(), PowerShellService(), VSphereRestService())
    return CheckExecutionService(engines, CheckStore(db_engine or default_engine))
