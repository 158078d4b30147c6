"""Step worker: claim, execute and settle one step at a time."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime
from typing import Any, Callable

from executors.dispatch import ExecutorDispatch
from executors.interface import StepRequest
from ops.errors import ExecutionTimeoutError, ExecutorError, StoreError
from ops.leases import StepLeaseManager
from ops.missions import MissionLifecycleManager
from ops.retry_policy import decide_retry
from ops.store_interface import UNSET, OpsStore, StepRecord, StepUpdateInput
from structured_logging import fields, log_context
from time_utils import utc_now

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "Interrupted: worker received termination signal"


class StepWorker:
    """Sequential worker loop over the shared step queue.

    A worker holds at most one step. Execution runs under an outer
    wall-clock ceiling independent of any adapter timeout, while a
    keep-alive task extends the step's lease. A termination signal cancels
    the held step and fails it with an interrupted reason. Store calls run
    in worker threads so a slow database never stalls the ceiling.
    """

    def __init__(
        self,
        store: OpsStore,
        dispatch: ExecutorDispatch,
        leases: StepLeaseManager,
        missions: MissionLifecycleManager,
        *,
        worker_id: str,
        step_timeout_seconds: float,
        idle_backoff_seconds: float,
        keepalive_interval_seconds: float,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the worker with its collaborators and timings."""
        self._store = store
        self._dispatch = dispatch
        self._leases = leases
        self._missions = missions
        self._worker_id = worker_id
        self._step_timeout_seconds = step_timeout_seconds
        self._idle_backoff_seconds = idle_backoff_seconds
        self._keepalive_interval_seconds = keepalive_interval_seconds
        self._clock = clock or utc_now
        self._stop = asyncio.Event()

    @property
    def worker_id(self) -> str:
        """Return this worker's identifier."""
        return self._worker_id

    def request_stop(self) -> None:
        """Ask the loop to stop; a held step is interrupted."""
        if not self._stop.is_set():
            logger.info("Worker stop requested: worker_id=%s", self._worker_id)
        self._stop.set()

    async def run(
        self,
        *,
        install_signal_handlers: bool = True,
        max_cycles: int | None = None,
    ) -> None:
        """Recover orphans once, then poll until stopped."""
        loop = asyncio.get_running_loop()
        installed: list[int] = []
        if install_signal_handlers:
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.add_signal_handler(sig, self.request_stop)
                    installed.append(sig)
                except (NotImplementedError, RuntimeError):
                    logger.warning("Signal handlers unavailable for %s", sig)

        with log_context({fields.WORKER_ID: self._worker_id}):
            logger.info("Worker started: worker_id=%s", self._worker_id)
            try:
                await asyncio.to_thread(self._recover_orphans)
                cycles = 0
                while not self._stop.is_set():
                    handled = await self.run_once()
                    cycles += 1
                    if max_cycles is not None and cycles >= max_cycles:
                        break
                    if not handled:
                        await self._idle()
            finally:
                for sig in installed:
                    loop.remove_signal_handler(sig)
                logger.info("Worker stopped: worker_id=%s", self._worker_id)

    async def run_once(self) -> bool:
        """Claim and process at most one step; True when a step was handled."""
        try:
            step = await asyncio.to_thread(self._leases.claim)
        except StoreError as exc:
            logger.error("Claim failed; abandoning cycle: %s", exc.message)
            return False
        if step is None:
            return False

        processing = asyncio.create_task(self.process_step(step))
        stopping = asyncio.create_task(self._stop.wait())
        done, _ = await asyncio.wait({processing, stopping}, return_when=asyncio.FIRST_COMPLETED)
        if processing in done:
            stopping.cancel()
            processing.result()
            return True

        processing.cancel()
        try:
            await processing
        except asyncio.CancelledError:
            pass
        await asyncio.to_thread(self._fail_interrupted, step)
        return True

    async def process_step(self, step: StepRecord) -> None:
        """Execute a claimed step and record its outcome."""
        run_id = f"{step.id}-{int(self._clock().timestamp() * 1000)}"
        context = {
            fields.STEP_ID: step.id,
            fields.MISSION_ID: step.mission_id,
            fields.STEP_KIND: step.kind,
            fields.EXECUTOR: step.executor,
            fields.RUN_ID: run_id,
        }
        with log_context(context):
            try:
                await asyncio.to_thread(
                    self._store.insert_action_run,
                    run_id,
                    step.id,
                    step.executor,
                    meta={"kind": step.kind, "worker_id": self._worker_id},
                    now=self._clock(),
                )
            except StoreError as exc:
                logger.error("Action run not recorded; abandoning cycle: %s", exc.message)
                return

            logger.info("Step started: attempt=%s/%s", step.failure_count + 1, step.max_retries)
            keepalive = asyncio.create_task(self._keep_alive(step.id))
            try:
                result = await asyncio.wait_for(
                    self._dispatch.execute(StepRequest.from_step(step)),
                    timeout=self._step_timeout_seconds,
                )
            except asyncio.CancelledError:
                keepalive.cancel()
                await asyncio.to_thread(self._record_interrupted_run, run_id)
                raise
            except asyncio.TimeoutError:
                handler: Callable[..., None] = self._handle_failure
                outcome: Any = ExecutionTimeoutError(
                    f"Step timeout: exceeded {self._step_timeout_seconds:g}s ceiling"
                )
            except Exception as exc:
                handler, outcome = self._handle_failure, exc
            else:
                handler, outcome = self._handle_success, result
            finally:
                keepalive.cancel()
            await self._settle(handler, step, run_id, outcome)

    async def _settle(
        self,
        handler: Callable[..., None],
        step: StepRecord,
        run_id: str,
        value: Any,
    ) -> None:
        try:
            await asyncio.to_thread(handler, step, run_id, value)
        except StoreError as exc:
            logger.error(
                "Store unavailable while settling step; abandoning cycle: %s", exc.message
            )

    def _handle_success(self, step: StepRecord, run_id: str, result: dict[str, Any]) -> None:
        updated = self._store.update_step(
            step.id,
            StepUpdateInput(
                status="succeeded",
                result=result,
                last_error=None,
                lease_expires_at=None,
            ),
            expected_status="running",
            now=self._clock(),
        )
        if not updated:
            logger.warning("Step was reclaimed before completion; result discarded")
            self._store.update_action_run(
                run_id, "failed", error="Lease lost before completion", now=self._clock()
            )
            return
        self._store.insert_event(
            f"step:{step.kind}:succeeded",
            _event_data(step, self._worker_id),
            mission_id=step.mission_id,
            dedupe_key=f"{step.id}:succeeded",
            now=self._clock(),
        )
        self._store.update_action_run(run_id, "succeeded", now=self._clock())
        logger.info("Step succeeded")

    def _handle_failure(self, step: StepRecord, run_id: str, error: BaseException) -> None:
        message = str(error) or type(error).__name__
        code = error.code if isinstance(error, ExecutorError) else "unexpected_error"
        diagnostics = error.diagnostics() if isinstance(error, ExecutorError) else None
        decision = decide_retry(step.failure_count, step.max_retries, error)

        if decision.retry:
            updated = self._store.update_step(
                step.id,
                StepUpdateInput(
                    status="queued",
                    failure_count=decision.failure_count,
                    last_error=message,
                    result=diagnostics if diagnostics is not None else UNSET,
                    reserved_at=None,
                    lease_expires_at=None,
                ),
                expected_status="running",
                now=self._clock(),
            )
            if updated:
                logger.warning(
                    "Step failed; requeued: failures=%s/%s code=%s error=%s",
                    decision.failure_count,
                    step.max_retries,
                    code,
                    message,
                )
        else:
            updated = self._store.fail_step(
                step.id,
                StepUpdateInput(
                    failure_count=decision.failure_count,
                    last_error=message,
                    result=diagnostics if diagnostics is not None else UNSET,
                ),
                dead_letter=True,
                now=self._clock(),
            )
            if updated:
                logger.error(
                    "Step failed permanently: failures=%s/%s code=%s error=%s",
                    decision.failure_count,
                    step.max_retries,
                    code,
                    message,
                )
                data = _event_data(step, self._worker_id)
                data.update(error=message, error_code=code)
                self._store.insert_event(
                    f"step:{step.kind}:failed",
                    data,
                    mission_id=step.mission_id,
                    dedupe_key=f"{step.id}:failed",
                    now=self._clock(),
                )
                self._missions.finalize_mission(step.mission_id)
        if not updated:
            logger.warning("Step was reclaimed before its failure was recorded")

        self._store.update_action_run(
            run_id,
            "failed",
            error=message,
            meta={"error_code": code, "retry": decision.retry},
            now=self._clock(),
        )

    def _fail_interrupted(self, step: StepRecord) -> None:
        with log_context({fields.STEP_ID: step.id, fields.MISSION_ID: step.mission_id}):
            try:
                failed = self._store.fail_step(
                    step.id,
                    StepUpdateInput(last_error=INTERRUPTED_REASON),
                    dead_letter=False,
                    now=self._clock(),
                )
                if failed:
                    logger.warning("Held step failed on shutdown")
                    self._missions.finalize_mission(step.mission_id)
            except StoreError as exc:
                logger.error(
                    "Could not fail interrupted step; lease expiry will recover it: %s",
                    exc.message,
                )

    def _record_interrupted_run(self, run_id: str) -> None:
        try:
            self._store.update_action_run(
                run_id, "failed", error=INTERRUPTED_REASON, now=self._clock()
            )
        except StoreError as exc:
            logger.error("Action run not closed on interrupt: %s", exc.message)

    def _recover_orphans(self) -> None:
        try:
            self._leases.recover_orphans()
        except StoreError as exc:
            logger.error("Orphan recovery failed: %s", exc.message)

    async def _keep_alive(self, step_id: int) -> None:
        while True:
            await asyncio.sleep(self._keepalive_interval_seconds)
            try:
                alive = await asyncio.to_thread(self._leases.keep_alive, step_id)
            except StoreError as exc:
                logger.warning("Keep-alive failed: %s", exc.message)
                continue
            if not alive:
                logger.warning("Keep-alive found the step no longer running")
                return

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._idle_backoff_seconds)
        except asyncio.TimeoutError:
            return


def _event_data(step: StepRecord, worker_id: str) -> dict[str, Any]:
    return {
        "step_id": step.id,
        "mission_id": step.mission_id,
        "kind": step.kind,
        "executor": step.executor,
        "source": "worker",
        "worker_id": worker_id,
    }
