from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .errors import ErrorKind, NetworkError, StudioError
from .events import EventLog
from .inference.provider import InferenceProvider
from .inference.types import PollResult, ProviderHandle, ProviderRequest, RemoteStatus
from .jobs import CancellationToken, Job, JobError, JobStatus
from .models import Operation, SourceAsset
from .progress import (
    Cancelled,
    Completed,
    Failed,
    Processing,
    ProgressCallback,
    ProgressUpdate,
    Submitting,
    TerminalUpdate,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0

STARTING_MESSAGE = "Starting enhancement..."
SUBMITTED_MESSAGE = "Request submitted..."
QUEUED_MESSAGE = "Waiting in queue..."
PROCESSING_MESSAGE = "Enhancing your photo..."
TIMEOUT_MESSAGE = "Processing took too long"


@dataclass
class _JobRun:
    job: Job
    on_progress: Optional[ProgressCallback]
    loop: Optional[asyncio.AbstractEventLoop] = None
    done: Optional[asyncio.Future] = None
    handle: Optional[ProviderHandle] = None
    started: float = 0.0


def processing_percent(elapsed: float) -> int:
    return int(min(30 + 2 * elapsed, 90))


class JobTracker:
    """Submits jobs to an inference provider and drives each to one terminal state.

    Completion may arrive by push (``notify``) and by the fallback poll loop,
    possibly both and possibly more than once. Cancellation and the optional
    deadline race them. Every terminal signal goes through ``_settle``, which
    relies on ``Job.transition`` rejecting anything after the first terminal
    status; only the winner is emitted to the progress callback.
    """

    def __init__(
        self,
        provider: InferenceProvider,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        submit_retries: int = 0,
        timeout_seconds: Optional[float] = None,
        event_log: Optional[EventLog] = None,
        retry_base_delay: float = 0.5,
    ):
        self.provider = provider
        self.poll_interval = poll_interval
        self.submit_retries = submit_retries
        self.timeout_seconds = timeout_seconds
        self.event_log = event_log
        self.retry_base_delay = retry_base_delay
        self._runs: dict[str, _JobRun] = {}
        provider.bind_push(self.notify)

    async def submit(
        self,
        operation: Operation,
        source: SourceAsset,
        normalized_url: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        job_id: Optional[str] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Job:
        """Submit a job and wait until it is terminal. Never raises for job failures."""
        job = Job.create(operation, source, job_id)
        loop = asyncio.get_running_loop()
        run = _JobRun(job, on_progress, loop, loop.create_future(), started=loop.time())
        self._runs[job.id] = run

        token = cancel_token or CancellationToken()

        def on_cancel() -> None:
            self._settle(run, Cancelled())

        token.add_callback(on_cancel)
        deadline = None
        if self.timeout_seconds is not None:
            deadline = loop.call_later(self.timeout_seconds, self._on_timeout, run)

        poll_task: Optional[asyncio.Task] = None
        try:
            if not job.is_terminal:
                self._progress(run, Submitting(STARTING_MESSAGE, 0))
                request = ProviderRequest(
                    correlation_id=job.id,
                    kind=operation.provider_kind(),
                    image_url=normalized_url,
                    params=params or {},
                )
                handle = await self._race(run, lambda: self._submit_with_retry(run, request))
                if handle is not None and not job.is_terminal:
                    run.handle = handle
                    logger.info("Job %s submitted as %s", job.id, handle.request_id)
                    self._progress(run, Submitting(SUBMITTED_MESSAGE, 5))
                    poll_task = asyncio.create_task(self._poll_loop(run))
                await run.done
        except asyncio.CancelledError:
            self._settle(run, Cancelled())
            raise
        finally:
            token.remove_callback(on_cancel)
            if deadline is not None:
                deadline.cancel()
            if poll_task is not None:
                poll_task.cancel()
                await asyncio.gather(poll_task, return_exceptions=True)
            self._runs.pop(job.id, None)
        return job

    def notify(self, correlation_id: str, result: PollResult) -> bool:
        """Push channel. Safe to call from any thread; returns True if the signal won."""
        run = self._runs.get(correlation_id)
        if run is None:
            logger.debug("Discarding push for unknown or finished job %s", correlation_id)
            return False
        if not result.is_terminal:
            return False
        return self._settle(run, self._terminal_update(run, result))

    def cancel(self, job_id: str) -> bool:
        run = self._runs.get(job_id)
        if run is None:
            return False
        return self._settle(run, Cancelled())

    def complete_from_cache(
        self,
        operation: Operation,
        source: SourceAsset,
        url: str,
        on_progress: Optional[ProgressCallback] = None,
        job_id: Optional[str] = None,
    ) -> Job:
        """Finish a job with a previously computed result, without the provider."""
        job = Job.create(operation, source, job_id)
        run = _JobRun(job, on_progress)
        self._settle(run, Completed(url, metadata=operation.display_metadata()))
        return job

    async def _race(
        self,
        run: _JobRun,
        factory: Callable[[], Awaitable[ProviderHandle]],
    ) -> Optional[ProviderHandle]:
        task = asyncio.ensure_future(factory())
        await asyncio.wait({task, run.done}, return_when=asyncio.FIRST_COMPLETED)
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return None
        try:
            return task.result()
        except StudioError as e:
            logger.warning("Job %s submission failed: %s", run.job.id, e)
            self._settle(run, Failed(JobError(e.kind, str(e))))
            return None
        except Exception as e:
            logger.exception("Job %s submission raised unexpectedly", run.job.id)
            self._settle(run, Failed(JobError(ErrorKind.PROCESSING, f"Unexpected provider error: {e}")))
            return None

    async def _submit_with_retry(self, run: _JobRun, request: ProviderRequest) -> ProviderHandle:
        attempt = 0
        while True:
            try:
                return await self.provider.submit(request)
            except NetworkError as e:
                if attempt >= self.submit_retries or run.job.is_terminal:
                    raise
                delay = self.retry_base_delay * (2**attempt) * random.uniform(0.5, 1.5)
                attempt += 1
                logger.warning(
                    "Submit for job %s failed (%s); retry %d/%d in %.2fs",
                    run.job.id, e, attempt, self.submit_retries, delay,
                )
                await asyncio.sleep(delay)

    async def _poll_loop(self, run: _JobRun) -> None:
        while not run.job.is_terminal:
            await asyncio.sleep(self.poll_interval)
            if run.job.is_terminal:
                return
            try:
                result = await self.provider.poll(run.handle)
            except NetworkError as e:
                logger.debug("Transient poll error for job %s: %s", run.job.id, e)
                continue
            except Exception as e:
                logger.exception("Polling job %s raised unexpectedly", run.job.id)
                self._settle(run, Failed(JobError(ErrorKind.PROCESSING, f"Unexpected provider error: {e}")))
                return
            if result.is_terminal:
                self._settle(run, self._terminal_update(run, result))
                return
            self._report_remote(run, result)

    def _report_remote(self, run: _JobRun, result: PollResult) -> None:
        if result.status is RemoteStatus.QUEUED:
            update = Processing(QUEUED_MESSAGE, 10)
        else:
            elapsed = run.loop.time() - run.started
            update = Processing(PROCESSING_MESSAGE, processing_percent(elapsed))
        self._progress(run, update)

    def _terminal_update(self, run: _JobRun, result: PollResult) -> TerminalUpdate:
        if result.status is RemoteStatus.COMPLETED:
            if result.output_url:
                return Completed(result.output_url, metadata=run.job.operation.display_metadata())
            return Failed(JobError(ErrorKind.PROCESSING, "No output URL in response"))
        return Failed(JobError(ErrorKind.PROCESSING, result.error or "Processing failed"))

    def _on_timeout(self, run: _JobRun) -> None:
        self._settle(run, Failed(JobError(ErrorKind.TIMEOUT, TIMEOUT_MESSAGE)))

    def _progress(self, run: _JobRun, update: ProgressUpdate) -> None:
        if run.job.report_progress(update.percent, update.status):
            self._dispatch(run, self._emit, run, update)

    def _settle(self, run: _JobRun, update: TerminalUpdate) -> bool:
        job = run.job
        if isinstance(update, Completed):
            accepted = job.transition(JobStatus.COMPLETED, result_uri=update.output_url)
        elif isinstance(update, Failed):
            accepted = job.transition(JobStatus.FAILED, error=update.error)
        else:
            accepted = job.transition(JobStatus.CANCELLED)

        if not accepted:
            logger.debug(
                "Discarding late %s signal for job %s (already %s)",
                update.status.value, job.id, job.status.value,
            )
            return False

        logger.info("Job %s %s", job.id, job.status.value)
        if self.event_log is not None:
            self.event_log.record(
                "job_terminal",
                job_id=job.id,
                status=job.status.value,
                operation=job.operation.kind.value,
                error=job.error.kind.value if job.error else None,
            )
        self._dispatch(run, self._finish, run, update)
        return True

    def _finish(self, run: _JobRun, update: TerminalUpdate) -> None:
        self._emit(run, update)
        if run.done is not None and not run.done.done():
            run.done.set_result(run.job)

    def _emit(self, run: _JobRun, update: ProgressUpdate) -> None:
        if run.on_progress is None:
            return
        try:
            run.on_progress(update)
        except Exception:
            logger.exception("Progress callback failed for job %s", run.job.id)

    def _dispatch(self, run: _JobRun, fn: Callable[..., None], *args: Any) -> None:
        """Run fn on the job's event loop, hopping threads when needed."""
        if run.loop is None:
            fn(*args)
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is run.loop:
            fn(*args)
        else:
            run.loop.call_soon_threadsafe(fn, *args)
