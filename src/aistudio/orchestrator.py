from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .errors import (
    ErrorKind,
    InvalidTransitionError,
    JobCancelledError,
    StudioError,
    UserFacingError,
    user_facing,
)
from .jobs import CancellationToken, Job, JobStatus
from .models import Operation, SourceAsset
from .normalize import InputNormalizer
from .progress import ProgressCallback, ProgressUpdate
from .prompting import PromptResolver
from .result_cache import ResultCache
from .tracker import JobTracker

logger = logging.getLogger(__name__)

DEFAULT_CACHE_HIT_DELAY = 0.6


class SessionState(str, Enum):
    HOME = "home"
    FEATURE_SELECTED = "feature_selected"
    PREPARING = "preparing"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


BUSY_STATES = frozenset({SessionState.PREPARING, SessionState.PROCESSING})


@dataclass(frozen=True)
class SessionResult:
    uri: str
    display_metadata: Optional[dict[str, Any]]
    from_cache: bool
    job_id: str


TransitionListener = Callable[[SessionState, SessionState], None]


class Session:
    """One editing session: choose an operation, run it, apply or retry.

    Holds at most one active job. Display metadata of the chosen operation is
    attached to the result here and never reaches the result cache.
    """

    def __init__(
        self,
        tracker: JobTracker,
        normalizer: InputNormalizer,
        result_cache: ResultCache,
        cache_hit_delay: float = DEFAULT_CACHE_HIT_DELAY,
        prompts: Optional[PromptResolver] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.tracker = tracker
        self.normalizer = normalizer
        self.result_cache = result_cache
        self.cache_hit_delay = cache_hit_delay
        self.prompts = prompts or PromptResolver()
        self.on_progress = on_progress

        self.state = SessionState.HOME
        self.operation: Optional[Operation] = None
        self.result: Optional[SessionResult] = None
        self.error: Optional[UserFacingError] = None
        self.last_progress: Optional[ProgressUpdate] = None
        self.active_job_id: Optional[str] = None
        self._token: Optional[CancellationToken] = None
        self._listeners: list[TransitionListener] = []

    def on_transition(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def select(self, operation: Operation) -> None:
        self._require(SessionState.HOME, SessionState.FEATURE_SELECTED, SessionState.ERROR)
        self.operation = operation
        self._set_state(SessionState.FEATURE_SELECTED)

    async def run(self, source: SourceAsset) -> Optional[Job]:
        """Run the selected operation on ``source``.

        Returns the job that reached a terminal state, or None when nothing was
        submitted (the call was a no-op, preparation failed, or the run was
        cancelled before a job existed).
        """
        if self.active_job_id is not None:
            logger.debug("Session already running job %s; ignoring run", self.active_job_id)
            return None
        self._require(SessionState.FEATURE_SELECTED)
        operation = self.operation

        job_id = uuid.uuid4().hex
        token = CancellationToken()
        self.active_job_id = job_id
        self._token = token
        self.result = None
        self.error = None
        try:
            self._set_state(SessionState.PREPARING)
            try:
                url = await self.normalizer.normalize(
                    source, cancel_token=token, on_progress=self._forward
                )
            except JobCancelledError:
                self._set_state(SessionState.CANCELLED)
                return None
            except StudioError as e:
                logger.warning("Preparation failed: %s", e)
                self._fail(e.kind, str(e))
                return None

            cached = self.result_cache.lookup(source.identity, operation.signature())
            if cached is not None:
                logger.info("Result cache hit for %s (%s)", source.identity[:12], operation.kind.value)
                await asyncio.sleep(self.cache_hit_delay)
                if token.cancelled:
                    self._set_state(SessionState.CANCELLED)
                    return None
                job = self.tracker.complete_from_cache(
                    operation, source, cached, on_progress=self._forward, job_id=job_id
                )
                self._conclude(job, from_cache=True)
                return job

            self._set_state(SessionState.PROCESSING)
            job = await self.tracker.submit(
                operation,
                source,
                url,
                on_progress=self._forward,
                cancel_token=token,
                job_id=job_id,
                params=self._provider_params(operation),
            )
            self._conclude(job, from_cache=False)
            return job
        finally:
            self.active_job_id = None
            self._token = None

    def cancel(self) -> bool:
        if self._token is None:
            return False
        self._token.cancel()
        return True

    def apply(self) -> SessionResult:
        self._require(SessionState.SUCCESS)
        result = self.result
        self._set_state(SessionState.HOME)
        self.operation = None
        return result

    def retry(self) -> None:
        """Back to FEATURE_SELECTED with the same operation."""
        self._require(SessionState.ERROR, SessionState.CANCELLED)
        self.error = None
        self._set_state(SessionState.FEATURE_SELECTED)

    def back(self) -> None:
        if self.state in BUSY_STATES:
            raise InvalidTransitionError(f"Cannot leave while {self.state.value}")
        self.operation = None
        self.result = None
        self.error = None
        self._set_state(SessionState.HOME)

    def _provider_params(self, operation: Operation) -> dict[str, Any]:
        prompt = self.prompts.for_operation(operation)
        if prompt is None:
            return {}
        return {"prompt": prompt.prompt, "negative_prompt": prompt.negative_prompt}

    def _conclude(self, job: Job, from_cache: bool) -> None:
        operation = job.operation
        if job.status is JobStatus.COMPLETED:
            if not from_cache:
                self.result_cache.store(job.source.identity, operation.signature(), job.result_uri)
            self.result = SessionResult(
                uri=job.result_uri,
                display_metadata=operation.display_metadata(),
                from_cache=from_cache,
                job_id=job.id,
            )
            self._set_state(SessionState.SUCCESS)
        elif job.status is JobStatus.CANCELLED:
            self._set_state(SessionState.CANCELLED)
        else:
            self._fail(job.error.kind, job.error.message)

    def _fail(self, kind: ErrorKind, detail: str) -> None:
        if kind is ErrorKind.CANCELLED:
            self._set_state(SessionState.CANCELLED)
            return
        self.error = user_facing(kind, detail)
        self._set_state(SessionState.ERROR)

    def _forward(self, update: ProgressUpdate) -> None:
        self.last_progress = update
        if self.on_progress is not None:
            self.on_progress(update)

    def _require(self, *allowed: SessionState) -> None:
        if self.state not in allowed:
            raise InvalidTransitionError(
                f"Invalid in state {self.state.value}; expected one of {[s.value for s in allowed]}"
            )

    def _set_state(self, new: SessionState) -> None:
        old = self.state
        if old is new:
            return
        self.state = new
        logger.debug("Session %s -> %s", old.value, new.value)
        for listener in list(self._listeners):
            listener(old, new)
