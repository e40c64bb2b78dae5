"""Analysis Orchestrator — owns the lifecycle of background analysis jobs.

A trigger creates a `pending` job and returns its id straight away. The work
runs as a detached asyncio task in the same event loop:

  Step 1: mark `processing`
  Step 2: fetch transcript text from the content store
  Step 3: parse
  Step 4: format the prompt and call the LLM (retry x3, 90s per attempt)
  Step 5: validate the model output
  Step 6: write `completed` + result

Steps 2-5 run under one outer deadline (3 min by default). Any failure ends
in a single `failed` write; if even that write fails it is logged, nothing
more. The task that created a job is the only writer of that job.
"""

import time
import asyncio
from loguru import logger

from config.schemas import AnalysisJob, CallRecord, JobStatus, StatusResponse
from config.settings import Settings, load_settings
from services.errors import auth_error, not_found
from services.llm.client import LLMAnalyzer, analyze_transcript
from services.matcher import is_user_participant
from services.retry import Sleep, with_timeout
from services.store.analyses import AnalysisStore
from services.store.calls import CallStore
from services.transcript.parser import parse_transcript


class AnalysisOrchestrator:
    def __init__(
        self,
        analyses: AnalysisStore,
        calls: CallStore,
        content_store,
        analyzer: LLMAnalyzer,
        settings: Settings | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.analyses = analyses
        self.calls = calls
        self.content_store = content_store
        self.analyzer = analyzer
        self.settings = settings or load_settings()
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def load_call_for_user(self, call_id: str, user_email: str) -> CallRecord:
        """The call, if it exists and user_email is one of its participants."""
        call = await self.calls.get(call_id)
        if call is None:
            raise not_found("Call", call_id)
        if not is_user_participant(call.participants, user_email):
            raise auth_error("Access denied", 403)
        return call

    # ── Trigger ──

    async def trigger_analysis(self, call_id: str, user_id: str, user_email: str) -> str:
        """Create the next version of this user's analysis for the call and start it.

        Returns the new job id without waiting for the analysis.
        """
        call = await self.load_call_for_user(call_id, user_email)

        version = await self.analyses.count_for_call(call_id, user_id) + 1
        job = AnalysisJob(
            id=AnalysisJob.make_id(call_id, user_id, version),
            call_id=call_id,
            user_id=user_id,
            version=version,
            status=JobStatus.PENDING,
            model_used=self.analyzer.model,
            created_at=time.time(),
        )
        await self.analyses.create(job)
        logger.info(f"[{job.id}] Analysis triggered for call {call_id} by {user_id} (v{version})")

        self._spawn(job.id, call.file_id, call.filename)
        return job.id

    def _spawn(self, job_id: str, file_id: str, filename: str) -> None:
        task = asyncio.create_task(self.run_analysis(job_id, file_id, filename), name=f"analysis:{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Background task {task.get_name()} crashed: {exc}")

    # ── Background run ──

    async def _analyze(self, job_id: str, file_id: str, filename: str) -> dict:
        log = logger.bind(analysis_id=job_id)

        log.info(f"[{job_id}] Step 2: Reading transcript {filename}")
        content = await self.content_store.read_content(file_id)

        parsed = parse_transcript(content, filename)
        log.info(f"[{job_id}] Step 3: Parsed {len(parsed.turns)} turns, {len(parsed.participants)} participants")

        log.info(f"[{job_id}] Step 4: Sending to {self.analyzer.model}")
        return await analyze_transcript(
            parsed,
            self.analyzer,
            call_timeout_ms=self.settings.analysis_call_timeout_ms,
            sleep=self._sleep,
        )

    async def run_analysis(self, job_id: str, file_id: str, filename: str) -> None:
        """Drive one job to a terminal state. Never raises (except on cancellation)."""
        log = logger.bind(analysis_id=job_id)
        started = time.time()

        try:
            await self.analyses.update(job_id, status=JobStatus.PROCESSING)

            result = await with_timeout(
                self._analyze(job_id, file_id, filename),
                self.settings.background_analysis_timeout_ms,
                "Background analysis",
            )

            await self.analyses.update(job_id, status=JobStatus.COMPLETED, result=result)
            log.info(f"[{job_id}] Analysis complete in {time.time() - started:.1f}s")

        except asyncio.CancelledError:
            await self._record_failure(job_id, "Analysis cancelled before completion")
            raise
        except Exception as e:
            log.error(f"[{job_id}] Analysis failed after {time.time() - started:.1f}s: {e}")
            await self._record_failure(job_id, str(e))

    async def _record_failure(self, job_id: str, message: str) -> None:
        try:
            await self.analyses.update(job_id, status=JobStatus.FAILED, error=message)
        except Exception as write_err:
            logger.error(f"[{job_id}] Could not record failure ({message}): {write_err}")

    # ── Reads ──

    async def get_status(self, call_id: str, user_id: str) -> StatusResponse:
        """Status of the user's latest job for a call; "none" when there is none."""
        job = await self.analyses.get_latest(call_id, user_id)
        if job is None:
            return StatusResponse(status="none")
        return StatusResponse(status=job.status.value, error=job.error)

    async def get_job_status(self, job_id: str, user_id: str) -> StatusResponse:
        job = await self.analyses.get(job_id)
        # Someone else's job reads as missing
        if job is None or job.user_id != user_id:
            raise not_found("Analysis", job_id)
        return StatusResponse(status=job.status.value, error=job.error)

    async def get_latest_analysis(self, call_id: str, user_id: str, user_email: str) -> AnalysisJob:
        """Full record of the user's latest job, once it has completed.

        Raises:
            AppError NOT_FOUND: no call, no job, or (code ANALYSIS_NOT_READY) latest job not completed.
            AppError AUTH 403: user is not a participant.
        """
        await self.load_call_for_user(call_id, user_email)

        job = await self.analyses.get_latest(call_id, user_id)
        if job is None:
            raise not_found("Analysis")
        if job.status != JobStatus.COMPLETED:
            raise not_found(f"Completed analysis for call '{call_id}'", code="ANALYSIS_NOT_READY")
        return job

    # ── Lifecycle ──

    async def shutdown(self, timeout_s: float | None = None) -> None:
        """Wait for in-flight jobs; cancel whatever is left after timeout_s."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        logger.info(f"Waiting for {len(pending)} background analyses to finish")
        done, still_running = await asyncio.wait(pending, timeout=timeout_s)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_running)} unfinished analyses")
