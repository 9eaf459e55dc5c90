from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from scrapeprep.agent.blueprint import (
    PLAN_EXTRACTION,
    PLAN_JOB,
    PLAN_PAGINATION,
    PLAN_RECON,
    PLAN_SUMMARY,
    STEP_BLUEPRINT,
    ensure_steps,
    get_stage,
    stages_after,
)
from scrapeprep.agent.collaborators import Collaborators
from scrapeprep.api.event_bus import RunEventBus
from scrapeprep.api.run_store import SqlRunStore
from scrapeprep.models.collaborators import (
    ExecutionRequest,
    ExecutionTrigger,
    ExtractionRequest,
    ExtractionResult,
    JobAssemblyRequest,
    JobAssemblyResult,
    PaginationRequest,
    PaginationResult,
    PlannerResult,
    ReconResult,
)
from scrapeprep.models.enums import (
    TERMINAL_STEP_STATUSES,
    LogSeverity,
    PlanStatus,
    RunPhase,
    RunStatus,
    StepStatus,
)
from scrapeprep.models.errors import CollaboratorFailure, InvalidInput, NotFound, ScrapePrepError
from scrapeprep.models.events import RunEvent
from scrapeprep.models.run import Plan, Run, RunListItem, RunLog, RunSnapshot, RunStep, utcnow
from scrapeprep.utils.urls import derive_site, normalize_base_url

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

NO_BASE_URL_MESSAGE = "Planner returned no base URL"


class StageSkipped(CollaboratorFailure):
    """A stage could not run because an earlier stage produced an unusable result."""


@dataclass
class CreateRunResult:
    run: Run
    steps: list[RunStep]


class RunPreparationService:
    """Drives runs through the step blueprint and records every transition."""

    def __init__(
        self,
        store: SqlRunStore,
        bus: RunEventBus,
        collaborators: Collaborators,
        execution: ExecutionTrigger | None = None,
        collaborator_timeout: float | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.collaborators = collaborators
        self.execution = execution
        self.collaborator_timeout = collaborator_timeout
        self._tasks: set[asyncio.Task[None]] = set()

    async def create_run(self, prompt: str) -> CreateRunResult:
        """Create a run with its blueprint steps and start processing it in the background.

        Args:
            prompt: Natural-language scrape request.

        Returns:
            The queued run and its pending steps.
        """

        text = (prompt or "").strip()
        if not text:
            raise InvalidInput("Prompt is required")

        run = await self.store.create_run(prompt=text)
        steps = await ensure_steps(self.store, run.id)
        self.bus.publish(run.id, RunEvent.run_updated(run))
        for step in steps:
            self.bus.publish(run.id, RunEvent.step_updated(step))
        logger.info("Created run %s", run.id)

        self.start_processing(run.id, text)
        return CreateRunResult(run=run, steps=steps)

    def start_processing(self, run_id: str, prompt: str) -> asyncio.Task[None]:
        task = asyncio.create_task(self._process_guarded(run_id, prompt), name=f"run-{run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every run currently being processed."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def process_run(self, run_id: str, prompt: str) -> None:
        steps = await ensure_steps(self.store, run_id)
        await _RunProcess(self, run_id, prompt, steps).execute()

    async def finalize_run(
        self,
        run_id: str,
        status: RunStatus,
        summary: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> Run:
        """Close a run once; later calls return the stored run without publishing."""

        run, changed = await self.store.finalize_run(run_id, status, summary=summary, error=error)
        if changed:
            self.bus.publish(run_id, RunEvent.run_updated(run))
            logger.info("Run %s finalized as %s", run_id, status.value)
        else:
            logger.debug("Run %s already finalized as %s", run_id, run.status.value)
        return run

    async def get_run(self, run_id: str) -> Run:
        run = await self.store.get_run(run_id)
        if run is None:
            raise NotFound("run", run_id)
        return run

    async def get_snapshot(self, run_id: str) -> RunSnapshot:
        return await self.store.get_snapshot(run_id)

    async def list_runs(self, limit: int = 50) -> list[RunListItem]:
        return await self.store.list_runs(limit)

    async def get_logs_after(self, run_id: str, sequence: int) -> list[RunLog]:
        await self.get_run(run_id)
        return await self.store.get_logs_after(run_id, sequence)

    async def _process_guarded(self, run_id: str, prompt: str) -> None:
        try:
            await self.process_run(run_id, prompt)
        except Exception as e:
            logger.exception("Run %s aborted", run_id)
            await self._record_abort(run_id, str(e) or type(e).__name__)

    async def _record_abort(self, run_id: str, message: str) -> None:
        """Best-effort close-out of a run whose processing raised outside a stage."""

        try:
            log = await self.store.append_log(
                run_id,
                "Run aborted",
                severity=LogSeverity.error,
                payload={"error": message},
            )
            self.bus.publish(run_id, RunEvent.log_appended(log))
            for step in await self.store.get_steps(run_id):
                if step.status in TERMINAL_STEP_STATUSES:
                    continue
                closed = await self.store.update_step(
                    step.id,
                    status=StepStatus.error,
                    context={"reason": message, "aborted": True},
                    completed_at=utcnow(),
                )
                self.bus.publish(run_id, RunEvent.step_updated(closed))
            run = await self.get_run(run_id)
            plan = await self.store.get_plan(run.plan_id) if run.plan_id else None
            if plan is not None and plan.status == PlanStatus.planning:
                plan = await self.store.update_plan(plan.id, status=PlanStatus.failed, error=message)
                self.bus.publish(run_id, RunEvent.plan_updated(plan))
            await self.finalize_run(run_id, RunStatus.failed, error=message)
        except ScrapePrepError as e:
            logger.error("Could not record failure of run %s: %s", run_id, e)


class _RunProcess:
    """State for a single ``process_run`` invocation."""

    def __init__(
        self,
        service: RunPreparationService,
        run_id: str,
        prompt: str,
        steps: list[RunStep],
    ) -> None:
        self.service = service
        self.store = service.store
        self.bus = service.bus
        self.collaborators = service.collaborators
        self.run_id = run_id
        self.prompt = prompt
        self.steps = {step.identifier: step for step in steps}
        self.closed = False

        self.plan: PlannerResult | None = None
        self.plan_record: Plan | None = None
        self.base_url: str | None = None
        self.recon: ReconResult | None = None
        self.pagination: PaginationResult | None = None
        self.extraction: ExtractionResult | None = None
        self.job: JobAssemblyResult | None = None

    async def execute(self) -> None:
        run = await self.store.update_run(self.run_id, status=RunStatus.running, phase=RunPhase.plan)
        self.bus.publish(self.run_id, RunEvent.run_updated(run))

        handlers = {
            PLAN_SUMMARY: self._plan_stage,
            PLAN_RECON: self._recon_stage,
            PLAN_PAGINATION: self._pagination_stage,
            PLAN_EXTRACTION: self._extraction_stage,
            PLAN_JOB: self._job_stage,
        }
        for stage in STEP_BLUEPRINT:
            try:
                await handlers[stage.identifier]()
            except CollaboratorFailure as failure:
                await self._fail(failure)
                return
        await self._succeed()

    # stages

    async def _plan_stage(self) -> None:
        await self._start_step(PLAN_SUMMARY)
        await self._log(PLAN_SUMMARY, "Submitting prompt to planner service", {"prompt": self.prompt})

        plan = await self._call(
            PLAN_SUMMARY, lambda: self.collaborators.planner.plan(self.prompt), PlannerResult
        )
        self.plan = plan
        await self._log(
            PLAN_SUMMARY,
            "Planner generated structured plan",
            {
                "baseUrl": plan.base_url,
                "extractionFields": len(plan.extraction_fields),
                "paginationStrategy": plan.pagination_hint.strategy,
                "confidence": plan.confidence,
            },
        )

        # The normalized form only decides whether the URL is usable; the planner's URL is kept as given.
        self.base_url = plan.base_url.strip() if normalize_base_url(plan.base_url) else None
        self.plan_record = await self.store.create_plan(
            run_id=self.run_id,
            prompt=self.prompt,
            objective=plan.objective,
            base_url=plan.base_url,
            starting_url=self.base_url,
            site=derive_site(self.base_url),
            reasoning=plan.reasoning_text,
            model=plan.model,
            trace_id=plan.trace_id,
        )
        run = await self.store.update_run(self.run_id, plan_id=self.plan_record.id)
        self.bus.publish(self.run_id, RunEvent.run_updated(run))
        self.bus.publish(self.run_id, RunEvent.plan_updated(self.plan_record))

        await self._complete_step(
            PLAN_SUMMARY,
            StepStatus.success,
            {
                "planId": self.plan_record.id,
                "baseUrl": plan.base_url,
                "extractionFields": [f.model_dump(mode="json") for f in plan.extraction_fields],
            },
        )

    async def _recon_stage(self) -> None:
        base_url = self.base_url
        if not base_url:
            raise StageSkipped(PLAN_RECON, NO_BASE_URL_MESSAGE)

        await self._start_step(PLAN_RECON)
        await self._log(PLAN_RECON, "Fetching the first page", {"url": base_url})

        recon = await self._call(PLAN_RECON, lambda: self.collaborators.recon.fetch(base_url), ReconResult)
        self.recon = recon
        await self._log(
            PLAN_RECON,
            "Analyzing page contents",
            {
                "markdownBytes": len(recon.markdown_body or ""),
                "htmlBytes": len(recon.html_body or ""),
                "hasSummary": recon.summary is not None,
            },
        )
        await self._complete_step(
            PLAN_RECON,
            StepStatus.success,
            {"url": recon.final_url, "metadata": recon.page_metadata, "summary": recon.summary},
        )

    async def _pagination_stage(self) -> None:
        recon = _require(self.recon, "recon result")
        await self._start_step(PLAN_PAGINATION)
        await self._log(PLAN_PAGINATION, "Determining how to paginate", {"url": recon.final_url})

        request = PaginationRequest(
            url=recon.final_url,
            markdown_body=recon.markdown_body,
            html_body=recon.html_body,
            page_metadata=recon.page_metadata,
            summary=recon.summary,
        )
        pagination = await self._call(
            PLAN_PAGINATION, lambda: self.collaborators.pagination.infer(request), PaginationResult
        )
        self.pagination = pagination
        await self._log(
            PLAN_PAGINATION,
            "Pagination inference complete",
            {
                "strategy": pagination.strategy,
                "confidence": pagination.confidence,
                "selector": pagination.selector,
            },
        )
        await self._complete_step(
            PLAN_PAGINATION,
            StepStatus.success,
            {"pagination": pagination.model_dump(mode="json", by_alias=True)},
        )

    async def _extraction_stage(self) -> None:
        plan = _require(self.plan, "planner result")
        recon = _require(self.recon, "recon result")
        await self._start_step(PLAN_EXTRACTION)
        await self._log(PLAN_EXTRACTION, "Building extraction schema", {"url": recon.final_url})

        request = ExtractionRequest(
            prompt=self.prompt,
            plan=plan,
            recon=recon,
            pagination_hint=self.pagination,
        )
        extraction = await self._call(
            PLAN_EXTRACTION, lambda: self.collaborators.extraction.generate(request), ExtractionResult
        )
        self.extraction = extraction
        await self._log(
            PLAN_EXTRACTION,
            "Extraction schema generated",
            {"fields": len(extraction.fields), "hasSample": extraction.sample_data is not None},
        )
        await self._complete_step(
            PLAN_EXTRACTION,
            StepStatus.success,
            {
                "refinedPrompt": extraction.refined_prompt,
                "notes": extraction.notes,
                "fields": [f.model_dump(mode="json", by_alias=True) for f in extraction.fields],
            },
        )

    async def _job_stage(self) -> None:
        plan = _require(self.plan, "planner result")
        extraction = _require(self.extraction, "extraction result")
        await self._start_step(PLAN_JOB)
        await self._log(PLAN_JOB, "Assembling crawl job configuration")

        request = JobAssemblyRequest(
            prompt=self.prompt,
            plan=plan,
            pagination_result=self.pagination,
            extraction_result=extraction,
        )
        job = await self._call(
            PLAN_JOB, lambda: self.collaborators.job_assembly.assemble(request), JobAssemblyResult
        )
        self.job = job
        await self._log(
            PLAN_JOB,
            "Job assembly complete",
            {"totalFields": len(job.field_schema.get("fields", [])), "warnings": len(job.warnings)},
        )
        await self._complete_step(
            PLAN_JOB,
            StepStatus.success,
            {
                "crawlConfig": job.crawl_config,
                "schema": job.field_schema,
                "warnings": job.warnings,
                "notes": job.notes,
            },
        )

    # outcomes

    async def _fail(self, failure: CollaboratorFailure) -> None:
        stage = get_stage(failure.stage)
        message = failure.message
        if isinstance(failure, StageSkipped):
            await self._log(
                stage.identifier,
                f"{stage.label} skipped: {message}",
                {"reason": message},
                LogSeverity.warning,
                start=False,
            )
            await self._complete_step(stage.identifier, StepStatus.error, {"reason": message, "skipped": True})
            cause = message
        else:
            await self._log(stage.identifier, f"{stage.label} failed", {"error": message}, LogSeverity.error)
            await self._complete_step(stage.identifier, StepStatus.error, {"message": message})
            cause = f"{stage.label} failed"

        await self._update_plan(status=PlanStatus.failed, error=message)

        for later in stages_after(stage.identifier):
            await self._log(
                later.identifier,
                f"{later.label} skipped: {cause}",
                {"reason": message},
                LogSeverity.warning,
                start=False,
            )
            await self._complete_step(
                later.identifier,
                StepStatus.error,
                {"reason": message, "skipped": True, "failedStep": stage.identifier},
            )

        await self._finalize(RunStatus.failed, error=message)

    async def _succeed(self) -> None:
        plan = _require(self.plan, "planner result")
        job = _require(self.job, "job assembly result")
        extraction = _require(self.extraction, "extraction result")
        pagination = self.pagination
        crawl_url = job.crawl_config.get("url") or self.base_url
        completed_at = utcnow().isoformat()

        pagination_details = None
        if pagination is not None:
            pagination_details = {
                "startUrl": self.base_url,
                "limitStrategy": plan.pagination_hint.strategy,
                "limitValue": plan.pagination_hint.target_value,
                "notes": pagination.notes or plan.pagination_hint.notes,
                "actions": pagination.actions,
                "strategy": pagination.strategy,
                "confidence": pagination.confidence,
                "selector": pagination.selector,
                "hrefTemplate": pagination.href_template,
            }

        await self._update_plan(
            status=PlanStatus.completed,
            error=None,
            objective=job.summary.get("objective") or plan.objective,
            base_url=crawl_url,
            site=derive_site(crawl_url),
            reasoning=plan.reasoning_text,
            sample=extraction.sample_data,
            schema=job.field_schema,
            pagination=pagination_details,
            config={"crawl": job.crawl_config},
            meta={
                "extractionFields": {
                    "plan": len(plan.extraction_fields),
                    "extraction": len(extraction.fields),
                },
                "timestamps": {"completedAt": completed_at},
            },
        )

        summary = {
            "planId": self.plan_record.id if self.plan_record else None,
            "baseUrl": crawl_url,
            "paginationStrategy": pagination.strategy if pagination else None,
            "paginationConfidence": pagination.confidence if pagination else None,
            "extractionFields": len(extraction.fields),
            "jobWarnings": job.warnings,
            "crawlConfig": job.crawl_config,
            "jobSchema": job.field_schema,
            "completedAt": completed_at,
        }
        await self._finalize(RunStatus.completed, summary=summary)
        await self._trigger_execution()

    async def _trigger_execution(self) -> None:
        trigger = self.service.execution
        if trigger is None or self.job is None:
            return
        request = ExecutionRequest(
            run_id=self.run_id,
            plan_id=self.plan_record.id if self.plan_record else None,
            crawl_config=self.job.crawl_config,
            metadata={"warnings": self.job.warnings},
        )
        try:
            await trigger.trigger(request)
        except Exception as e:
            logger.exception("Could not start execution for run %s", self.run_id)
            await self._log(None, "Execution could not be started", {"error": str(e)}, LogSeverity.warning)

    async def _finalize(self, status: RunStatus, **kwargs: Any) -> None:
        if self.closed:
            return
        self.closed = True
        await self.service.finalize_run(self.run_id, status, **kwargs)

    # helpers

    async def _call(self, stage: str, invoke: Callable[[], Any], result_type: type[M]) -> M:
        """Run one collaborator call; every error it raises becomes a CollaboratorFailure."""

        label = get_stage(stage).label
        timeout = self.service.collaborator_timeout or None
        deadline = asyncio.timeout(timeout)
        try:
            value = invoke()
            if inspect.isawaitable(value):
                async with deadline:
                    value = await value
        except CollaboratorFailure:
            raise
        except TimeoutError as e:
            if timeout is not None and deadline.expired():
                message = f"{label} timed out after {timeout:g}s"
            else:
                message = str(e) or f"{label} timed out"
            raise CollaboratorFailure(stage, message) from e
        except Exception as e:
            raise CollaboratorFailure(stage, str(e) or f"{label} failed") from e
        if isinstance(value, result_type):
            return value
        try:
            return result_type.model_validate(value)
        except ValidationError as e:
            raise CollaboratorFailure(stage, f"{label} returned an invalid result: {e}") from e

    async def _start_step(self, identifier: str) -> RunStep:
        step = self.steps[identifier]
        if step.status != StepStatus.pending:
            return step
        updated = await self.store.update_step(step.id, status=StepStatus.in_progress, started_at=utcnow())
        self._publish_step(updated)
        return updated

    async def _complete_step(
        self,
        identifier: str,
        status: StepStatus,
        context: dict[str, Any] | None = None,
    ) -> RunStep:
        step = self.steps[identifier]
        if step.status in TERMINAL_STEP_STATUSES:
            return step
        updated = await self.store.update_step(
            step.id,
            status=status,
            context=context,
            completed_at=utcnow(),
        )
        self._publish_step(updated)
        return updated

    def _publish_step(self, step: RunStep) -> None:
        self.steps[step.identifier] = step
        self.bus.publish(self.run_id, RunEvent.step_updated(step))

    async def _log(
        self,
        identifier: str | None,
        message: str,
        payload: Any = None,
        severity: LogSeverity = LogSeverity.info,
        start: bool = True,
    ) -> RunLog:
        step_id = None
        if identifier:
            step = await self._start_step(identifier) if start else self.steps[identifier]
            step_id = step.id
        log = await self.store.append_log(
            self.run_id,
            message,
            step_id=step_id,
            severity=severity,
            payload=payload,
        )
        self.bus.publish(self.run_id, RunEvent.log_appended(log))
        return log

    async def _update_plan(self, **changes: Any) -> None:
        if self.plan_record is None:
            return
        self.plan_record = await self.store.update_plan(self.plan_record.id, **changes)
        self.bus.publish(self.run_id, RunEvent.plan_updated(self.plan_record))


def _require(value: T | None, name: str) -> T:
    if value is None:
        raise RuntimeError(f"{name} is not available yet")
    return value
