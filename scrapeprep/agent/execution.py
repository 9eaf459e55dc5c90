from __future__ import annotations

import asyncio
import logging
from typing import Any

from scrapeprep.api.event_bus import RunEventBus
from scrapeprep.api.run_store import SqlRunStore
from scrapeprep.models.collaborators import CrawlExecutor, ExecutionRequest
from scrapeprep.models.enums import ExecutionStatus, LogSeverity, RunPhase
from scrapeprep.models.events import RunEvent
from scrapeprep.models.run import Execution, utcnow

logger = logging.getLogger(__name__)

_CRAWL_OPTION_KEYS = (
    "limit",
    "scrapeOptions",
    "includePaths",
    "excludePaths",
    "maxDiscoveryDepth",
    "crawlEntireDomain",
    "allowExternalLinks",
    "allowSubdomains",
    "delay",
    "maxConcurrency",
)
_DEFAULT_SCRAPE_OPTIONS = {"formats": ["markdown", "html"]}


class ExecutionService:
    """Queues crawl executions for completed runs and works through them one at a time.

    ``trigger`` only records the execution and enqueues it, so a finished
    preparation run never waits on the crawl. Everything that happens after
    that is visible through the execution record and its logs.
    """

    def __init__(
        self,
        store: SqlRunStore,
        bus: RunEventBus,
        executor: CrawlExecutor,
        engine: str = "crawl",
    ) -> None:
        self.store = store
        self.bus = bus
        self.executor = executor
        self.engine = engine
        self._queue: asyncio.Queue[Execution] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work(), name="execution-worker")

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def join(self) -> None:
        """Wait until every queued execution has been processed."""

        await self._queue.join()

    async def trigger(self, request: ExecutionRequest) -> Execution:
        execution = await self.store.create_execution(
            run_id=request.run_id,
            plan_id=request.plan_id,
            engine=self.engine,
            config=request.crawl_config,
            metadata=request.metadata,
        )
        self.bus.publish(request.run_id, RunEvent.execution_created(execution))
        run = await self.store.update_run(request.run_id, phase=RunPhase.execute)
        self.bus.publish(request.run_id, RunEvent.run_updated(run))
        self._queue.put_nowait(execution)
        logger.info("Queued execution %s for run %s", execution.id, request.run_id)
        return execution

    async def _work(self) -> None:
        while True:
            execution = await self._queue.get()
            try:
                await self.run_execution(execution)
            except Exception:
                logger.exception("Execution %s could not be recorded", execution.id)
            finally:
                self._queue.task_done()

    async def run_execution(self, execution: Execution) -> Execution:
        await self._update(execution, status=ExecutionStatus.running, started_at=utcnow())
        await self._log(execution, "Submitting crawl", {"config": execution.config})

        try:
            url, options = _split_config(execution.config)
            await self._log(
                execution,
                "Starting crawl",
                {"url": url, "limit": options.get("limit"), "scrapeOptions": options["scrapeOptions"]},
            )
            result = await self.executor.execute(url, options)
        except Exception as e:
            message = str(e) or "Execution failed"
            logger.warning("Execution %s failed: %s", execution.id, message)
            await self._log(execution, "Crawl failed", {"error": message}, LogSeverity.error)
            return await self._update(
                execution,
                status=ExecutionStatus.failed,
                error=message,
                completed_at=utcnow(),
            )

        if not isinstance(result, dict):
            result = {"data": result}
        await self._log(
            execution,
            "Crawl completed",
            {key: result.get(key) for key in ("status", "completed", "total") if key in result},
        )
        return await self._update(
            execution,
            status=ExecutionStatus.completed,
            result={"type": "crawl", "url": url, "options": options, "data": result},
            completed_at=utcnow(),
        )

    async def _update(self, execution: Execution, **changes: Any) -> Execution:
        updated = await self.store.update_execution(execution.id, **changes)
        self.bus.publish(updated.run_id, RunEvent.execution_updated(updated))
        return updated

    async def _log(
        self,
        execution: Execution,
        message: str,
        payload: Any = None,
        severity: LogSeverity = LogSeverity.info,
    ) -> None:
        log = await self.store.append_execution_log(
            execution.id,
            execution.run_id,
            message,
            severity=severity,
            payload=payload,
        )
        self.bus.publish(execution.run_id, RunEvent.execution_log(log))


def _split_config(config: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    url = config.get("url")
    if not isinstance(url, str) or not url.strip():
        raise ValueError("Execution config missing url")
    options = {key: config[key] for key in _CRAWL_OPTION_KEYS if config.get(key) is not None}
    limit = options.get("limit")
    if not isinstance(limit, int) or limit <= 0:
        options.pop("limit", None)
    if not isinstance(options.get("scrapeOptions"), dict):
        options["scrapeOptions"] = dict(_DEFAULT_SCRAPE_OPTIONS)
    return url, options
