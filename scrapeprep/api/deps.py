from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from scrapeprep.agent.collaborators import Collaborators, load_collaborators, load_crawl_executor
from scrapeprep.agent.execution import ExecutionService
from scrapeprep.agent.run_preparation import RunPreparationService
from scrapeprep.api.event_bus import RunEventBus
from scrapeprep.api.run_store import SqlRunStore
from scrapeprep.api.subscriptions import SubscriptionGateway
from scrapeprep.config.schema import AppConfig
from scrapeprep.models.collaborators import CrawlExecutor


@dataclass
class AppServices:
    config: AppConfig
    store: SqlRunStore
    bus: RunEventBus
    execution: ExecutionService
    preparation: RunPreparationService
    gateway: SubscriptionGateway

    def start(self) -> None:
        self.execution.start()

    async def shutdown(self) -> None:
        await self.preparation.drain()
        await self.execution.stop()
        self.bus.close()
        self.store.close()


def build_services(
    config: AppConfig,
    collaborators: Collaborators | None = None,
    executor: CrawlExecutor | None = None,
) -> AppServices:
    store = SqlRunStore(config.store.url)
    bus = RunEventBus()
    execution = ExecutionService(
        store=store,
        bus=bus,
        executor=executor or load_crawl_executor(config.collaborators),
        engine=config.execution.engine,
    )
    preparation = RunPreparationService(
        store=store,
        bus=bus,
        collaborators=collaborators or load_collaborators(config.collaborators),
        execution=execution,
        collaborator_timeout=config.collaborators.timeout_seconds,
    )
    return AppServices(
        config=config,
        store=store,
        bus=bus,
        execution=execution,
        preparation=preparation,
        gateway=SubscriptionGateway(store=store, bus=bus),
    )


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_config(request: Request) -> AppConfig:
    return get_services(request).config


def get_preparation_service(request: Request) -> RunPreparationService:
    return get_services(request).preparation


def get_subscription_gateway(request: Request) -> SubscriptionGateway:
    return get_services(request).gateway
