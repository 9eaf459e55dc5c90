from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from typing import Any

from scrapeprep.config.schema import CollaboratorSettings
from scrapeprep.models.collaborators import (
    CrawlExecutor,
    ExtractionSchema,
    JobAssembler,
    PaginationInference,
    Planner,
    Recon,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Collaborators:
    planner: Planner
    recon: Recon
    pagination: PaginationInference
    extraction: ExtractionSchema
    job_assembly: JobAssembler


class UnconfiguredCollaborator:
    """Stands in for a collaborator missing from config; every call fails."""

    def __init__(self, name: str) -> None:
        self.name = name

    def _fail(self) -> Any:
        raise RuntimeError(f"{self.name} collaborator is not configured")

    async def plan(self, prompt: str) -> Any:
        return self._fail()

    async def fetch(self, url: str) -> Any:
        return self._fail()

    async def infer(self, request: Any) -> Any:
        return self._fail()

    async def generate(self, request: Any) -> Any:
        return self._fail()

    async def assemble(self, request: Any) -> Any:
        return self._fail()

    async def execute(self, url: str, options: dict[str, Any]) -> Any:
        return self._fail()


def resolve_reference(reference: str) -> Any:
    """Import ``package.module:attribute``; classes and factories are called without arguments."""

    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid collaborator reference: {reference!r}")
    target: Any = importlib.import_module(module_name)
    for part in attr.split("."):
        target = getattr(target, part)
    if callable(target):
        target = target()
    return target


def _load_one(name: str, reference: str | None) -> Any:
    if not reference:
        logger.warning("No %s collaborator configured; runs will fail at that stage", name)
        return UnconfiguredCollaborator(name)
    logger.info("Loading %s collaborator from %s", name, reference)
    return resolve_reference(reference)


def load_collaborators(settings: CollaboratorSettings) -> Collaborators:
    return Collaborators(
        planner=_load_one("planner", settings.planner),
        recon=_load_one("recon", settings.recon),
        pagination=_load_one("pagination", settings.pagination),
        extraction=_load_one("extraction", settings.extraction),
        job_assembly=_load_one("job_assembly", settings.job_assembly),
    )


def load_crawl_executor(settings: CollaboratorSettings) -> CrawlExecutor:
    return _load_one("executor", settings.executor)
