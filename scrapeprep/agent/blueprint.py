from __future__ import annotations

from dataclasses import dataclass

from scrapeprep.api.run_store import SqlRunStore
from scrapeprep.models.run import RunStep


@dataclass(frozen=True)
class StageDescriptor:
    identifier: str
    label: str
    position: int
    parent: str | None = None


PLAN_SUMMARY = "plan.summary"
PLAN_RECON = "plan.recon"
PLAN_PAGINATION = "plan.pagination"
PLAN_EXTRACTION = "plan.extraction"
PLAN_JOB = "plan.job"

# Parents are declared before their children.
STEP_BLUEPRINT: tuple[StageDescriptor, ...] = (
    StageDescriptor(PLAN_SUMMARY, "Plan Summary", 1),
    StageDescriptor(PLAN_RECON, "Recon", 2, PLAN_SUMMARY),
    StageDescriptor(PLAN_PAGINATION, "Pagination", 3, PLAN_SUMMARY),
    StageDescriptor(PLAN_EXTRACTION, "Extraction", 4, PLAN_SUMMARY),
    StageDescriptor(PLAN_JOB, "Job Assembly", 5, PLAN_SUMMARY),
)

_BY_IDENTIFIER = {stage.identifier: stage for stage in STEP_BLUEPRINT}


def get_stage(identifier: str) -> StageDescriptor:
    try:
        return _BY_IDENTIFIER[identifier]
    except KeyError:
        raise ValueError(f"Unknown step identifier: {identifier}") from None


def stages_after(identifier: str) -> list[StageDescriptor]:
    """Stages that come after ``identifier`` in blueprint order."""

    index = STEP_BLUEPRINT.index(get_stage(identifier))
    return list(STEP_BLUEPRINT[index + 1 :])


async def ensure_steps(store: SqlRunStore, run_id: str) -> list[RunStep]:
    """Materialize one step per blueprint stage; existing steps are kept as they are."""

    created: dict[str, RunStep] = {}
    for stage in STEP_BLUEPRINT:
        parent = created[stage.parent] if stage.parent else None
        created[stage.identifier] = await store.upsert_step(
            run_id=run_id,
            identifier=stage.identifier,
            label=stage.label,
            parent_step_id=parent.id if parent else None,
            position=stage.position,
        )
    return sorted(created.values(), key=lambda s: s.position)
