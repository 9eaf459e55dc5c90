from __future__ import annotations

from pydantic import BaseModel, Field

from scrapeprep.config.paths import get_default_store_url


class StoreSettings(BaseModel):
    url: str = Field(default_factory=get_default_store_url)


class LoggingSettings(BaseModel):
    level: str = "INFO"


class StreamSettings(BaseModel):
    heartbeat_seconds: float = 25.0


class CollaboratorSettings(BaseModel):
    planner: str | None = None
    recon: str | None = None
    pagination: str | None = None
    extraction: str | None = None
    job_assembly: str | None = None
    executor: str | None = None
    timeout_seconds: float | None = None


class ExecutionSettings(BaseModel):
    engine: str = "crawl"


class AppConfig(BaseModel):
    store: StoreSettings = Field(default_factory=StoreSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    collaborators: CollaboratorSettings = Field(default_factory=CollaboratorSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
