from __future__ import annotations


class ScrapePrepError(Exception):
    """Base class for errors raised by the run preparation core."""


class InvalidInput(ScrapePrepError):
    pass


class InvalidTransition(InvalidInput):
    pass


class NotFound(ScrapePrepError):
    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} {entity_id} not found")
        self.kind = kind
        self.entity_id = entity_id


class CollaboratorFailure(ScrapePrepError):
    def __init__(self, stage: str, message: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.message = message


class StoreFailure(ScrapePrepError):
    pass
