"""Error taxonomy shared by the registry, validator and request pipeline."""

from __future__ import annotations

from typing import Any, Dict, List


Issue = Dict[str, Any]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


class EngineError(Exception):
    code = "ENGINE_ERROR"
    status = 500
    server_side = True

    def __init__(self, message: str, path: str | None = None, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.detail = detail

    def to_issue(self) -> Issue:
        return _issue(self.code, self.message, self.path, self.detail)

    def issues(self) -> List[Issue]:
        return [self.to_issue()]


class ClientError(EngineError):
    status = 400
    server_side = False


class ModelNotFound(ClientError):
    code = "MODEL_NOT_FOUND"
    status = 404


class CorruptDefinition(EngineError):
    """A stored definition could not be parsed or breaks its own invariants."""

    code = "CORRUPT_DEFINITION"


class InvalidDefinition(ClientError):
    """A definition failed the save-time invariant check."""

    code = "INVALID_DEFINITION"

    def __init__(self, message: str, problems: List[Issue] | None = None) -> None:
        super().__init__(message, path="definition", detail={"problems": list(problems or [])})
        self.problems = list(problems or [])

    def issues(self) -> List[Issue]:
        return list(self.problems) or [self.to_issue()]


class InsufficientPermission(ClientError):
    code = "INSUFFICIENT_PERMISSION"
    status = 403


class OwnershipUnknown(ClientError):
    code = "OWNERSHIP_UNKNOWN"
    status = 403


class NotOwner(ClientError):
    code = "NOT_OWNER"
    status = 403


class ResourceNotFound(ClientError):
    code = "RESOURCE_NOT_FOUND"
    status = 404


class ValidationFailed(ClientError):
    code = "VALIDATION_FAILED"

    def __init__(self, errors: List[Issue]) -> None:
        super().__init__("Payload failed validation", path="record", detail={"errors": list(errors)})
        self.errors = list(errors)

    def issues(self) -> List[Issue]:
        return list(self.errors)


class UniqueViolation(ClientError):
    code = "UNIQUE_VIOLATION"
    status = 409


class RequestCancelled(ClientError):
    code = "REQUEST_CANCELLED"
    status = 499


class PersistenceError(EngineError):
    code = "PERSISTENCE_ERROR"


DENY_REASONS = {
    InsufficientPermission.code: InsufficientPermission,
    OwnershipUnknown.code: OwnershipUnknown,
    NotOwner.code: NotOwner,
}
