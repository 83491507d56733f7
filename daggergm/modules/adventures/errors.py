from __future__ import annotations


class LifecycleError(ValueError):
    code = "LIFECYCLE_ERROR"

    def __init__(self, message: str, **details: object):
        super().__init__(message)
        self.details = details


class UnauthorizedError(LifecycleError):
    code = "UNAUTHORIZED"


class ForbiddenError(UnauthorizedError):
    code = "FORBIDDEN"


class AdventureNotFoundError(LifecycleError):
    code = "NOT_FOUND"


class InvalidInputError(LifecycleError):
    code = "INVALID_INPUT"


class SceneLockedError(LifecycleError):
    code = "SCENE_LOCKED"


class NotAllScenesConfirmedError(LifecycleError):
    code = "NOT_ALL_SCENES_CONFIRMED"


class GenerationFailedError(LifecycleError):
    code = "GENERATION_FAILED"


class AdventureWriteConflictError(RuntimeError):
    """The row changed between load and write; callers reload and retry."""

    def __init__(self, *, adventure_id: str, expected_version: int):
        self.adventure_id = adventure_id
        self.expected_version = expected_version
        super().__init__(f"adventure {adventure_id} changed since version {expected_version}")


class ConcurrentModificationError(LifecycleError):
    code = "CONFLICT"
