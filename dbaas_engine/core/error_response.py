"""RFC 7807 style problem details for engine failures.

Callers that expose the engine over an API can turn any ``DBaaSEngineError``
into a serializable problem document with ``problem_from_exception``.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from .exceptions import (
    CommandError,
    CommandSecurityError,
    ConfigurationError,
    ConflictingOperationError,
    DBaaSEngineError,
    IllegalTransitionError,
    InstanceNotFoundError,
    PlanLimitExceededError,
    PoolExhaustedError,
    ProvisioningError,
    SSHConnectionError,
    UnsupportedEngineError,
)


class ErrorDetail(BaseModel):
    """Problem detail structure.

    Required fields:
    - success: Always False for error responses
    - error: Human-readable error message

    Optional RFC 7807 fields:
    - type: URI reference that identifies the problem type
    - title: Short, human-readable summary of the problem type
    - detail: Human-readable explanation specific to this occurrence
    - instance: Identifier of the database instance involved
    """

    success: bool = Field(default=False, description="Always False for errors")
    error: str = Field(description="Human-readable error message")
    type: str | None = Field(default=None, description="Problem type URI")
    title: str | None = Field(default=None, description="Problem type summary")
    detail: str | None = Field(default=None, description="Specific problem details")
    status: int | None = Field(default=None, description="HTTP status suggested for this problem")
    instance: str | None = Field(default=None, description="Instance identifier")
    retryable: bool = Field(default=False, description="Whether retrying later may succeed")
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class EngineErrorResponse:
    """Factory for standardized engine error responses."""

    PROBLEM_TYPES: dict[str, dict[str, Any]] = {
        "instance-not-found": {
            "type": "/problems/instance-not-found",
            "title": "Instance Not Found",
            "status": 404,
        },
        "illegal-transition": {
            "type": "/problems/illegal-transition",
            "title": "Transition Not Allowed",
            "status": 409,
        },
        "conflicting-operation": {
            "type": "/problems/conflicting-operation",
            "title": "Operation Already In Progress",
            "status": 409,
        },
        "unsupported-engine": {
            "type": "/problems/unsupported-engine",
            "title": "Unsupported Database Engine",
            "status": 422,
        },
        "plan-limit-exceeded": {
            "type": "/problems/plan-limit-exceeded",
            "title": "Plan Instance Limit Reached",
            "status": 403,
        },
        "provisioning-error": {
            "type": "/problems/provisioning-error",
            "title": "Provisioning Failed",
            "status": 502,
        },
        "pool-exhausted": {
            "type": "/problems/pool-exhausted",
            "title": "No Remote Session Available",
            "status": 503,
        },
        "network-error": {
            "type": "/problems/network-error",
            "title": "Network Communication Failed",
            "status": 502,
        },
        "timeout-error": {
            "type": "/problems/timeout-error",
            "title": "Operation Timed Out",
            "status": 504,
        },
        "validation-error": {
            "type": "/problems/validation-error",
            "title": "Input Validation Failed",
            "status": 400,
        },
        "configuration-error": {
            "type": "/problems/configuration-error",
            "title": "Configuration Error",
            "status": 500,
        },
        "internal-error": {
            "type": "/problems/internal-error",
            "title": "Internal Engine Error",
            "status": 500,
        },
    }

    # Reserved names that context fields may not overwrite
    RESERVED_FIELDS = {
        "success",
        "error",
        "type",
        "title",
        "detail",
        "instance",
        "status",
        "retryable",
        "timestamp",
    }

    @classmethod
    def create_error(
        cls,
        error_message: str,
        problem_type: str | None = None,
        detail: str | None = None,
        instance: str | None = None,
        retryable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a standardized error response.

        Args:
            error_message: Primary error message
            problem_type: Standard problem type key or custom type URI
            detail: Additional problem-specific details
            instance: Instance id this occurrence concerns
            retryable: Whether the caller may retry later
            context: Additional context fields (host_id, engine, etc.)

        Returns:
            Problem detail dictionary
        """
        error_detail = ErrorDetail(
            error=error_message, detail=detail, instance=instance, retryable=retryable
        )

        if problem_type and problem_type in cls.PROBLEM_TYPES:
            problem_info = cls.PROBLEM_TYPES[problem_type]
            error_detail.type = problem_info["type"]
            error_detail.title = problem_info["title"]
            error_detail.status = problem_info["status"]
        elif problem_type:
            error_detail.type = problem_type

        response = error_detail.model_dump(exclude_none=True)

        if context:
            response.update(
                {k: v for k, v in context.items() if k not in cls.RESERVED_FIELDS}
            )

        return response


def _classify(error: BaseException) -> tuple[str, bool]:
    # Order matters: subclasses before their parents
    if isinstance(error, InstanceNotFoundError):
        return "instance-not-found", False
    if isinstance(error, IllegalTransitionError):
        return "illegal-transition", False
    if isinstance(error, ConflictingOperationError):
        return "conflicting-operation", True
    if isinstance(error, UnsupportedEngineError):
        return "unsupported-engine", False
    if isinstance(error, PlanLimitExceededError):
        return "plan-limit-exceeded", False
    if isinstance(error, ProvisioningError):
        return "provisioning-error", False
    if isinstance(error, PoolExhaustedError):
        return "pool-exhausted", True
    if isinstance(error, CommandError):
        return ("timeout-error" if error.is_timeout else "network-error"), True
    if isinstance(error, SSHConnectionError):
        return "network-error", True
    if isinstance(error, CommandSecurityError):
        return "validation-error", False
    if isinstance(error, ConfigurationError):
        return "configuration-error", False
    return "internal-error", False


def problem_from_exception(
    error: BaseException, context: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Map an exception to a problem detail dictionary."""
    problem_type, retryable = _classify(error)
    instance = getattr(error, "instance_id", None)
    message = str(error) if isinstance(error, DBaaSEngineError) else "Internal engine error"
    detail = None
    if isinstance(error, ProvisioningError) and error.__cause__ is not None:
        detail = str(error.__cause__)
    return EngineErrorResponse.create_error(
        message,
        problem_type=problem_type,
        detail=detail,
        instance=instance,
        retryable=retryable,
        context=context,
    )
