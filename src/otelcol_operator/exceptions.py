"""
Error handling utilities and custom exceptions for the OpenTelemetry Collector operator
"""

import functools
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

if TYPE_CHECKING:
    from otelcol_operator.kinds import ResourceKind
    from otelcol_operator.reconciler import ReconcileReport

F = TypeVar("F", bound=Callable[..., Any])

logger = logging.getLogger(__name__)


class OperatorError(Exception):
    """Base exception for operator operations"""

    retryable = False

    def __init__(self, message: str, operation: str, resource: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.resource = resource


class SpecValidationError(OperatorError):
    """The collector specification is malformed"""

    def __init__(self, message: str, resource: str | None = None) -> None:
        super().__init__(message, "validate", resource)


class OwnershipError(OperatorError):
    """An object is controlled by someone else"""


class StoreError(OperatorError):
    """Exception for resource store operation failures"""

    def __init__(
        self,
        message: str,
        operation: str,
        resource: str | None = None,
        retryable: bool = False,
        api_exception: ApiException | None = None,
    ) -> None:
        super().__init__(message, operation, resource)
        self.retryable = retryable
        self.api_exception = api_exception
        self.status_code = api_exception.status if api_exception else None


class NotFoundError(StoreError):
    """The object does not exist in the store"""


class AlreadyExistsError(StoreError):
    """An object with the same name already exists"""


class ConflictError(StoreError):
    """The object changed since it was last observed"""

    def __init__(self, message: str, operation: str, resource: str | None = None, **kwargs: Any):
        kwargs["retryable"] = True
        super().__init__(message, operation, resource, **kwargs)


class KindReconcileError(OperatorError):
    """Reconciliation of one child kind failed"""

    def __init__(self, kind: "ResourceKind", operation: str, cause: Exception) -> None:
        resource = getattr(cause, "resource", None)
        super().__init__(
            f"failed to {operation} {kind.value}: {cause}", operation, resource
        )
        self.kind = kind
        self.cause = cause
        self.retryable = getattr(cause, "retryable", False)


class ReconcilePassError(OperatorError):
    """One or more child kinds failed during a reconciliation pass"""

    def __init__(self, errors: list[KindReconcileError], report: "ReconcileReport") -> None:
        summary = "; ".join(str(e) for e in errors)
        super().__init__(f"reconciliation failed: {summary}", "reconcile", report.instance)
        self.errors = errors
        self.report = report
        self.retryable = all(e.retryable for e in errors)

    @property
    def first(self) -> KindReconcileError:
        return self.errors[0]


def _resource_id(args: tuple[Any, ...], kwargs: dict[str, Any]) -> str:
    # Common pattern: (self, kind, namespace, name) or (self, manifest, ...)
    if "name" in kwargs:
        return str(kwargs["name"])
    if len(args) > 3:
        return f"{getattr(args[1], 'value', args[1])} {args[2]}/{args[3]}"
    if len(args) > 1 and isinstance(args[1], dict):
        metadata = args[1].get("metadata", {})
        return f"{args[1].get('kind')} {metadata.get('namespace')}/{metadata.get('name')}"
    return "unknown"


def handle_kubernetes_errors(operation: str, resource_type: str = "resource") -> Any:
    """
    Decorator translating Kubernetes API exceptions into store errors.

    Args:
        operation: Store operation being performed (e.g., "create", "update")
        resource_type: Type of Kubernetes resource, used in log and error messages
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except ApiException as e:
                resource_id = _resource_id(args, kwargs)
                resource = f"{resource_type}:{resource_id}"
                error_msg = f"Kubernetes API error while {operation} {resource_type} '{resource_id}'"

                if e.status == 404:
                    logger.debug("%s: Resource not found (404)", error_msg)
                    raise NotFoundError(
                        f"{resource_type} '{resource_id}' not found",
                        operation,
                        resource,
                        api_exception=e,
                    ) from e

                if e.status == 409:
                    logger.info("%s: Conflict (409): %s", error_msg, e.reason)
                    if operation == "create":
                        raise AlreadyExistsError(
                            f"{resource_type} '{resource_id}' already exists",
                            operation,
                            resource,
                            api_exception=e,
                        ) from e
                    raise ConflictError(
                        f"{resource_type} '{resource_id}' was modified concurrently",
                        operation,
                        resource,
                        api_exception=e,
                    ) from e

                retryable = e.status is None or e.status == 429 or e.status >= 500
                if e.status in (400, 401, 403, 422):
                    logger.warning("%s: Client error (%s): %s", error_msg, e.status, e.reason)
                else:
                    logger.error("%s: Server error (%s): %s", error_msg, e.status, e.reason)
                    if e.body:
                        logger.error("Error details: %s", e.body)

                raise StoreError(
                    f"Failed to {operation} {resource_type} '{resource_id}': {e.reason}",
                    operation,
                    resource,
                    retryable=retryable,
                    api_exception=e,
                ) from e
            except HTTPError as e:
                resource_id = _resource_id(args, kwargs)
                logger.warning(
                    "Connection error while %s %s '%s': %s", operation, resource_type, resource_id, e
                )
                raise StoreError(
                    f"Failed to {operation} {resource_type} '{resource_id}': {e}",
                    operation,
                    f"{resource_type}:{resource_id}",
                    retryable=True,
                ) from e

        return wrapper  # type: ignore[return-value]

    return decorator
