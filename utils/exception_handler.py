"""
Exception Handler Module
Typed errors returned by every rift operation.

Each error carries a machine-readable ``code`` plus the fields naming the
precondition that failed, so callers can explain the next step instead of
showing a generic failure.
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class RiftError(Exception):
    """Base class for all rift operation errors"""

    code = "rift_error"
    http_status = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details()}


class PermissionDenied(RiftError):
    """The (status, role, action) triple is not allowed"""

    code = "permission_denied"
    http_status = 403

    def __init__(self, status: str, role: str, action: str, reason: Optional[str] = None):
        self.status = status
        self.role = role
        self.action = action
        self.reason = reason
        message = f"{role} may not {action} while rift is {status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        return {"status": self.status, "role": self.role, "action": self.action, "reason": self.reason}


class InvalidTransition(RiftError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition {from_status} -> {to_status}")

    def details(self) -> Dict[str, Any]:
        return {"from": self.from_status, "to": self.to_status}


class ValidationFailed(RiftError):
    """Input or precondition failed, e.g. insufficient dispute evidence"""

    code = "validation_failed"
    http_status = 422

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")

    def details(self) -> Dict[str, Any]:
        return {"field": self.field, "reason": self.reason}


class ExternalServiceError(RiftError):
    """Payment processor or blob store failure; timeouts are unknown outcomes"""

    code = "external_service_error"
    http_status = 502

    def __init__(self, service: str, retryable: bool, message: str = "", outcome_unknown: bool = False):
        self.service = service
        self.retryable = retryable
        self.outcome_unknown = outcome_unknown
        super().__init__(message or f"{service} call failed")

    def details(self) -> Dict[str, Any]:
        return {"service": self.service, "retryable": self.retryable, "outcome_unknown": self.outcome_unknown}


class ConcurrentModification(RiftError):
    """Lost an optimistic-lock race; safe to retry after re-reading"""

    code = "concurrent_modification"
    http_status = 409

    def __init__(self, rift_id: str, expected_version: Optional[int] = None):
        self.rift_id = rift_id
        self.expected_version = expected_version
        super().__init__(f"Rift {rift_id} was modified concurrently (expected version {expected_version})")

    def details(self) -> Dict[str, Any]:
        return {"rift_id": self.rift_id, "expected_version": self.expected_version}


class AlreadyProcessed(RiftError):
    """Idempotent no-op such as a second release"""

    code = "already_processed"
    http_status = 409

    def __init__(self, rift_id: str, operation: str):
        self.rift_id = rift_id
        self.operation = operation
        super().__init__(f"{operation} already processed for rift {rift_id}")

    def details(self) -> Dict[str, Any]:
        return {"rift_id": self.rift_id, "operation": self.operation}


class NotFound(RiftError):
    code = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")

    def details(self) -> Dict[str, Any]:
        return {"entity": self.entity, "id": str(self.entity_id)}
