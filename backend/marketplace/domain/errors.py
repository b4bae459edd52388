from dataclasses import dataclass
from typing import List

PROBLEM_BASE = "https://example.com/problems/"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = PROBLEM_BASE + "domain-error"
    errors: List[dict] | None = None
    status_code: int = 400

    def __str__(self) -> str:
        return self.detail


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = PROBLEM_BASE + "not-found"
    status_code: int = 404


@dataclass
class InputValidationError(DomainError):
    title: str = "Validation Error"
    type: str = PROBLEM_BASE + "validation-error"
    status_code: int = 422


@dataclass
class InvalidTransitionError(DomainError):
    title: str = "Invalid Transition"
    type: str = PROBLEM_BASE + "invalid-transition"
    status_code: int = 409


@dataclass
class InvalidStateError(DomainError):
    title: str = "Invalid State"
    type: str = PROBLEM_BASE + "invalid-state"
    status_code: int = 409


@dataclass
class RefundNotAllowedError(DomainError):
    title: str = "Refund Not Allowed"
    type: str = PROBLEM_BASE + "refund-not-allowed"
    status_code: int = 409


@dataclass
class PaymentFailedError(DomainError):
    title: str = "Payment Failed"
    type: str = PROBLEM_BASE + "payment-failed"
    status_code: int = 402


@dataclass
class RefundFailedError(DomainError):
    title: str = "Refund Failed"
    type: str = PROBLEM_BASE + "refund-failed"
    status_code: int = 502


@dataclass
class InvalidMessageDataError(DomainError):
    title: str = "Invalid Message Data"
    type: str = PROBLEM_BASE + "invalid-message-data"
    status_code: int = 422


@dataclass
class PermissionDeniedError(DomainError):
    title: str = "Permission Denied"
    type: str = PROBLEM_BASE + "permission-denied"
    status_code: int = 403


@dataclass
class NetworkError(DomainError):
    title: str = "Network Error"
    type: str = PROBLEM_BASE + "network-error"
    status_code: int = 503


@dataclass
class UnknownError(DomainError):
    title: str = "Unknown Error"
    type: str = PROBLEM_BASE + "unknown-error"
    status_code: int = 500
