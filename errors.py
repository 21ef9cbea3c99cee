"""Errores de dominio del núcleo de acceso y entrega.

Cada error lleva un código estable, la categoría de la taxonomía y un mensaje
seguro para el usuario. La capa HTTP traduce la categoría a un status.
"""

from enum import Enum
from typing import Any, Dict, Optional


class Failure(Enum):
    """Categorías de fallo."""

    AUTHENTICATION = "AuthenticationFailure"
    AUTHORIZATION = "AuthorizationFailure"
    VALIDATION = "ValidationFailure"
    UPSTREAM = "UpstreamFailure"
    CONFLICT = "ConflictFailure"
    NOT_FOUND = "NotFoundFailure"
    PAYMENT = "PaymentFailure"


class ErrorCode(Enum):
    """Códigos de error de dominio."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    ADMIN_ACCESS_DENIED = "ADMIN_ACCESS_DENIED"
    BUYER_ACCESS_DENIED = "BUYER_ACCESS_DENIED"
    SUPERADMIN_REQUIRED = "SUPERADMIN_REQUIRED"
    FORBIDDEN_OPERATION = "FORBIDDEN_OPERATION"
    INVALID_INPUT = "INVALID_INPUT"
    PROFILE_UNAVAILABLE = "PROFILE_UNAVAILABLE"
    PAYMENT_NOT_SUCCEEDED = "PAYMENT_NOT_SUCCEEDED"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    DUPLICATE_IDENTITY = "DUPLICATE_IDENTITY"
    NOT_FOUND = "NOT_FOUND"
    PROFILE_NOT_FOUND = "PROFILE_NOT_FOUND"


class DomainError(Exception):
    """Error base con código, categoría y mensaje seguro para el usuario."""

    kind: Failure = Failure.VALIDATION

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class AuthenticationError(DomainError):
    kind = Failure.AUTHENTICATION


class AuthorizationError(DomainError):
    """Token válido pero clase de principal incorrecta. Siempre se audita."""

    kind = Failure.AUTHORIZATION

    def __init__(self, code: ErrorCode) -> None:
        super().__init__(code=code, message="Access denied")


class InvalidCredentials(AuthenticationError):
    """No distingue usuario inexistente de contraseña incorrecta."""

    def __init__(self) -> None:
        super().__init__(code=ErrorCode.INVALID_CREDENTIALS, message="Invalid credentials")


class AuthenticationRequired(AuthenticationError):
    def __init__(self) -> None:
        super().__init__(code=ErrorCode.AUTHENTICATION_REQUIRED, message="Authentication required")


class SessionNotFound(AuthenticationError):
    def __init__(self) -> None:
        super().__init__(code=ErrorCode.SESSION_NOT_FOUND, message="Invalid or expired session")


class SessionExpired(AuthenticationError):
    def __init__(self) -> None:
        super().__init__(code=ErrorCode.SESSION_EXPIRED, message="Invalid or expired session")


class AdminAccessDenied(AuthorizationError):
    """Un token de administrador se presentó a una operación de comprador."""

    def __init__(self) -> None:
        super().__init__(ErrorCode.ADMIN_ACCESS_DENIED)


class BuyerAccessDenied(AuthorizationError):
    """Un token de comprador se presentó a una operación de administrador."""

    def __init__(self) -> None:
        super().__init__(ErrorCode.BUYER_ACCESS_DENIED)


class SuperAdminRequired(AuthorizationError):
    def __init__(self) -> None:
        super().__init__(ErrorCode.SUPERADMIN_REQUIRED)


class ForbiddenOperation(DomainError):
    """Operación permitida al rol pero no sobre ese objetivo (p.ej. auto-degradarse)."""

    kind = Failure.AUTHORIZATION

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.FORBIDDEN_OPERATION, message=message)


class InvalidInput(DomainError):
    kind = Failure.VALIDATION

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.INVALID_INPUT, message=message)


class ProfileUnavailable(DomainError):
    """Un perfil del carrito no existe o no está aprobado."""

    kind = Failure.VALIDATION

    def __init__(self, profile_id: int, reason: str) -> None:
        super().__init__(
            code=ErrorCode.PROFILE_UNAVAILABLE,
            message=f"Profile {profile_id} is not available",
            details={"profileId": profile_id, "reason": reason},
        )
        self.profile_id = profile_id


class PaymentNotSucceeded(DomainError):
    kind = Failure.PAYMENT

    def __init__(self, reference: str, state: Optional[str] = None) -> None:
        super().__init__(
            code=ErrorCode.PAYMENT_NOT_SUCCEEDED,
            message=f"Payment could not be confirmed, please contact support with reference {reference}",
            details={"reference": reference, "paymentState": state},
        )
        self.reference = reference


class UpstreamUnavailable(DomainError):
    """La pasarela o el catálogo no respondió a tiempo. Reintentable."""

    kind = Failure.UPSTREAM

    def __init__(self, service: str, reason: str = "") -> None:
        super().__init__(
            code=ErrorCode.UPSTREAM_UNAVAILABLE,
            message=f"{service} is temporarily unavailable, please retry",
            details={"service": service},
        )
        self.reason = reason


class DuplicateIdentity(DomainError):
    kind = Failure.CONFLICT

    def __init__(self, field: str) -> None:
        super().__init__(
            code=ErrorCode.DUPLICATE_IDENTITY,
            message=f"An account with this {field} already exists",
            details={"field": field},
        )


class NotFound(DomainError):
    kind = Failure.NOT_FOUND

    def __init__(self, what: str) -> None:
        super().__init__(code=ErrorCode.NOT_FOUND, message=f"{what} not found")


class ProfileNotFound(DomainError):
    kind = Failure.NOT_FOUND

    def __init__(self, profile_id: int) -> None:
        super().__init__(code=ErrorCode.PROFILE_NOT_FOUND, message="Profile not found")
        self.profile_id = profile_id
