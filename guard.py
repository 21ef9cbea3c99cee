"""Guard de autenticación por petición.

Resuelve el token de la petición a un principal y aplica la partición de roles:

  Unauthenticated -> Resolving -> Authenticated(Buyer)
                               -> Authenticated(Admin | SuperAdmin)
                               -> Rejected

Un token del espacio de admins presentado a una operación de comprador se
rechaza con AdminAccessDenied (y simétricamente BuyerAccessDenied). Todo
rechazo queda en el registro de auditoría con IP y operación intentada.
"""

from typing import Optional

import structlog
from fastapi import Request

from audit import AuditTrail
from credentials import CredentialStore
from errors import (
    AdminAccessDenied,
    AuthenticationError,
    AuthenticationRequired,
    BuyerAccessDenied,
    SessionNotFound,
    SuperAdminRequired,
)
from models import ANONYMOUS_PRINCIPAL, BUYER, Principal
from sessions import AdminSessionRegistry, BuyerSessionRegistry

logger = structlog.get_logger(component="guard")

BUYER_COOKIE = 'buyer_session'
ADMIN_COOKIE = 'admin_session'


# client_ip: IP de origen tal como la ve el servidor.
def client_ip(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return 'unknown'


# bearer_token: Extrae el token de "Authorization: Bearer <token>".
def bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get('Authorization') or ''
    if auth_header.lower().startswith('bearer '):
        token = auth_header[7:].strip()
        return token or None
    return None


class AuthGuard:
    """Resuelve principales con los registros de sesión inyectados."""
    def __init__(self, buyer_sessions: BuyerSessionRegistry, admin_sessions: AdminSessionRegistry,
                 credentials: CredentialStore, audit: AuditTrail):
        self.buyer_sessions = buyer_sessions
        self.admin_sessions = admin_sessions
        self.credentials = credentials
        self.audit = audit

    # ------------------------------ Buyers ------------------------------
    def require_buyer(self, request: Request, operation: str) -> Principal:
        """Solo compradores. Admin token -> AdminAccessDenied; sin sesión -> 401."""
        return self._buyer(request, operation, optional=False)

    def optional_buyer(self, request: Request, operation: str) -> Principal:
        """Tolera ausencia o invalidez del token, pero nunca un token de admin."""
        return self._buyer(request, operation, optional=True)

    def _buyer(self, request: Request, operation: str, optional: bool) -> Principal:
        ip = client_ip(request)
        bearer = bearer_token(request)
        buyer_token = bearer or request.cookies.get(BUYER_COOKIE)
        admin_token = bearer or request.cookies.get(ADMIN_COOKIE)

        failure: AuthenticationError = AuthenticationRequired()
        if buyer_token:
            try:
                session = self.buyer_sessions.resolve(buyer_token)
            except AuthenticationError as exc:
                failure = exc
            else:
                buyer = self.credentials.get_buyer(session.buyer_id)
                if buyer is not None and buyer.is_active:
                    return Principal(kind=BUYER, id=buyer.id, name=buyer.username,
                                     email=buyer.email, token=buyer_token)
                # Sesión que apunta a un comprador borrado o inactivo.
                self.buyer_sessions.revoke(buyer_token)
                failure = SessionNotFound()

        if admin_token and self.admin_sessions.contains(admin_token):
            self.audit.record_denial(operation, ip, reason='admin_token_on_buyer_operation',
                                     actor_kind='admin')
            raise AdminAccessDenied()

        if optional:
            if buyer_token:
                logger.debug("stale_token_treated_as_anonymous", operation=operation, reason=failure.code.value)
            return ANONYMOUS_PRINCIPAL
        self.audit.record_denial(operation, ip, reason=failure.code.value)
        raise failure

    # ------------------------------ Admins ------------------------------
    def require_admin(self, request: Request, operation: str, superadmin: bool = False) -> Principal:
        """Solo admins (o solo super admins). Buyer token -> BuyerAccessDenied."""
        ip = client_ip(request)
        bearer = bearer_token(request)
        admin_token = bearer or request.cookies.get(ADMIN_COOKIE)
        buyer_token = bearer or request.cookies.get(BUYER_COOKIE)

        failure: AuthenticationError = AuthenticationRequired()
        if admin_token:
            try:
                session = self.admin_sessions.resolve(admin_token, ip)
            except AuthenticationError as exc:
                failure = exc
            else:
                admin = self.credentials.get_admin(session.admin_id)
                if admin is not None and admin.is_active and admin.role == session.role:
                    principal = Principal(kind=admin.role, id=admin.id, name=admin.username,
                                          email=admin.email, token=admin_token)
                    if superadmin and not principal.is_superadmin:
                        self.audit.record_denial(operation, ip, reason='superadmin_required',
                                                 actor_kind=principal.kind, actor_id=principal.id)
                        raise SuperAdminRequired()
                    return principal
                # Admin borrado, desactivado o con rol cambiado: re-autenticación obligatoria.
                self.admin_sessions.revoke(admin_token)
                failure = SessionNotFound()

        if buyer_token and self.buyer_sessions.contains(buyer_token):
            self.audit.record_denial(operation, ip, reason='buyer_token_on_admin_operation',
                                     actor_kind='buyer')
            raise BuyerAccessDenied()

        self.audit.record_denial(operation, ip, reason=failure.code.value)
        raise failure


# ------------------------- FastAPI dependencies -------------------------

def buyer_only(operation: str):
    """Dependencia FastAPI para operaciones exclusivas de compradores."""
    def dependency(request: Request) -> Principal:
        return request.app.state.guard.require_buyer(request, operation)
    return dependency


def buyer_optional(operation: str):
    def dependency(request: Request) -> Principal:
        return request.app.state.guard.optional_buyer(request, operation)
    return dependency


def admin_only(operation: str):
    def dependency(request: Request) -> Principal:
        return request.app.state.guard.require_admin(request, operation)
    return dependency


def superadmin_only(operation: str):
    def dependency(request: Request) -> Principal:
        return request.app.state.guard.require_admin(request, operation, superadmin=True)
    return dependency
