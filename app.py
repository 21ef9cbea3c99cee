"""Aplicación FastAPI: autenticación, checkout, entrega de contactos y favoritos.

Los servicios se construyen en create_app y se guardan en app.state; el guard
recibe los registros de sesión por inyección. Ejecutar con:

    uvicorn app:create_app --factory
"""

from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Path, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, conint

from audit import AuditTrail
from checkout import CheckoutOrchestrator
from config import Settings, get_settings
from credentials import CredentialStore
from database import Database
from errors import (
    DomainError,
    Failure,
    ForbiddenOperation,
    InvalidCredentials,
    NotFound,
    PaymentNotSucceeded,
)
from favorites import FavoritesLedger
from fulfillment import FulfillmentService, ReconcileWorker, serialize_order
from gateway import HttpPaymentGateway, PaymentGateway
from guard import (
    ADMIN_COOKIE,
    BUYER_COOKIE,
    AuthGuard,
    admin_only,
    bearer_token,
    buyer_only,
    buyer_optional,
    client_ip,
    superadmin_only,
)
from logs import configure_logging
from models import MAX_ID, SUPERADMIN, AdminUser, AuditEvent, Buyer, Principal
from profiles import ProfileStore, SqlProfileStore
from security import PasswordHasher
from sessions import AdminSessionRegistry, BuyerSessionRegistry

logger = structlog.get_logger(component="api")
router = APIRouter()

# Ids de entidad acotados al rango de un INTEGER de SQLite: fuera de rango es 422, no 500.
EntityId = conint(gt=0, le=MAX_ID)
PathId = Annotated[int, Path(gt=0, le=MAX_ID)]

# ---------------------------- Schemas ----------------------------
class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterPayload(_Payload):
    """Payload de registro de compradores."""
    email: EmailStr
    username: str = Field(min_length=3, max_length=64)
    password: str = Field(min_length=1, max_length=256)


class LoginPayload(_Payload):
    """Payload de inicio de sesión de compradores."""
    email: EmailStr
    password: str = Field(min_length=1, max_length=256)


class AdminLoginPayload(_Payload):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=256)


class CheckoutPayload(_Payload):
    """Carrito: ids de perfil y un total reclamado que solo es informativo."""
    buyer_email: EmailStr = Field(alias='buyerEmail')
    buyer_name: Optional[str] = Field(default=None, alias='buyerName', max_length=200)
    profile_ids: List[EntityId] = Field(alias='profileIds')
    claimed_total: Optional[Decimal] = Field(default=None, alias='claimedTotal')


class ConfirmPayload(_Payload):
    payment_reference: str = Field(alias='paymentReference', min_length=1, max_length=255)


class WebhookPayload(_Payload):
    reference: str = Field(min_length=1, max_length=255)


class ProfileModerationPayload(_Payload):
    price: Optional[Decimal] = Field(default=None, ge=0)
    is_approved: Optional[bool] = Field(default=None, alias='isApproved')
    contact_methods: Optional[Dict[str, Any]] = Field(default=None, alias='contactMethods')


class AdminCreatePayload(_Payload):
    username: str = Field(min_length=3, max_length=64)
    email: EmailStr
    password: str = Field(min_length=1, max_length=256)
    role: Literal['admin', 'superadmin'] = 'admin'


class AdminUpdatePayload(_Payload):
    """Edición de perfil de un admin; el rol no se cambia aquí."""
    username: Optional[str] = Field(default=None, min_length=3, max_length=64)
    email: Optional[EmailStr] = None
    is_active: Optional[bool] = Field(default=None, alias='isActive')


class RoleChangePayload(_Payload):
    role: Literal['admin', 'superadmin']


# ----------------------- Error mapping -----------------------
_STATUS_BY_KIND = {
    Failure.AUTHENTICATION: status.HTTP_401_UNAUTHORIZED,
    Failure.AUTHORIZATION: status.HTTP_403_FORBIDDEN,
    Failure.VALIDATION: status.HTTP_400_BAD_REQUEST,
    Failure.UPSTREAM: status.HTTP_503_SERVICE_UNAVAILABLE,
    Failure.CONFLICT: status.HTTP_409_CONFLICT,
    Failure.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    Failure.PAYMENT: status.HTTP_402_PAYMENT_REQUIRED,
}


async def handle_domain_error(request: Request, exc: DomainError):
    """Traduce errores de dominio a respuestas HTTP sin detalles internos."""
    body = {'error': exc.code.value, 'kind': exc.kind.value, 'message': exc.message}
    body.update(exc.details)
    return JSONResponse(status_code=_STATUS_BY_KIND.get(exc.kind, 400), content=body)


# ----------------------- Helpers -----------------------
def _buyer_public(buyer: Buyer) -> Dict[str, Any]:
    return {'id': buyer.id, 'email': buyer.email, 'username': buyer.username,
            'createdAt': buyer.created_at.isoformat()}


def _admin_public(admin: AdminUser) -> Dict[str, Any]:
    return {
        'id': admin.id,
        'username': admin.username,
        'email': admin.email,
        'role': admin.role,
        'isActive': admin.is_active,
        'lastLoginAt': admin.last_login_at.isoformat() if admin.last_login_at else None,
    }


def _audit_public(event: AuditEvent) -> Dict[str, Any]:
    return {
        'id': event.id,
        'occurredAt': event.occurred_at.isoformat(),
        'action': event.action,
        'outcome': event.outcome,
        'actorKind': event.actor_kind,
        'actorId': event.actor_id,
        'operation': event.operation,
        'ipAddress': event.ip_address,
        'details': event.details,
    }


# _order_view: Orden serializada con la vista pública actual de cada perfil comprado.
def _order_view(st, order, items) -> Dict[str, Any]:
    profiles = st.profiles.get_profiles([item.profile_id for item in items])
    return serialize_order(order, items, profiles=profiles)


def _set_session_cookie(response: Response, name: str, token: str, max_age: int, settings: Settings,
                        samesite: str = 'lax') -> None:
    response.set_cookie(key=name, value=token, max_age=max_age, httponly=True,
                        secure=settings.cookie_secure, samesite=samesite, path='/')


# --------------------------- Buyer Auth Routes -------------------------
@router.post('/auth/register', status_code=status.HTTP_201_CREATED)
def register(payload: RegisterPayload, request: Request, response: Response):
    """Registra un comprador y abre su sesión."""
    st = request.app.state
    buyer = st.credentials.create_buyer(payload.email, payload.username, payload.password)
    token = st.buyer_sessions.issue(buyer.id)
    _set_session_cookie(response, BUYER_COOKIE, token, st.settings.buyer_session_ttl_seconds, st.settings)
    return {'sessionToken': token, 'buyer': _buyer_public(buyer)}


@router.post('/auth/login')
def login(payload: LoginPayload, request: Request, response: Response):
    """Autentica al comprador; el error no revela si el email existe."""
    st = request.app.state
    buyer = st.credentials.verify_buyer(payload.email, payload.password)
    token = st.buyer_sessions.issue(buyer.id)
    _set_session_cookie(response, BUYER_COOKIE, token, st.settings.buyer_session_ttl_seconds, st.settings)
    return {'sessionToken': token, 'buyer': _buyer_public(buyer)}


@router.post('/auth/logout')
def logout(request: Request, response: Response):
    """Revoca la sesión actual del comprador si existe; siempre 200."""
    token = bearer_token(request) or request.cookies.get(BUYER_COOKIE)
    if token:
        request.app.state.buyer_sessions.revoke(token)
    response.delete_cookie(BUYER_COOKIE, path='/')
    return {'success': True}


@router.get('/auth/me')
def me(request: Request, principal: Principal = Depends(buyer_only('auth.me'))):
    buyer = request.app.state.credentials.get_buyer(principal.id)
    return _buyer_public(buyer)


# ----------------------- Checkout & Fulfillment -------------------
@router.post('/checkout')
def open_checkout(payload: CheckoutPayload, request: Request,
                  principal: Principal = Depends(buyer_optional('checkout.open'))):
    """Abre la sesión de pago cobrando precios autoritativos."""
    handle = request.app.state.checkout.open_checkout(
        buyer_email=payload.buyer_email,
        profile_ids=payload.profile_ids,
        buyer_name=payload.buyer_name,
        buyer_id=principal.id if principal.is_buyer else None,
        claimed_total=payload.claimed_total,
    )
    return {
        'redirectHandle': handle.redirect_handle,
        'reference': handle.reference,
        'amount': str(handle.amount),
        'currency': handle.currency,
    }


@router.post('/checkout/confirm')
def confirm_checkout(payload: ConfirmPayload, request: Request,
                     principal: Principal = Depends(buyer_optional('checkout.confirm'))):
    """Confirma el pago y entrega los contactos; idempotente por referencia.

    Es un endpoint síncrono: corre en un hilo del servidor que no se cancela si
    el cliente se desconecta, así que una confirmación iniciada termina.
    """
    outcome = request.app.state.fulfillment.confirm(payload.payment_reference)
    if not outcome.ok:
        raise PaymentNotSucceeded(outcome.reference, outcome.payment_state)
    return _order_view(request.app.state, outcome.order, outcome.items)


@router.post('/checkout/webhook')
def checkout_webhook(payload: WebhookPayload, request: Request):
    """Callback de la pasarela. Solo se usa la referencia: el estado se vuelve a consultar."""
    outcome = request.app.state.fulfillment.confirm(payload.reference)
    return {'received': True, 'fulfilled': outcome.ok}


@router.get('/orders')
def list_orders(request: Request, principal: Principal = Depends(buyer_only('orders.list'))):
    rows = request.app.state.fulfillment.orders_for_buyer(principal.id)
    return [_order_view(request.app.state, order, items) for order, items in rows]


@router.get('/orders/{order_id}')
def get_order(order_id: PathId, request: Request, principal: Principal = Depends(buyer_only('orders.get'))):
    st = request.app.state
    order, items = st.fulfillment.get_order(order_id)
    if order.buyer_id != principal.id:
        st.audit.record_denial('orders.get', client_ip(request), reason='not_order_owner',
                               actor_kind=principal.kind, actor_id=principal.id, details={'orderId': order_id})
        raise ForbiddenOperation("Access denied")
    return _order_view(st, order, items)


# --------------------------- Favorites ---------------------------
@router.get('/favorites')
def list_favorites(request: Request, principal: Principal = Depends(buyer_only('favorites.list'))):
    return request.app.state.favorites.list(principal.id)


@router.post('/favorites/{profile_id}')
def add_favorite(profile_id: PathId, request: Request, principal: Principal = Depends(buyer_only('favorites.add'))):
    favorite = request.app.state.favorites.add(principal.id, profile_id)
    return {'favoriteId': favorite.id, 'profileId': favorite.profile_id, 'createdAt': favorite.created_at.isoformat()}


@router.delete('/favorites/{profile_id}')
def remove_favorite(profile_id: PathId, request: Request,
                    principal: Principal = Depends(buyer_only('favorites.remove'))):
    removed = request.app.state.favorites.remove(principal.id, profile_id)
    return {'removed': removed}


@router.get('/favorites/{profile_id}/status')
def favorite_status(profile_id: PathId, request: Request,
                    principal: Principal = Depends(buyer_only('favorites.status'))):
    return {'isFavorited': request.app.state.favorites.is_favorited(principal.id, profile_id)}


# --------------------------- Admin Auth ---------------------------
@router.post('/admin/auth/login')
def admin_login(payload: AdminLoginPayload, request: Request, response: Response):
    """Login del panel (admin y super admin). La sesión queda atada a la IP."""
    st = request.app.state
    ip = client_ip(request)
    try:
        admin = st.credentials.verify_admin(payload.username, payload.password)
    except InvalidCredentials:
        st.audit.record_activity('admin_login', actor_kind=None, actor_id=None, ip_address=ip,
                                 outcome='failure', details={'username': payload.username})
        raise
    token = st.admin_sessions.issue(admin.id, admin.role, ip)
    st.audit.record_activity('admin_login', actor_kind=admin.role, actor_id=admin.id, ip_address=ip)
    _set_session_cookie(response, ADMIN_COOKIE, token, st.settings.admin_session_ttl_seconds, st.settings,
                        samesite='strict')
    return {'sessionToken': token, 'admin': _admin_public(admin)}


@router.post('/admin/auth/logout')
def admin_logout(request: Request, response: Response):
    token = bearer_token(request) or request.cookies.get(ADMIN_COOKIE)
    if token:
        request.app.state.admin_sessions.revoke(token)
    response.delete_cookie(ADMIN_COOKIE, path='/')
    return {'success': True}


@router.get('/admin/auth/me')
def admin_me(request: Request, principal: Principal = Depends(admin_only('admin.me'))):
    return _admin_public(request.app.state.credentials.get_admin(principal.id))


# --------------------------- Admin Operations ---------------------------
@router.get('/admin/orders')
def admin_orders(request: Request, limit: int = Query(50, ge=1, le=500),
                 principal: Principal = Depends(admin_only('admin.orders'))):
    orders = request.app.state.fulfillment.recent_orders(limit)
    return [serialize_order(order, ())['order'] for order in orders]


@router.patch('/admin/profiles/{profile_id}')
def moderate_profile(profile_id: PathId, payload: ProfileModerationPayload, request: Request,
                     principal: Principal = Depends(admin_only('admin.profiles.update'))):
    """Moderación de perfiles: aprobación, precio y contactos."""
    st = request.app.state
    record = st.profiles.update_profile(profile_id, price=payload.price, is_approved=payload.is_approved,
                                        contact_methods=payload.contact_methods)
    st.audit.record_activity('profile_moderated', actor_kind=principal.kind, actor_id=principal.id,
                             ip_address=client_ip(request),
                             details={'profileId': profile_id,
                                      'fields': sorted(payload.model_dump(exclude_none=True).keys())})
    return record.public_view()


@router.post('/admin/reconcile')
def reconcile(request: Request, principal: Principal = Depends(admin_only('admin.reconcile'))):
    """Ejecuta una pasada de reconciliación de checkouts abiertos."""
    actions = request.app.state.fulfillment.reconcile_open()
    return {'performed': actions}


# --------------------------- Admin Buyer Views ---------------------------
def _require_buyer_record(st, buyer_id: int) -> Buyer:
    buyer = st.credentials.get_buyer(buyer_id)
    if buyer is None:
        raise NotFound("Buyer")
    return buyer


@router.get('/admin/buyers')
def admin_buyers(request: Request, limit: int = Query(100, ge=1, le=500), offset: int = Query(0, ge=0),
                 principal: Principal = Depends(admin_only('admin.buyers.list'))):
    """Listado de compradores para soporte; nunca incluye hashes."""
    buyers = request.app.state.credentials.list_buyers(limit=limit, offset=offset)
    return [
        dict(_buyer_public(b), isActive=b.is_active,
             lastLoginAt=b.last_login_at.isoformat() if b.last_login_at else None)
        for b in buyers
    ]


@router.get('/admin/buyers/{buyer_id}/orders')
def admin_buyer_orders(buyer_id: PathId, request: Request,
                       principal: Principal = Depends(admin_only('admin.buyers.orders'))):
    st = request.app.state
    _require_buyer_record(st, buyer_id)
    return [_order_view(st, order, items) for order, items in st.fulfillment.orders_for_buyer(buyer_id)]


@router.get('/admin/buyers/{buyer_id}/favorites')
def admin_buyer_favorites(buyer_id: PathId, request: Request,
                          principal: Principal = Depends(admin_only('admin.buyers.favorites'))):
    st = request.app.state
    _require_buyer_record(st, buyer_id)
    return st.favorites.list(buyer_id)


# --------------------------- Admin Management (super admin) ---------------------------
@router.get('/admin/admins')
def list_admins(request: Request, principal: Principal = Depends(superadmin_only('admin.admins.list'))):
    return [_admin_public(a) for a in request.app.state.credentials.list_admins()]


@router.post('/admin/admins', status_code=status.HTTP_201_CREATED)
def create_admin(payload: AdminCreatePayload, request: Request,
                 principal: Principal = Depends(superadmin_only('admin.admins.create'))):
    st = request.app.state
    admin = st.credentials.create_admin(payload.username, payload.email, payload.password, payload.role)
    st.audit.record_activity('admin_created', actor_kind=principal.kind, actor_id=principal.id,
                             ip_address=client_ip(request),
                             details={'adminId': admin.id, 'username': admin.username, 'role': admin.role})
    return _admin_public(admin)


@router.patch('/admin/admins/{admin_id}')
def update_admin(admin_id: PathId, payload: AdminUpdatePayload, request: Request,
                 principal: Principal = Depends(superadmin_only('admin.admins.update'))):
    st = request.app.state
    if admin_id == principal.id and payload.is_active is False:
        raise ForbiddenOperation("Cannot deactivate your own admin account")
    admin = st.credentials.update_admin(admin_id, username=payload.username, email=payload.email,
                                        is_active=payload.is_active)
    if payload.is_active is False:
        st.admin_sessions.revoke_all_for(admin_id)
    st.audit.record_activity('admin_updated', actor_kind=principal.kind, actor_id=principal.id,
                             ip_address=client_ip(request),
                             details={'adminId': admin_id,
                                      'fields': sorted(payload.model_dump(exclude_none=True).keys())})
    return _admin_public(admin)


@router.put('/admin/admins/{admin_id}/role')
def change_admin_role(admin_id: PathId, payload: RoleChangePayload, request: Request,
                      principal: Principal = Depends(superadmin_only('admin.admins.role'))):
    """Cambio de rol: operación separada de la edición de perfil."""
    st = request.app.state
    admin = st.credentials.change_admin_role(principal, admin_id, payload.role)
    if admin_id != principal.id:
        st.admin_sessions.revoke_all_for(admin_id)
    st.audit.record_activity('admin_role_changed', actor_kind=principal.kind, actor_id=principal.id,
                             ip_address=client_ip(request), details={'adminId': admin_id, 'role': payload.role})
    return _admin_public(admin)


@router.delete('/admin/admins/{admin_id}')
def delete_admin(admin_id: PathId, request: Request,
                 principal: Principal = Depends(superadmin_only('admin.admins.delete'))):
    st = request.app.state
    admin = st.credentials.delete_admin(principal, admin_id, revoke_sessions=st.admin_sessions.revoke_all_for)
    st.audit.record_activity('admin_deleted', actor_kind=principal.kind, actor_id=principal.id,
                             ip_address=client_ip(request), details={'adminId': admin_id, 'username': admin.username})
    return {'success': True}


@router.get('/admin/audit')
def audit_log(request: Request, limit: int = Query(100, ge=1, le=1000), action: Optional[str] = None,
              principal: Principal = Depends(superadmin_only('admin.audit'))):
    return [_audit_public(e) for e in request.app.state.audit.recent(limit, action)]


# -------------------------- Utility ------------------------------
@router.get('/health')
def health(request: Request):
    """Verificación básica de salud."""
    return {'status': 'ok', 'database': request.app.state.db.url.split(':', 1)[0]}


# -------------------------- Factory ------------------------------
def _seed_superadmin(settings: Settings, credentials: CredentialStore):
    """Crea el super admin inicial si hay credenciales configuradas y no existe ningún admin."""
    if not (settings.superadmin_username and settings.superadmin_password):
        return
    if credentials.count_admins() > 0:
        return
    email = settings.superadmin_email or f"{settings.superadmin_username}@localhost"
    admin = credentials.create_admin(settings.superadmin_username, email, settings.superadmin_password, SUPERADMIN)
    logger.info("superadmin_seeded", admin_id=admin.id)


def create_app(settings: Optional[Settings] = None, gateway: Optional[PaymentGateway] = None,
               profile_store: Optional[ProfileStore] = None, database: Optional[Database] = None) -> FastAPI:
    """Construye la aplicación con sus dependencias (inyectables en tests)."""
    settings = settings or get_settings()
    configure_logging(settings)

    db = database or Database(settings.database_url)
    db.init()
    audit = AuditTrail(db)
    credentials = CredentialStore(db, PasswordHasher(settings.bcrypt_rounds), settings.min_password_length)
    buyer_sessions = BuyerSessionRegistry(db, settings.buyer_session_ttl_seconds)
    admin_sessions = AdminSessionRegistry(db, settings.admin_session_ttl_seconds, bind_ip=settings.admin_bind_ip)
    profiles = profile_store or SqlProfileStore(db)
    gateway = gateway or HttpPaymentGateway.from_settings(settings)
    fulfillment = FulfillmentService(db, profiles, gateway,
                                     reconcile_min_age_minutes=settings.reconcile_min_age_minutes,
                                     checkout_ttl_hours=settings.checkout_ttl_hours)
    worker = ReconcileWorker(fulfillment, settings.reconcile_interval,
                             housekeeping=[buyer_sessions.purge_expired, admin_sessions.purge_expired])

    app = FastAPI(title="Contact Reveal Marketplace API", version="0.1.0")
    app.state.settings = settings
    app.state.db = db
    app.state.audit = audit
    app.state.credentials = credentials
    app.state.buyer_sessions = buyer_sessions
    app.state.admin_sessions = admin_sessions
    app.state.profiles = profiles
    app.state.gateway = gateway
    app.state.guard = AuthGuard(buyer_sessions, admin_sessions, credentials, audit)
    app.state.checkout = CheckoutOrchestrator(db, profiles, gateway, currency=settings.currency)
    app.state.fulfillment = fulfillment
    app.state.favorites = FavoritesLedger(db, profiles)
    app.state.reconcile_worker = worker

    app.add_exception_handler(DomainError, handle_domain_error)
    app.include_router(router)

    _seed_superadmin(settings, credentials)

    @app.on_event("startup")
    def on_startup():
        """Arranca el worker de reconciliación si está habilitado."""
        worker.start()

    @app.on_event("shutdown")
    def on_shutdown():
        worker.stop()

    return app
