"""Modelos de datos persistentes.

Incluye las identidades (compradores y administradores en tablas separadas),
las sesiones de cada espacio de nombres, el catálogo mínimo de perfiles, las
órdenes con sus ítems y snapshots de contacto, favoritos, intents de checkout
y el registro de auditoría.

Los importes se guardan en unidades menores (centavos) como enteros. Las fechas
son UTC sin tzinfo y cada columna declara DateTime explícito, sin depender del
mapeo por defecto de SQLModel.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
from sqlmodel import SQLModel, Field

BUYER = 'buyer'
ADMIN = 'admin'
SUPERADMIN = 'superadmin'
ADMIN_ROLES = (ADMIN, SUPERADMIN)

# Mayor id que cabe en un INTEGER de SQLite (64 bits con signo).
MAX_ID = 2 ** 63 - 1

ORDER_COMPLETED = 'completed'

INTENT_OPEN = 'open'
INTENT_FULFILLED = 'fulfilled'
INTENT_FAILED = 'failed'
INTENT_ABANDONED = 'abandoned'


# utcnow: Marca de tiempo UTC sin tzinfo (la forma en que se guarda en la base).
def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# to_cents: Convierte un importe decimal a unidades menores redondeando half-up.
def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


# from_cents: Convierte unidades menores a Decimal con dos posiciones.
def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal('0.01'))


class Buyer(SQLModel, table=True):
    """Comprador autenticable del front-end.

    Nunca puede convertirse en administrador: no hay columna de rol.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    username: str = Field(index=True, unique=True)
    password_hash: str
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    last_login_at: Optional[datetime] = Field(default=None, sa_type=DateTime)


class AdminUser(SQLModel, table=True):
    """Administrador del panel.

    Campos:
      role: admin | superadmin. Solo cambia vía la operación de cambio de rol.
    """
    __tablename__ = 'admin_user'

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    role: str = Field(default=ADMIN, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    last_login_at: Optional[datetime] = Field(default=None, sa_type=DateTime)


class BuyerSession(SQLModel, table=True):
    """Sesión opaca de comprador con expiración deslizante."""
    __tablename__ = 'buyer_session'

    token: str = Field(primary_key=True)
    buyer_id: int = Field(foreign_key='buyer.id', index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    expires_at: datetime = Field(sa_type=DateTime)
    last_activity_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class AdminSession(SQLModel, table=True):
    """Sesión opaca de administrador con expiración fija y IP registrada."""
    __tablename__ = 'admin_session'

    token: str = Field(primary_key=True)
    admin_id: int = Field(foreign_key='admin_user.id', index=True)
    role: str
    ip_address: str = Field(default='unknown')
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    expires_at: datetime = Field(sa_type=DateTime)
    last_activity_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Profile(SQLModel, table=True):
    """Perfil publicado; contact_methods es el dato privado que se vende."""
    id: Optional[int] = Field(default=None, primary_key=True)
    display_name: str
    price_cents: int = Field(default=200)
    is_approved: bool = Field(default=False, index=True)
    contact_methods: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Order(SQLModel, table=True):
    """Orden materializada solo cuando la pasarela confirma el pago.

    payment_reference es único: es el candado que serializa confirmaciones
    concurrentes de la misma referencia.
    """
    __tablename__ = 'orders'

    id: Optional[int] = Field(default=None, primary_key=True)
    payment_reference: str = Field(index=True, unique=True)
    buyer_email: str = Field(index=True)
    buyer_name: Optional[str] = None
    buyer_id: Optional[int] = Field(default=None, foreign_key='buyer.id', index=True)
    total_cents: int
    currency: str = Field(default='usd')
    status: str = Field(default=ORDER_COMPLETED)  # completed: solo se materializan órdenes pagadas
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class OrderItem(SQLModel, table=True):
    """Ítem de orden con copia inmutable de los contactos al momento de la compra."""
    __tablename__ = 'order_item'

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key='orders.id', index=True)
    profile_id: int = Field(index=True)
    price_cents: int
    contact_snapshot: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class Favorite(SQLModel, table=True):
    """Perfil guardado por un comprador; único por (buyer_id, profile_id)."""
    __table_args__ = (UniqueConstraint('buyer_id', 'profile_id', name='uq_favorite_buyer_profile'),)

    id: Optional[int] = Field(default=None, primary_key=True)
    buyer_id: int = Field(foreign_key='buyer.id', index=True)
    # Sin FK: el perfil vive en el ProfileStore inyectado, que puede ser externo.
    profile_id: int = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class CheckoutIntent(SQLModel, table=True):
    """Checkout abierto en la pasarela, usado solo por la reconciliación.

    No es una orden: nunca se entrega contacto a partir de esta fila.
    """
    __tablename__ = 'checkout_intent'

    reference: str = Field(primary_key=True)
    buyer_email: str
    amount_cents: int
    status: str = Field(default=INTENT_OPEN, index=True)  # open | fulfilled | failed | abandoned
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    resolved_at: Optional[datetime] = Field(default=None, sa_type=DateTime)


class AuditEvent(SQLModel, table=True):
    """Registro de auditoría: rechazos del guard y actividad administrativa."""
    __tablename__ = 'audit_event'

    id: Optional[int] = Field(default=None, primary_key=True)
    occurred_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)
    action: str = Field(index=True)
    outcome: str  # denied | success | failure
    actor_kind: Optional[str] = None
    actor_id: Optional[int] = None
    operation: Optional[str] = None
    ip_address: str = Field(default='unknown')
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


ANONYMOUS = 'anonymous'


@dataclass(frozen=True)
class Principal:
    """Identidad resuelta de una petición.

    kind: anonymous | buyer | admin | superadmin. Un principal de comprador solo
    se construye desde buyer_session y uno de admin solo desde admin_session.
    """
    kind: str
    id: Optional[int] = None
    name: Optional[str] = None
    email: Optional[str] = None
    token: Optional[str] = field(default=None, repr=False, compare=False)

    @property
    def is_buyer(self) -> bool:
        return self.kind == BUYER

    @property
    def is_superadmin(self) -> bool:
        return self.kind == SUPERADMIN


ANONYMOUS_PRINCIPAL = Principal(kind=ANONYMOUS)
