"""Máquina de estados de entrega: de pago confirmado a orden con snapshots.

  NoOrder -> OrderMaterializing -> OrderCompleted

confirm(reference) puede invocarse cero, una o muchas veces (refresh del
navegador, redirect reintentado, webhook duplicado) y siempre produce como
máximo una orden por referencia. El candado es la restricción única de
orders.payment_reference: el perdedor de una carrera cae al camino de lectura
y devuelve el resultado del ganador. El camino idempotente es un retorno
normal (Fulfilled con replayed=True), no una excepción.
"""

import copy
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from database import Database
from errors import ErrorCode, InvalidInput, NotFound, UpstreamUnavailable
from gateway import FAILED, PaymentGateway, decode_int_list
from models import (
    INTENT_ABANDONED,
    INTENT_FAILED,
    INTENT_FULFILLED,
    INTENT_OPEN,
    ORDER_COMPLETED,
    Buyer,
    CheckoutIntent,
    Order,
    OrderItem,
    from_cents,
    utcnow,
)
from profiles import ProfileRecord, ProfileStore

logger = structlog.get_logger(component="fulfillment")


@dataclass(frozen=True)
class Fulfilled:
    """Orden completada; replayed indica que ya existía y no se escribió nada."""
    order: Order
    items: Tuple[OrderItem, ...]
    replayed: bool = False
    ok = True


@dataclass(frozen=True)
class Rejected:
    """La referencia no puede producir una orden (p.ej. pago no exitoso)."""
    reference: str
    code: ErrorCode
    payment_state: Optional[str] = None
    ok = False


ConfirmOutcome = Union[Fulfilled, Rejected]


# split_evenly: Reparte un importe en n partes; los centavos sobrantes van a los primeros ítems.
def split_evenly(total_cents: int, n: int) -> List[int]:
    if n <= 0:
        return []
    base, remainder = divmod(total_cents, n)
    return [base + (1 if i < remainder else 0) for i in range(n)]


# serialize_order: Representación estable de una orden y sus ítems para la API.
# Con `profiles`, cada ítem lleva además la vista pública actual del perfil (None si ya no existe).
def serialize_order(order: Order, items: Sequence[OrderItem],
                    profiles: Optional[Dict[int, ProfileRecord]] = None) -> Dict[str, Any]:
    serialized_items = []
    for item in items:
        entry = {
            'id': item.id,
            'orderId': item.order_id,
            'profileId': item.profile_id,
            'priceAtPurchase': str(from_cents(item.price_cents)),
            'contactSnapshot': copy.deepcopy(item.contact_snapshot or {}),
        }
        if profiles is not None:
            record = profiles.get(item.profile_id)
            entry['profile'] = record.public_view() if record is not None else None
        serialized_items.append(entry)
    return {
        'order': {
            'id': order.id,
            'paymentReference': order.payment_reference,
            'buyerEmail': order.buyer_email,
            'buyerName': order.buyer_name,
            'totalAmount': str(from_cents(order.total_cents)),
            'currency': order.currency,
            'status': order.status,
            'createdAt': order.created_at.isoformat(),
        },
        'items': serialized_items,
    }


class FulfillmentService:
    """Confirma pagos, materializa órdenes y reconcilia checkouts abiertos."""
    def __init__(self, db: Database, profiles: ProfileStore, gateway: PaymentGateway,
                 reconcile_min_age_minutes: int = 2, checkout_ttl_hours: int = 24):
        self.db = db
        self.profiles = profiles
        self.gateway = gateway
        self.reconcile_min_age = timedelta(minutes=reconcile_min_age_minutes)
        self.checkout_ttl = timedelta(hours=checkout_ttl_hours)

    def confirm(self, reference: str) -> ConfirmOutcome:
        """Confirma una referencia de pago de forma idempotente.

        Lanza UpstreamUnavailable si la pasarela no responde (sin escribir nada);
        el llamador puede reintentar con seguridad.
        """
        reference = (reference or '').strip()
        if not reference:
            raise InvalidInput("Payment reference is required")

        # 1. Estado terminal según la pasarela.
        status = self.gateway.get_status(reference)
        if not status.succeeded:
            logger.info("payment_not_succeeded", reference=reference, state=status.state)
            if status.state == FAILED:
                self._resolve_intent(reference, INTENT_FAILED)
            return Rejected(reference=reference, code=ErrorCode.PAYMENT_NOT_SUCCEEDED, payment_state=status.state)

        # 2. Cortocircuito idempotente: sin escrituras.
        existing = self._load(reference)
        if existing is not None:
            logger.info("confirm_replayed", reference=reference, order_id=existing[0].id)
            return Fulfilled(order=existing[0], items=existing[1], replayed=True)

        profile_ids = decode_int_list(status.metadata.get('profile_ids'))
        buyer_email = status.metadata.get('buyer_email', '').strip()
        if not profile_ids or not buyer_email:
            logger.error("paid_checkout_without_items", reference=reference, metadata=status.metadata)
            self._resolve_intent(reference, INTENT_FAILED)
            return Rejected(reference=reference, code=ErrorCode.INVALID_INPUT, payment_state=status.state)

        prices = self._item_prices(reference, status.amount_cents, profile_ids,
                                   decode_int_list(status.metadata.get('item_prices')))
        snapshots = self._snapshots(reference, profile_ids)
        buyer_id = self._existing_buyer_id(status.metadata.get('buyer_id'))

        # 3 y 4. Orden + ítems en una sola transacción.
        try:
            with self.db.session() as s:
                order = Order(
                    payment_reference=reference,
                    buyer_email=buyer_email,
                    buyer_name=status.metadata.get('buyer_name') or None,
                    buyer_id=buyer_id,
                    total_cents=status.amount_cents,
                    currency=status.currency,
                    status=ORDER_COMPLETED,
                )
                s.add(order)
                s.flush()
                for profile_id, price_cents in zip(profile_ids, prices):
                    s.add(OrderItem(order_id=order.id, profile_id=profile_id, price_cents=price_cents,
                                    contact_snapshot=snapshots[profile_id]))
                intent = s.get(CheckoutIntent, reference)
                if intent is not None and intent.status != INTENT_FULFILLED:
                    intent.status = INTENT_FULFILLED
                    intent.resolved_at = utcnow()
                    s.add(intent)
                s.commit()
        except IntegrityError:
            # Otra confirmación concurrente ganó la restricción única.
            existing = self._load(reference)
            if existing is None:
                raise
            logger.info("confirm_race_lost", reference=reference, order_id=existing[0].id)
            return Fulfilled(order=existing[0], items=existing[1], replayed=True)

        order, items = self._load(reference)
        logger.info("order_fulfilled", reference=reference, order_id=order.id, items=len(items),
                    total_cents=order.total_cents)
        return Fulfilled(order=order, items=items, replayed=False)

    # ------------------------------ Lecturas ------------------------------
    def _load(self, reference: str) -> Optional[Tuple[Order, Tuple[OrderItem, ...]]]:
        with self.db.session() as s:
            order = s.exec(select(Order).where(Order.payment_reference == reference)).first()
            if order is None:
                return None
            return order, self._items(s, order.id)

    @staticmethod
    def _items(s, order_id: int) -> Tuple[OrderItem, ...]:
        return tuple(s.exec(select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)).all())

    def get_order(self, order_id: int) -> Tuple[Order, Tuple[OrderItem, ...]]:
        with self.db.session() as s:
            order = s.get(Order, order_id)
            if order is None:
                raise NotFound("Order")
            return order, self._items(s, order.id)

    def orders_for_buyer(self, buyer_id: int) -> List[Tuple[Order, Tuple[OrderItem, ...]]]:
        """Historial de un comprador autenticado, más reciente primero."""
        with self.db.session() as s:
            orders = s.exec(select(Order).where(Order.buyer_id == buyer_id).order_by(Order.id.desc())).all()
            return [(order, self._items(s, order.id)) for order in orders]

    def recent_orders(self, limit: int = 50) -> List[Order]:
        with self.db.session() as s:
            return list(s.exec(select(Order).order_by(Order.id.desc()).limit(limit)).all())

    # ------------------------------ Auxiliares ------------------------------
    def _item_prices(self, reference: str, amount_cents: int, profile_ids: List[int],
                     captured: Optional[List[int]]) -> List[int]:
        """Precios capturados en el checkout; reparto parejo del cobro si no cuadran."""
        if captured is not None and len(captured) == len(profile_ids) and sum(captured) == amount_cents:
            return captured
        logger.warning("item_price_fallback", reference=reference, amount_cents=amount_cents, captured=captured)
        return split_evenly(amount_cents, len(profile_ids))

    def _snapshots(self, reference: str, profile_ids: List[int]) -> Dict[int, Dict[str, Any]]:
        """Copia de los contactos en este momento; {} si el perfil desapareció."""
        records = self.profiles.get_profiles(profile_ids)
        snapshots = {}
        for profile_id in profile_ids:
            record = records.get(profile_id)
            if record is None:
                logger.warning("profile_missing_at_fulfillment", reference=reference, profile_id=profile_id)
                snapshots[profile_id] = {}
            else:
                snapshots[profile_id] = copy.deepcopy(record.contact_methods)
        return snapshots

    def _existing_buyer_id(self, raw: Optional[str]) -> Optional[int]:
        if not raw:
            return None
        try:
            buyer_id = int(raw)
        except ValueError:
            return None
        with self.db.session() as s:
            return buyer_id if s.get(Buyer, buyer_id) is not None else None

    def _resolve_intent(self, reference: str, status: str, now: Optional[datetime] = None):
        with self.db.session() as s:
            intent = s.get(CheckoutIntent, reference)
            if intent is None or intent.status != INTENT_OPEN:
                return
            intent.status = status
            intent.resolved_at = now or utcnow()
            s.add(intent)
            s.commit()

    # ------------------------------ Reconciliación ------------------------------
    def reconcile_open(self, now: Optional[datetime] = None) -> List[Dict[str, str]]:
        """Confirma checkouts abiertos cuyo comprador nunca volvió.

        Pagos exitosos se materializan, fallidos se cierran, pendientes viejos se
        abandonan; errores de la pasarela se reintentan en la próxima pasada.
        """
        now = now or utcnow()
        with self.db.session() as s:
            intents = s.exec(
                select(CheckoutIntent)
                .where(CheckoutIntent.status == INTENT_OPEN)
                .where(CheckoutIntent.created_at <= now - self.reconcile_min_age)
                .order_by(CheckoutIntent.created_at)
            ).all()

        actions = []
        for intent in intents:
            try:
                outcome = self.confirm(intent.reference)
            except UpstreamUnavailable:
                actions.append({'reference': intent.reference, 'action': 'retry_later'})
                continue
            if outcome.ok:
                if outcome.replayed:
                    self._resolve_intent(intent.reference, INTENT_FULFILLED, now)
                actions.append({'reference': intent.reference, 'action': 'fulfilled'})
            elif outcome.payment_state == FAILED or outcome.code != ErrorCode.PAYMENT_NOT_SUCCEEDED:
                actions.append({'reference': intent.reference, 'action': 'failed'})
            elif intent.created_at <= now - self.checkout_ttl:
                self._resolve_intent(intent.reference, INTENT_ABANDONED, now)
                actions.append({'reference': intent.reference, 'action': 'abandoned'})
            else:
                actions.append({'reference': intent.reference, 'action': 'pending'})
        if actions:
            logger.info("reconcile_pass", actions=len(actions))
        return actions


class ReconcileWorker:
    """Hilo daemon que ejecuta la reconciliación cada `interval` segundos."""
    def __init__(self, fulfillment: FulfillmentService, interval: int,
                 housekeeping: Sequence[Callable[[], Any]] = ()):
        self.fulfillment = fulfillment
        self.interval = interval
        self.housekeeping = list(housekeeping)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self.interval <= 0 or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name='reconcile-worker', daemon=True)
        self._thread.start()
        logger.info("reconcile_worker_started", interval=self.interval)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def run_once(self) -> List[Dict[str, str]]:
        actions = self.fulfillment.reconcile_open()
        for task in self.housekeeping:
            task()
        return actions

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                # El worker debe sobrevivir a un fallo puntual; se reintenta en la próxima pasada.
                logger.exception("reconcile_pass_failed")
