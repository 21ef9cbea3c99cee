"""Orquestador de checkout.

Recibe el carrito (ids de perfil y un total reclamado por el cliente que solo
es informativo), vuelve a leer precios autoritativos y abre la sesión en la
pasarela. No crea órdenes: solo deja un checkout_intent para reconciliación.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

import structlog

from database import Database
from errors import InvalidInput, ProfileUnavailable
from gateway import PaymentGateway, encode_metadata
from models import MAX_ID, CheckoutIntent, from_cents, to_cents
from profiles import ProfileStore

logger = structlog.get_logger(component="checkout")


@dataclass(frozen=True)
class CheckoutHandle:
    """Resultado de abrir un checkout: redirección y referencia de pago."""
    redirect_handle: str
    reference: str
    amount: Decimal
    currency: str
    profile_ids: tuple


class CheckoutOrchestrator:
    """Valida el carrito contra el catálogo y abre la sesión de pago."""
    def __init__(self, db: Database, profiles: ProfileStore, gateway: PaymentGateway, currency: str = 'usd'):
        self.db = db
        self.profiles = profiles
        self.gateway = gateway
        self.currency = currency

    def open_checkout(self, buyer_email: str, profile_ids: List[int], buyer_name: Optional[str] = None,
                      buyer_id: Optional[int] = None, claimed_total: Optional[Decimal] = None) -> CheckoutHandle:
        """Abre un checkout cobrando la suma de precios autoritativos.

        Falla con ProfileUnavailable (indicando el id) si algún perfil no
        existe o no está aprobado; no se descartan ítems en silencio.
        """
        if not buyer_email:
            raise InvalidInput("Buyer email is required")
        ids = _dedupe(profile_ids)
        if not ids:
            raise InvalidInput("Cart is empty")

        # 1. Re-leer precio y aprobación de cada perfil.
        records = self.profiles.get_profiles(ids)
        prices = []
        for profile_id in ids:
            record = records.get(profile_id)
            if record is None:
                logger.info("checkout_rejected", profile_id=profile_id, reason='missing')
                raise ProfileUnavailable(profile_id, 'missing')
            if not record.is_approved:
                logger.info("checkout_rejected", profile_id=profile_id, reason='not_approved')
                raise ProfileUnavailable(profile_id, 'not_approved')
            prices.append(record.price_cents)

        # 2. Total autoritativo; el total del cliente se ignora.
        total_cents = sum(prices)
        if claimed_total is not None and to_cents(claimed_total) != total_cents:
            logger.warning("claimed_total_mismatch", claimed_cents=to_cents(claimed_total), total_cents=total_cents)

        # 3. Sesión de pago con precios por ítem capturados ahora.
        metadata = encode_metadata(buyer_email, ids, prices, buyer_name=buyer_name, buyer_id=buyer_id)
        line_items = [(f"Profile #{pid}", cents) for pid, cents in zip(ids, prices)]
        session = self.gateway.create_session(total_cents, self.currency, metadata, line_items=line_items)

        # 4. Sin orden todavía; el intent solo alimenta la reconciliación.
        with self.db.session() as s:
            s.add(CheckoutIntent(reference=session.reference, buyer_email=buyer_email, amount_cents=total_cents))
            s.commit()

        logger.info("checkout_opened", reference=session.reference, items=len(ids), total_cents=total_cents)
        return CheckoutHandle(
            redirect_handle=session.redirect_handle,
            reference=session.reference,
            amount=from_cents(total_cents),
            currency=self.currency,
            profile_ids=tuple(ids),
        )


# _dedupe: Quita ids repetidos conservando el orden; rechaza ids fuera de 1..MAX_ID.
def _dedupe(profile_ids: List[int]) -> List[int]:
    seen = set()
    ids = []
    for raw in profile_ids or []:
        try:
            profile_id = int(raw)
        except (TypeError, ValueError):
            raise InvalidInput(f"Invalid profile id: {raw!r}")
        if profile_id <= 0 or profile_id > MAX_ID:
            raise InvalidInput(f"Invalid profile id: {raw!r}")
        if profile_id not in seen:
            seen.add(profile_id)
            ids.append(profile_id)
    return ids
