"""Almacén de perfiles (colaborador externo del núcleo).

El núcleo solo necesita leer precio, aprobación y el paquete de contactos de un
perfil. ProfileStore define ese contrato; SqlProfileStore lo implementa sobre
la tabla profile. La moderación (aprobar, cambiar precio o contactos) pasa por
el espacio de administradores.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlmodel import select

from database import Database
from errors import InvalidInput, ProfileNotFound
from models import Profile, from_cents, to_cents, utcnow

logger = structlog.get_logger(component="profiles")


@dataclass(frozen=True)
class ProfileRecord:
    """Vista de un perfil tal como la consume el núcleo."""
    id: int
    display_name: str
    price: Decimal
    is_approved: bool
    contact_methods: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def price_cents(self) -> int:
        return to_cents(self.price)

    # public_view: Datos mostrables sin los contactos privados.
    def public_view(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'displayName': self.display_name,
            'price': str(self.price),
            'isApproved': self.is_approved,
        }


class ProfileStore(ABC):
    """Interfaz de perfiles: lecturas del núcleo y moderación desde el panel."""

    @abstractmethod
    def get_profile(self, profile_id: int) -> ProfileRecord:
        """Devuelve el perfil o lanza ProfileNotFound."""
        ...

    def get_profiles(self, profile_ids: List[int]) -> Dict[int, ProfileRecord]:
        """Perfiles existentes indexados por id; los ausentes se omiten."""
        found = {}
        for profile_id in profile_ids:
            try:
                found[profile_id] = self.get_profile(profile_id)
            except ProfileNotFound:
                continue
        return found

    @abstractmethod
    def update_profile(self, profile_id: int, price: Optional[Decimal] = None, is_approved: Optional[bool] = None,
                       contact_methods: Optional[Dict[str, Any]] = None) -> ProfileRecord:
        """Moderación: cambia precio, aprobación o contactos. ProfileNotFound si no existe."""
        ...


def _to_record(row: Profile) -> ProfileRecord:
    return ProfileRecord(
        id=row.id,
        display_name=row.display_name,
        price=from_cents(row.price_cents),
        is_approved=row.is_approved,
        contact_methods=copy.deepcopy(row.contact_methods or {}),
    )


class SqlProfileStore(ProfileStore):
    """ProfileStore sobre la tabla profile de la misma base."""
    def __init__(self, db: Database):
        self.db = db

    def get_profile(self, profile_id: int) -> ProfileRecord:
        with self.db.session() as s:
            row = s.get(Profile, profile_id)
            if row is None:
                raise ProfileNotFound(profile_id)
            return _to_record(row)

    def get_profiles(self, profile_ids: List[int]) -> Dict[int, ProfileRecord]:
        if not profile_ids:
            return {}
        with self.db.session() as s:
            rows = s.exec(select(Profile).where(Profile.id.in_(profile_ids))).all()
            return {row.id: _to_record(row) for row in rows}

    def create_profile(self, display_name: str, price: Decimal, contact_methods: Optional[Dict[str, Any]] = None,
                       is_approved: bool = False) -> ProfileRecord:
        if Decimal(price) < 0:
            raise InvalidInput("Price cannot be negative")
        with self.db.session() as s:
            row = Profile(display_name=display_name, price_cents=to_cents(price),
                          contact_methods=copy.deepcopy(contact_methods or {}), is_approved=is_approved)
            s.add(row)
            s.commit()
            s.refresh(row)
            return _to_record(row)

    def update_profile(self, profile_id: int, price: Optional[Decimal] = None, is_approved: Optional[bool] = None,
                       contact_methods: Optional[Dict[str, Any]] = None) -> ProfileRecord:
        """Moderación: cambia precio, aprobación o contactos. No afecta snapshots vendidos."""
        with self.db.session() as s:
            row = s.get(Profile, profile_id)
            if row is None:
                raise ProfileNotFound(profile_id)
            if price is not None:
                if Decimal(price) < 0:
                    raise InvalidInput("Price cannot be negative")
                row.price_cents = to_cents(price)
            if is_approved is not None:
                row.is_approved = is_approved
            if contact_methods is not None:
                # Se asigna un dict nuevo: la columna JSON no rastrea mutaciones in-place.
                row.contact_methods = copy.deepcopy(contact_methods)
            row.updated_at = utcnow()
            s.add(row)
            s.commit()
            s.refresh(row)
        logger.info("profile_updated", profile_id=profile_id, price=price is not None,
                    is_approved=is_approved, contact_methods=contact_methods is not None)
        return _to_record(row)
