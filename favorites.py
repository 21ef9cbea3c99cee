"""Favoritos de compradores.

add es un upsert (repetir no es error), remove es idempotente y list devuelve
la vista pública de cada perfil (sin contactos) leída del ProfileStore
inyectado, con la fecha en que se guardó, más recientes primero.
Solo se accede a través del camino de compradores del guard.
"""

from typing import Any, Dict, List

import structlog
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from database import Database
from models import Favorite
from profiles import ProfileStore

logger = structlog.get_logger(component="favorites")


class FavoritesLedger:
    """Conjunto de perfiles guardados por comprador."""
    def __init__(self, db: Database, profiles: ProfileStore):
        self.db = db
        self.profiles = profiles

    def add(self, buyer_id: int, profile_id: int) -> Favorite:
        """Agrega el favorito o devuelve el existente. ProfileNotFound si el perfil no existe."""
        self.profiles.get_profile(profile_id)
        existing = self._get(buyer_id, profile_id)
        if existing is not None:
            return existing
        try:
            with self.db.session() as s:
                favorite = Favorite(buyer_id=buyer_id, profile_id=profile_id)
                s.add(favorite)
                s.commit()
                s.refresh(favorite)
        except IntegrityError:
            # Alta concurrente del mismo par: el conflicto se absorbe.
            favorite = self._get(buyer_id, profile_id)
            if favorite is None:
                raise
        logger.info("favorite_added", buyer_id=buyer_id, profile_id=profile_id)
        return favorite

    def remove(self, buyer_id: int, profile_id: int) -> bool:
        """Borra el favorito; devuelve False si no existía."""
        with self.db.session() as s:
            favorite = s.exec(
                select(Favorite).where(Favorite.buyer_id == buyer_id, Favorite.profile_id == profile_id)
            ).first()
            if favorite is None:
                return False
            s.delete(favorite)
            s.commit()
        logger.info("favorite_removed", buyer_id=buyer_id, profile_id=profile_id)
        return True

    def is_favorited(self, buyer_id: int, profile_id: int) -> bool:
        return self._get(buyer_id, profile_id) is not None

    def list(self, buyer_id: int) -> List[Dict[str, Any]]:
        """Perfiles favoritos (vista pública del ProfileStore), más recientes primero.

        Los favoritos cuyo perfil ya no existe en el almacén se omiten.
        """
        with self.db.session() as s:
            favorites = s.exec(
                select(Favorite)
                .where(Favorite.buyer_id == buyer_id)
                .order_by(Favorite.created_at.desc(), Favorite.id.desc())
            ).all()
        records = self.profiles.get_profiles([f.profile_id for f in favorites])
        return [
            {
                'favoriteId': favorite.id,
                'favoritedAt': favorite.created_at.isoformat(),
                'profile': records[favorite.profile_id].public_view(),
            }
            for favorite in favorites
            if favorite.profile_id in records
        ]

    def _get(self, buyer_id: int, profile_id: int):
        with self.db.session() as s:
            return s.exec(
                select(Favorite).where(Favorite.buyer_id == buyer_id, Favorite.profile_id == profile_id)
            ).first()
