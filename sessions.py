"""Registro de sesiones opacas en dos espacios de nombres disjuntos.

Las sesiones de compradores y de administradores viven en tablas distintas
(buyer_session, admin_session). Un token de una tabla nunca puede resolverse
en la otra, así que la separación de roles no depende de un flag en runtime.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import delete

from database import Database
from errors import SessionExpired, SessionNotFound
from logs import token_hint
from models import AdminSession, BuyerSession, utcnow
from security import new_session_token

logger = structlog.get_logger(component="sessions")


class _SessionRegistry:
    """Operaciones comunes a ambos espacios; cada subclase fija su propia tabla."""
    model = None
    namespace = ''

    def __init__(self, db: Database, ttl_seconds: int):
        self.db = db
        self.ttl = timedelta(seconds=ttl_seconds)

    # revoke: Borrado idempotente; revocar dos veces no es error.
    def revoke(self, token: str) -> bool:
        if not token:
            return False
        with self.db.session() as s:
            row = s.get(self.model, token)
            if row is None:
                return False
            s.delete(row)
            s.commit()
        logger.info("session_revoked", namespace=self.namespace, token=token_hint(token))
        return True

    # contains: Sonda de solo lectura (sin deslizar ni borrar) usada por el guard.
    def contains(self, token: str, now: Optional[datetime] = None) -> bool:
        if not token:
            return False
        now = now or utcnow()
        with self.db.session() as s:
            row = s.get(self.model, token)
            return row is not None and row.expires_at > now

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self.db.session() as s:
            result = s.exec(delete(self.model).where(self.model.expires_at <= now))
            s.commit()
            return result.rowcount or 0

    def _load_live(self, s, token: str, now: datetime):
        """Devuelve la fila vigente o lanza NotFound/Expired (borrando la expirada)."""
        if not token:
            raise SessionNotFound()
        row = s.get(self.model, token)
        if row is None:
            raise SessionNotFound()
        if row.expires_at <= now:
            s.delete(row)
            s.commit()
            logger.info("session_expired", namespace=self.namespace, token=token_hint(token))
            raise SessionExpired()
        return row


class BuyerSessionRegistry(_SessionRegistry):
    """Sesiones de comprador con ventana deslizante (keep-alive)."""
    model = BuyerSession
    namespace = 'buyer'

    def issue(self, buyer_id: int, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        token = new_session_token()
        with self.db.session() as s:
            s.add(BuyerSession(token=token, buyer_id=buyer_id, created_at=now,
                               expires_at=now + self.ttl, last_activity_at=now))
            s.commit()
        logger.info("session_issued", namespace=self.namespace, principal_id=buyer_id, token=token_hint(token))
        return token

    def resolve(self, token: str, now: Optional[datetime] = None) -> BuyerSession:
        """Resuelve el token y extiende expires_at por la ventana completa."""
        now = now or utcnow()
        with self.db.session() as s:
            row = self._load_live(s, token, now)
            row.expires_at = now + self.ttl
            row.last_activity_at = now
            s.add(row)
            s.commit()
            s.refresh(row)
            return row

    def revoke_all_for(self, buyer_id: int) -> int:
        with self.db.session() as s:
            result = s.exec(delete(BuyerSession).where(BuyerSession.buyer_id == buyer_id))
            s.commit()
            return result.rowcount or 0


class AdminSessionRegistry(_SessionRegistry):
    """Sesiones de admin/super admin: reloj fijo desde la emisión y atadas a la IP."""
    model = AdminSession
    namespace = 'admin'

    def __init__(self, db: Database, ttl_seconds: int, bind_ip: bool = True):
        super().__init__(db, ttl_seconds)
        self.bind_ip = bind_ip

    def issue(self, admin_id: int, role: str, ip_address: str, now: Optional[datetime] = None) -> str:
        now = now or utcnow()
        token = new_session_token()
        with self.db.session() as s:
            s.add(AdminSession(token=token, admin_id=admin_id, role=role, ip_address=ip_address or 'unknown',
                               created_at=now, expires_at=now + self.ttl, last_activity_at=now))
            s.commit()
        logger.info("session_issued", namespace=self.namespace, principal_id=admin_id, role=role,
                    token=token_hint(token))
        return token

    def resolve(self, token: str, ip_address: str, now: Optional[datetime] = None) -> AdminSession:
        """Resuelve sin deslizar. Si la IP cambió, la sesión se destruye."""
        now = now or utcnow()
        with self.db.session() as s:
            row = self._load_live(s, token, now)
            if self.bind_ip and row.ip_address != (ip_address or 'unknown'):
                s.delete(row)
                s.commit()
                logger.warning("admin_session_ip_mismatch", admin_id=row.admin_id, token=token_hint(token),
                               issued_ip=row.ip_address, ip=ip_address)
                raise SessionNotFound()
            row.last_activity_at = now
            s.add(row)
            s.commit()
            s.refresh(row)
            return row

    def revoke_all_for(self, admin_id: int) -> int:
        with self.db.session() as s:
            result = s.exec(delete(AdminSession).where(AdminSession.admin_id == admin_id))
            s.commit()
        if result.rowcount:
            logger.info("admin_sessions_revoked", admin_id=admin_id, count=result.rowcount)
        return result.rowcount or 0
