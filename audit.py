"""Registro de auditoría persistente.

Todo rechazo del guard de autenticación se escribe aquí y en el log; es el
único rastro para detectar fijación de sesión o fuga de tokens. La actividad
administrativa (logins, gestión de admins, moderación) usa la misma tabla.
"""

from typing import Any, Dict, List, Optional

import structlog
from sqlmodel import select

from database import Database
from models import AuditEvent

logger = structlog.get_logger(component="audit")


class AuditTrail:
    """Escribe y consulta eventos de auditoría."""
    def __init__(self, db: Database):
        self.db = db

    def record_denial(self, operation: str, ip_address: str, reason: str,
                      actor_kind: Optional[str] = None, actor_id: Optional[int] = None,
                      details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        """Registra un rechazo (401/403) con IP de origen y operación intentada."""
        event = AuditEvent(
            action='access_denied',
            outcome='denied',
            actor_kind=actor_kind,
            actor_id=actor_id,
            operation=operation,
            ip_address=ip_address or 'unknown',
            details={'reason': reason, **(details or {})},
        )
        logger.warning(
            "access_denied",
            operation=operation,
            ip=event.ip_address,
            reason=reason,
            actor_kind=actor_kind,
            actor_id=actor_id,
        )
        return self._save(event)

    def record_activity(self, action: str, actor_kind: Optional[str], actor_id: Optional[int],
                        ip_address: str = 'unknown', outcome: str = 'success',
                        operation: Optional[str] = None,
                        details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        event = AuditEvent(
            action=action,
            outcome=outcome,
            actor_kind=actor_kind,
            actor_id=actor_id,
            operation=operation,
            ip_address=ip_address or 'unknown',
            details=details or {},
        )
        logger.info(action, outcome=outcome, actor_kind=actor_kind, actor_id=actor_id, ip=event.ip_address)
        return self._save(event)

    # recent: Últimos eventos, opcionalmente filtrados por acción.
    def recent(self, limit: int = 100, action: Optional[str] = None) -> List[AuditEvent]:
        with self.db.session() as s:
            statement = select(AuditEvent)
            if action:
                statement = statement.where(AuditEvent.action == action)
            statement = statement.order_by(AuditEvent.id.desc()).limit(limit)
            return list(s.exec(statement).all())

    def _save(self, event: AuditEvent) -> AuditEvent:
        with self.db.session() as s:
            s.add(event)
            s.commit()
            s.refresh(event)
        return event
