"""Almacén de credenciales para compradores y administradores.

Compradores y administradores viven en tablas distintas. Este módulo solo
persiste y verifica credenciales; nunca emite sesiones.
"""

from typing import List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from database import Database
from errors import (
    DuplicateIdentity,
    ForbiddenOperation,
    InvalidCredentials,
    InvalidInput,
    NotFound,
    SuperAdminRequired,
)
from models import ADMIN_ROLES, AdminUser, Buyer, Principal, utcnow
from security import PasswordHasher

logger = structlog.get_logger(component="credentials")


# normalize_email: Emails comparados sin distinguir mayúsculas.
def normalize_email(email: str) -> str:
    return (email or '').strip().lower()


class CredentialStore:
    """Creación y verificación de credenciales por tabla de rol."""
    def __init__(self, db: Database, hasher: PasswordHasher, min_password_length: int = 8):
        self.db = db
        self.hasher = hasher
        self.min_password_length = min_password_length

    # ------------------------------ Buyers ------------------------------
    def create_buyer(self, email: str, username: str, raw_password: str) -> Buyer:
        """Crea un comprador; DuplicateIdentity si el email o username ya existen."""
        email = normalize_email(email)
        username = (username or '').strip()
        self._check_password(raw_password)
        if not username:
            raise InvalidInput("Username is required")
        with self.db.session() as s:
            if s.exec(select(Buyer).where(Buyer.email == email)).first():
                raise DuplicateIdentity('email')
            if s.exec(select(Buyer).where(func.lower(Buyer.username) == username.lower())).first():
                raise DuplicateIdentity('username')
            buyer = Buyer(email=email, username=username, password_hash=self.hasher.hash(raw_password))
            s.add(buyer)
            try:
                s.commit()
            except IntegrityError:
                # Registro concurrente con el mismo email/username.
                s.rollback()
                raise DuplicateIdentity('email or username')
            s.refresh(buyer)
        logger.info("buyer_created", buyer_id=buyer.id)
        return buyer

    def verify_buyer(self, email: str, raw_password: str) -> Buyer:
        """Devuelve el comprador o InvalidCredentials, sin revelar si el email existe."""
        with self.db.session() as s:
            buyer = s.exec(select(Buyer).where(Buyer.email == normalize_email(email))).first()
            if buyer is None:
                self.hasher.dummy_verify(raw_password)
                raise InvalidCredentials()
            if not self.hasher.verify(raw_password, buyer.password_hash) or not buyer.is_active:
                raise InvalidCredentials()
            buyer.last_login_at = utcnow()
            if self.hasher.needs_rehash(buyer.password_hash):
                buyer.password_hash = self.hasher.hash(raw_password)
            s.add(buyer)
            s.commit()
            s.refresh(buyer)
            return buyer

    def get_buyer(self, buyer_id: int) -> Optional[Buyer]:
        with self.db.session() as s:
            return s.get(Buyer, buyer_id)

    # list_buyers: Compradores más recientes primero, para las vistas del panel.
    def list_buyers(self, limit: int = 100, offset: int = 0) -> List[Buyer]:
        with self.db.session() as s:
            return list(s.exec(select(Buyer).order_by(Buyer.id.desc()).offset(offset).limit(limit)).all())

    # ------------------------------ Admins ------------------------------
    def create_admin(self, username: str, email: str, raw_password: str, role: str) -> AdminUser:
        """Crea un administrador (admin | superadmin) en la tabla de admins."""
        if role not in ADMIN_ROLES:
            raise InvalidInput("Role must be 'admin' or 'superadmin'")
        email = normalize_email(email)
        username = (username or '').strip()
        self._check_password(raw_password)
        if not username:
            raise InvalidInput("Username is required")
        with self.db.session() as s:
            if s.exec(select(AdminUser).where(func.lower(AdminUser.username) == username.lower())).first():
                raise DuplicateIdentity('username')
            if s.exec(select(AdminUser).where(AdminUser.email == email)).first():
                raise DuplicateIdentity('email')
            admin = AdminUser(username=username, email=email, role=role,
                              password_hash=self.hasher.hash(raw_password))
            s.add(admin)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                raise DuplicateIdentity('email or username')
            s.refresh(admin)
        logger.info("admin_created", admin_id=admin.id, role=role)
        return admin

    def verify_admin(self, username: str, raw_password: str) -> AdminUser:
        with self.db.session() as s:
            admin = s.exec(
                select(AdminUser).where(func.lower(AdminUser.username) == (username or '').strip().lower())
            ).first()
            if admin is None:
                self.hasher.dummy_verify(raw_password)
                raise InvalidCredentials()
            if not self.hasher.verify(raw_password, admin.password_hash) or not admin.is_active:
                raise InvalidCredentials()
            admin.last_login_at = utcnow()
            s.add(admin)
            s.commit()
            s.refresh(admin)
            return admin

    def get_admin(self, admin_id: int) -> Optional[AdminUser]:
        with self.db.session() as s:
            return s.get(AdminUser, admin_id)

    def list_admins(self) -> List[AdminUser]:
        with self.db.session() as s:
            return list(s.exec(select(AdminUser).order_by(AdminUser.id)).all())

    def count_admins(self) -> int:
        with self.db.session() as s:
            return s.exec(select(func.count()).select_from(AdminUser)).one()

    def update_admin(self, admin_id: int, username: Optional[str] = None,
                     email: Optional[str] = None, is_active: Optional[bool] = None) -> AdminUser:
        """Edición de perfil de un admin. No toca el rol."""
        with self.db.session() as s:
            admin = s.get(AdminUser, admin_id)
            if admin is None:
                raise NotFound("Admin user")
            if username is not None:
                admin.username = username.strip()
            if email is not None:
                admin.email = normalize_email(email)
            if is_active is not None:
                admin.is_active = is_active
            s.add(admin)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                raise DuplicateIdentity('email or username')
            s.refresh(admin)
            return admin

    def change_admin_role(self, actor: Principal, admin_id: int, role: str) -> AdminUser:
        """Única vía para mutar un rol; exige un super admin y prohíbe auto-degradarse."""
        if not actor.is_superadmin:
            raise SuperAdminRequired()
        if role not in ADMIN_ROLES:
            raise InvalidInput("Role must be 'admin' or 'superadmin'")
        if actor.id == admin_id and role != actor.kind:
            raise ForbiddenOperation("Cannot demote yourself from super admin")
        with self.db.session() as s:
            admin = s.get(AdminUser, admin_id)
            if admin is None:
                raise NotFound("Admin user")
            previous = admin.role
            admin.role = role
            s.add(admin)
            s.commit()
            s.refresh(admin)
        logger.info("admin_role_changed", admin_id=admin_id, previous=previous, role=role, actor_id=actor.id)
        return admin

    def delete_admin(self, actor: Principal, admin_id: int, revoke_sessions=None) -> AdminUser:
        """Elimina un admin (solo super admin, nunca a sí mismo).

        revoke_sessions(admin_id) se invoca tras validar y antes de borrar, porque
        las sesiones del admin referencian su fila.
        """
        if not actor.is_superadmin:
            raise SuperAdminRequired()
        if actor.id == admin_id:
            raise ForbiddenOperation("Cannot delete your own admin account")
        if self.get_admin(admin_id) is None:
            raise NotFound("Admin user")
        if revoke_sessions is not None:
            revoke_sessions(admin_id)
        with self.db.session() as s:
            admin = s.get(AdminUser, admin_id)
            if admin is None:
                raise NotFound("Admin user")
            s.delete(admin)
            s.commit()
        logger.info("admin_deleted", admin_id=admin_id, actor_id=actor.id)
        return admin

    def _check_password(self, raw_password: str):
        if not raw_password or len(raw_password) < self.min_password_length:
            raise InvalidInput(f"Password must be at least {self.min_password_length} characters")
