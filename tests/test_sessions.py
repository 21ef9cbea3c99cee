from datetime import timedelta

import pytest
from sqlalchemy import DateTime

from credentials import CredentialStore
from errors import SessionExpired, SessionNotFound
from models import ADMIN, AdminSession, BuyerSession, utcnow
from security import PasswordHasher
from sessions import AdminSessionRegistry, BuyerSessionRegistry

DAY = 24 * 60 * 60


@pytest.fixture
def identities(db):
    store = CredentialStore(db, PasswordHasher(12))
    buyer = store.create_buyer("buyer@example.com", "buyer1", "password123")
    admin = store.create_admin("mod", "mod@example.com", "password123", ADMIN)
    return buyer, admin


def test_buyer_session_slides_on_activity(db, identities):
    buyer, _ = identities
    registry = BuyerSessionRegistry(db, 7 * DAY)
    t0 = utcnow()
    token = registry.issue(buyer.id, now=t0)

    # Actividad a los 6 días extiende la ventana completa.
    session = registry.resolve(token, now=t0 + timedelta(days=6))
    assert session.expires_at == t0 + timedelta(days=13)

    # Vigente a los 12 días gracias al keep-alive.
    assert registry.resolve(token, now=t0 + timedelta(days=12)).buyer_id == buyer.id


def test_buyer_session_expires_after_inactivity(db, identities):
    buyer, _ = identities
    registry = BuyerSessionRegistry(db, 7 * DAY)
    t0 = utcnow()
    token = registry.issue(buyer.id, now=t0)

    with pytest.raises(SessionExpired):
        registry.resolve(token, now=t0 + timedelta(days=7, seconds=1))
    # La fila expirada se borró: el siguiente intento ya no la encuentra.
    with pytest.raises(SessionNotFound):
        registry.resolve(token, now=t0 + timedelta(days=7, seconds=2))


def test_admin_session_has_hard_expiry(db, identities):
    _, admin = identities
    registry = AdminSessionRegistry(db, 8 * 60 * 60)
    t0 = utcnow()
    token = registry.issue(admin.id, ADMIN, "10.0.0.1", now=t0)

    # La actividad no extiende la sesión de admin.
    session = registry.resolve(token, "10.0.0.1", now=t0 + timedelta(hours=7))
    assert session.expires_at == t0 + timedelta(hours=8)
    with pytest.raises(SessionExpired):
        registry.resolve(token, "10.0.0.1", now=t0 + timedelta(hours=8, seconds=1))


def test_admin_session_bound_to_issuing_ip(db, identities):
    _, admin = identities
    registry = AdminSessionRegistry(db, 8 * 60 * 60)
    token = registry.issue(admin.id, ADMIN, "10.0.0.1")

    with pytest.raises(SessionNotFound):
        registry.resolve(token, "10.0.0.2")
    # La sesión se destruyó; ni siquiera la IP original la recupera.
    with pytest.raises(SessionNotFound):
        registry.resolve(token, "10.0.0.1")


def test_ip_binding_can_be_disabled(db, identities):
    _, admin = identities
    registry = AdminSessionRegistry(db, 8 * 60 * 60, bind_ip=False)
    token = registry.issue(admin.id, ADMIN, "10.0.0.1")
    assert registry.resolve(token, "10.0.0.2").admin_id == admin.id


def test_namespaces_are_disjoint(db, identities):
    buyer, admin = identities
    buyers = BuyerSessionRegistry(db, 7 * DAY)
    admins = AdminSessionRegistry(db, 8 * 60 * 60)
    buyer_token = buyers.issue(buyer.id)
    admin_token = admins.issue(admin.id, ADMIN, "10.0.0.1")

    with pytest.raises(SessionNotFound):
        buyers.resolve(admin_token)
    with pytest.raises(SessionNotFound):
        admins.resolve(buyer_token, "10.0.0.1")
    assert buyers.contains(buyer_token) and not buyers.contains(admin_token)
    assert admins.contains(admin_token) and not admins.contains(buyer_token)


def test_revoke_is_idempotent(db, identities):
    buyer, _ = identities
    registry = BuyerSessionRegistry(db, 7 * DAY)
    token = registry.issue(buyer.id)
    assert registry.revoke(token) is True
    assert registry.revoke(token) is False
    assert registry.revoke("") is False
    with pytest.raises(SessionNotFound):
        registry.resolve(token)


def test_purge_expired_and_revoke_all(db, identities):
    buyer, admin = identities
    buyers = BuyerSessionRegistry(db, 7 * DAY)
    admins = AdminSessionRegistry(db, 8 * 60 * 60)
    t0 = utcnow()
    old = buyers.issue(buyer.id, now=t0 - timedelta(days=8))
    fresh = buyers.issue(buyer.id, now=t0)
    assert buyers.purge_expired(now=t0) == 1
    assert not buyers.contains(old)
    assert buyers.contains(fresh)

    admins.issue(admin.id, ADMIN, "10.0.0.1")
    admins.issue(admin.id, ADMIN, "10.0.0.2")
    assert admins.revoke_all_for(admin.id) == 2
    assert buyers.revoke_all_for(buyer.id) == 1


def test_session_expiry_round_trips_as_naive_utc(db, identities):
    buyer, admin = identities
    buyers = BuyerSessionRegistry(db, 7 * DAY)
    admins = AdminSessionRegistry(db, 8 * 60 * 60)
    t0 = utcnow()
    buyer_token = buyers.issue(buyer.id, now=t0)
    admin_token = admins.issue(admin.id, ADMIN, "10.0.0.1", now=t0)

    with db.session() as s:
        stored = s.get(BuyerSession, buyer_token).expires_at
    assert stored.tzinfo is None
    assert stored == t0 + timedelta(days=7)
    # La comparación con utcnow() al resolver no mezcla fechas naive y aware.
    assert buyers.resolve(buyer_token, now=t0 + timedelta(days=1)).buyer_id == buyer.id
    assert admins.resolve(admin_token, "10.0.0.1", now=t0 + timedelta(hours=1)).admin_id == admin.id

    for model in (BuyerSession, AdminSession):
        assert type(model.__table__.c.expires_at.type) is DateTime
