from decimal import Decimal

import pytest
from sqlmodel import select
from structlog.testing import capture_logs

from checkout import CheckoutOrchestrator
from errors import InvalidInput, ProfileUnavailable, UpstreamUnavailable
from gateway import decode_int_list
from models import CheckoutIntent, Order

from conftest import auth, register_buyer


@pytest.fixture
def orchestrator(db, profile_store, gateway):
    return CheckoutOrchestrator(db, profile_store, gateway)


def test_total_is_sum_of_authoritative_prices(orchestrator, make_profile, gateway):
    p1 = make_profile("2.00")
    p2 = make_profile("3.50")

    with capture_logs() as logs:
        handle = orchestrator.open_checkout("buyer@example.com", [p1.id, p2.id], claimed_total=Decimal("0.01"))

    assert handle.amount == Decimal("5.50")
    session = gateway.sessions[handle.reference]
    assert session["amount_cents"] == 550
    assert decode_int_list(session["metadata"]["profile_ids"]) == [p1.id, p2.id]
    assert decode_int_list(session["metadata"]["item_prices"]) == [200, 350]
    assert any(e["event"] == "claimed_total_mismatch" for e in logs)


def test_duplicate_ids_are_charged_once(orchestrator, make_profile, gateway):
    p1 = make_profile("2.00")
    handle = orchestrator.open_checkout("buyer@example.com", [p1.id, p1.id])
    assert handle.profile_ids == (p1.id,)
    assert gateway.sessions[handle.reference]["amount_cents"] == 200


def test_unapproved_profile_fails_whole_checkout(orchestrator, make_profile, gateway, db):
    approved = make_profile("2.00")
    pending = make_profile("2.00", approved=False)

    with pytest.raises(ProfileUnavailable) as exc:
        orchestrator.open_checkout("buyer@example.com", [approved.id, pending.id])

    assert exc.value.details == {"profileId": pending.id, "reason": "not_approved"}
    assert gateway.sessions == {}
    with db.session() as s:
        assert s.exec(select(CheckoutIntent)).all() == []


def test_missing_profile_is_named(orchestrator, make_profile):
    with pytest.raises(ProfileUnavailable) as exc:
        orchestrator.open_checkout("buyer@example.com", [9999])
    assert exc.value.profile_id == 9999
    assert exc.value.details["reason"] == "missing"


def test_empty_cart_and_bad_ids(orchestrator):
    with pytest.raises(InvalidInput):
        orchestrator.open_checkout("buyer@example.com", [])
    with pytest.raises(InvalidInput):
        orchestrator.open_checkout("buyer@example.com", [0])
    with pytest.raises(InvalidInput):
        orchestrator.open_checkout("", [1])


def test_checkout_creates_intent_but_no_order(orchestrator, make_profile, db):
    p1 = make_profile("2.00")
    handle = orchestrator.open_checkout("buyer@example.com", [p1.id])
    with db.session() as s:
        intent = s.get(CheckoutIntent, handle.reference)
        assert intent is not None and intent.status == "open"
        assert s.exec(select(Order)).all() == []


def test_gateway_outage_propagates(orchestrator, make_profile, gateway):
    p1 = make_profile("2.00")
    gateway.unavailable = True
    with pytest.raises(UpstreamUnavailable):
        orchestrator.open_checkout("buyer@example.com", [p1.id])


def test_checkout_endpoint_anonymous_and_authenticated(client, make_profile, gateway):
    p1 = make_profile("2.00")
    res = client.post("/checkout", json={"buyerEmail": "guest@example.com", "profileIds": [p1.id],
                                         "claimedTotal": "1.00"})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["amount"] == "2.00"
    assert body["redirectHandle"].endswith(body["reference"])
    assert "buyer_id" not in gateway.sessions[body["reference"]]["metadata"]

    token = register_buyer(client)
    res = client.post("/checkout", json={"buyerEmail": "buyer@example.com", "profileIds": [p1.id]},
                      headers=auth(token))
    assert res.status_code == 200, res.text
    assert gateway.sessions[res.json()["reference"]]["metadata"]["buyer_id"]


def test_checkout_endpoint_maps_errors(client, make_profile, gateway):
    pending = make_profile("2.00", approved=False)
    res = client.post("/checkout", json={"buyerEmail": "guest@example.com", "profileIds": [pending.id]})
    assert res.status_code == 400
    assert res.json()["error"] == "PROFILE_UNAVAILABLE"
    assert res.json()["profileId"] == pending.id

    approved = make_profile("2.00")
    gateway.unavailable = True
    res = client.post("/checkout", json={"buyerEmail": "guest@example.com", "profileIds": [approved.id]})
    assert res.status_code == 503
    assert res.json()["kind"] == "UpstreamFailure"


def test_ids_beyond_integer_range_are_invalid_input(orchestrator, make_profile, gateway):
    p1 = make_profile()
    with pytest.raises(InvalidInput):
        orchestrator.open_checkout("buyer@example.com", [p1.id, 2 ** 63])
    assert gateway.sessions == {}


def test_api_rejects_out_of_range_ids_without_server_error(client):
    token = register_buyer(client)
    res = client.post("/checkout", json={"buyerEmail": "buyer@example.com", "profileIds": [2 ** 63]})
    assert res.status_code == 422
    assert client.get(f"/favorites/{2 ** 63}/status", headers=auth(token)).status_code == 422
    assert client.post(f"/favorites/{2 ** 63}", headers=auth(token)).status_code == 422
    assert client.get(f"/orders/{2 ** 63}", headers=auth(token)).status_code == 422
