import threading
from datetime import timedelta

import pytest
from sqlmodel import select
from structlog.testing import capture_logs

from checkout import CheckoutOrchestrator
from errors import ErrorCode, InvalidInput, UpstreamUnavailable
from fulfillment import FulfillmentService, ReconcileWorker, split_evenly
from gateway import FAILED, encode_metadata
from models import CheckoutIntent, Order, OrderItem, utcnow


@pytest.fixture
def orchestrator(db, profile_store, gateway):
    return CheckoutOrchestrator(db, profile_store, gateway)


@pytest.fixture
def service(db, profile_store, gateway):
    return FulfillmentService(db, profile_store, gateway)


def _count(db, model):
    with db.session() as s:
        return len(s.exec(select(model)).all())


def test_split_evenly_assigns_remainder_to_first_items():
    assert split_evenly(1000, 3) == [334, 333, 333]
    assert split_evenly(0, 2) == [0, 0]
    assert split_evenly(100, 0) == []


def test_confirm_creates_order_with_snapshots(orchestrator, service, make_profile, gateway, db):
    p1 = make_profile("2.00", contacts={"phone": "111"})
    p2 = make_profile("3.00", contacts={"email": "p2@example.com"})
    handle = orchestrator.open_checkout("buyer@example.com", [p1.id, p2.id], buyer_name="Bea")
    gateway.settle(handle.reference)

    outcome = service.confirm(handle.reference)

    assert outcome.ok and not outcome.replayed
    assert outcome.order.total_cents == 500
    assert outcome.order.buyer_name == "Bea"
    assert [i.price_cents for i in outcome.items] == [200, 300]
    assert [i.contact_snapshot for i in outcome.items] == [{"phone": "111"}, {"email": "p2@example.com"}]
    with db.session() as s:
        assert s.get(CheckoutIntent, handle.reference).status == "fulfilled"


def test_repeated_confirm_is_idempotent(orchestrator, service, make_profile, gateway, db):
    p1 = make_profile("2.00")
    handle = orchestrator.open_checkout("buyer@example.com", [p1.id])
    gateway.settle(handle.reference)

    first = service.confirm(handle.reference)
    second = service.confirm(handle.reference)
    third = service.confirm(handle.reference)

    assert second.replayed and third.replayed
    assert first.order.id == second.order.id == third.order.id
    assert [i.id for i in first.items] == [i.id for i in third.items]
    assert _count(db, Order) == 1
    assert _count(db, OrderItem) == 1


def test_concurrent_confirms_produce_one_order(orchestrator, service, make_profile, gateway, db):
    p1 = make_profile("2.00")
    p2 = make_profile("2.00")
    handle = orchestrator.open_checkout("buyer@example.com", [p1.id, p2.id])
    gateway.settle(handle.reference)

    barrier = threading.Barrier(5)
    results, errors = [], []

    def worker():
        barrier.wait()
        try:
            results.append(service.confirm(handle.reference))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(results) == 5
    assert len({r.order.id for r in results}) == 1
    assert sum(1 for r in results if not r.replayed) <= 1
    assert _count(db, Order) == 1
    assert _count(db, OrderItem) == 2


def test_unpaid_reference_is_rejected_without_writes(orchestrator, service, make_profile, gateway, db):
    p1 = make_profile("2.00")
    handle = orchestrator.open_checkout("buyer@example.com", [p1.id])

    pending = service.confirm(handle.reference)
    assert not pending.ok
    assert pending.code == ErrorCode.PAYMENT_NOT_SUCCEEDED

    gateway.settle(handle.reference, FAILED)
    failed = service.confirm(handle.reference)
    assert failed.payment_state == FAILED
    assert _count(db, Order) == 0
    with db.session() as s:
        assert s.get(CheckoutIntent, handle.reference).status == "failed"

    unknown = service.confirm("cs_unknown")
    assert not unknown.ok


def test_empty_reference_is_invalid(service):
    with pytest.raises(InvalidInput):
        service.confirm("  ")


def test_gateway_outage_writes_nothing(orchestrator, service, make_profile, gateway, db):
    p1 = make_profile("2.00")
    handle = orchestrator.open_checkout("buyer@example.com", [p1.id])
    gateway.settle(handle.reference)
    gateway.unavailable = True
    with pytest.raises(UpstreamUnavailable):
        service.confirm(handle.reference)
    assert _count(db, Order) == 0

    gateway.unavailable = False
    assert service.confirm(handle.reference).ok


def test_snapshot_is_immutable_after_profile_edit(orchestrator, service, make_profile, profile_store, gateway):
    p1 = make_profile("2.00", contacts={"phone": "111"})
    handle = orchestrator.open_checkout("buyer@example.com", [p1.id])
    gateway.settle(handle.reference)
    order = service.confirm(handle.reference).order

    profile_store.update_profile(p1.id, contact_methods={"phone": "999"}, price="9.00")

    _, items = service.get_order(order.id)
    assert items[0].contact_snapshot == {"phone": "111"}
    assert items[0].price_cents == 200


def test_price_changed_after_checkout_uses_captured_price(orchestrator, service, make_profile, profile_store,
                                                          gateway):
    p1 = make_profile("2.00")
    p2 = make_profile("3.00")
    handle = orchestrator.open_checkout("buyer@example.com", [p1.id, p2.id])
    profile_store.update_profile(p1.id, price="7.00")
    gateway.settle(handle.reference)

    outcome = service.confirm(handle.reference)
    assert [i.price_cents for i in outcome.items] == [200, 300]
    assert sum(i.price_cents for i in outcome.items) == outcome.order.total_cents


def test_missing_item_prices_fall_back_to_even_split(service, make_profile, gateway):
    p1 = make_profile("2.00")
    p2 = make_profile("2.00")
    p3 = make_profile("2.00")
    metadata = encode_metadata("buyer@example.com", [p1.id, p2.id, p3.id], [])
    metadata.pop("item_prices")
    gateway.add_paid("cs_legacy", 1000, metadata)

    with capture_logs() as logs:
        outcome = service.confirm("cs_legacy")

    assert [i.price_cents for i in outcome.items] == [334, 333, 333]
    assert any(e["event"] == "item_price_fallback" for e in logs)


def test_deleted_profile_gets_empty_snapshot(service, make_profile, gateway):
    p1 = make_profile("2.00", contacts={"phone": "111"})
    metadata = encode_metadata("buyer@example.com", [p1.id, 4242], [200, 300])
    gateway.add_paid("cs_partial", 500, metadata)

    outcome = service.confirm("cs_partial")
    snapshots = {i.profile_id: i.contact_snapshot for i in outcome.items}
    assert snapshots == {p1.id: {"phone": "111"}, 4242: {}}


def test_paid_session_without_items_is_rejected(service, gateway, db):
    gateway.add_paid("cs_empty", 500, {"buyer_email": "buyer@example.com"})
    outcome = service.confirm("cs_empty")
    assert not outcome.ok
    assert outcome.code == ErrorCode.INVALID_INPUT
    assert _count(db, Order) == 0


def test_reconcile_resolves_open_intents(orchestrator, service, make_profile, gateway, db):
    p1 = make_profile("2.00")
    paid = orchestrator.open_checkout("a@example.com", [p1.id])
    failed = orchestrator.open_checkout("b@example.com", [p1.id])
    stale = orchestrator.open_checkout("c@example.com", [p1.id])
    fresh = orchestrator.open_checkout("d@example.com", [p1.id])
    gateway.settle(paid.reference)
    gateway.settle(failed.reference, FAILED)

    now = utcnow()
    with db.session() as s:
        for reference, age in ((paid.reference, timedelta(minutes=5)),
                               (failed.reference, timedelta(minutes=5)),
                               (stale.reference, timedelta(hours=25))):
            intent = s.get(CheckoutIntent, reference)
            intent.created_at = now - age
            s.add(intent)
        s.commit()

    actions = {a["reference"]: a["action"] for a in service.reconcile_open(now=now)}

    assert actions == {paid.reference: "fulfilled", failed.reference: "failed", stale.reference: "abandoned"}
    assert fresh.reference not in actions
    assert _count(db, Order) == 1
    # Una segunda pasada no encuentra nada abierto y viejo.
    assert service.reconcile_open(now=now) == []


def test_reconcile_retries_on_gateway_outage(orchestrator, service, make_profile, gateway, db):
    p1 = make_profile("2.00")
    handle = orchestrator.open_checkout("a@example.com", [p1.id])
    later = utcnow() + timedelta(minutes=10)
    gateway.unavailable = True
    assert service.reconcile_open(now=later) == [{"reference": handle.reference, "action": "retry_later"}]
    with db.session() as s:
        assert s.get(CheckoutIntent, handle.reference).status == "open"


def test_worker_run_once_runs_housekeeping(service):
    calls = []
    worker = ReconcileWorker(service, interval=0, housekeeping=[lambda: calls.append("purge")])
    assert worker.run_once() == []
    assert calls == ["purge"]
    # interval 0 deshabilita el hilo.
    worker.start()
    assert worker._thread is None
    worker.stop()
