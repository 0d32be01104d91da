import logging

import pytest
from sqlalchemy.exc import IntegrityError

from tableside import ledger_service, models
from tableside.errors import NotFoundError, OrderValidationError, StateConflictError
from tableside.ledger_service import (
    add_order_total,
    close_session,
    currency_for_restaurant,
    open_or_reuse,
    open_session,
    remove_order_total,
)
from tableside.service_request_service import create_request
from tableside.table_status import get_table_status


def test_open_reuses_the_open_session(session, seed):
    first = open_session(session, seed.restaurant.id, seed.table.id)
    second = open_session(session, seed.restaurant.id, seed.table.id)

    assert first.id == second.id
    assert first.currency == "TRY"
    assert first.status == models.SessionStatus.open


def test_second_open_session_violates_unique_index(session, seed):
    for _ in range(2):
        session.add(models.TableSession(
            restaurant_id=seed.restaurant.id, table_id=seed.table.id, currency="TRY"
        ))
    with pytest.raises(IntegrityError):
        session.commit()
    session.rollback()


def test_closed_sessions_do_not_block_a_new_one(session, seed):
    first = open_session(session, seed.restaurant.id, seed.table.id)
    close_session(session, first.id, seed.restaurant.id)

    second = open_session(session, seed.restaurant.id, seed.table.id)
    assert second.id != first.id


def test_losing_a_concurrent_open_returns_the_winner(session, seed, monkeypatch):
    winner = open_session(session, seed.restaurant.id, seed.table.id)

    real_find = ledger_service.find_open_session
    calls = []

    def stale_then_real(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            return None
        return real_find(*args, **kwargs)

    monkeypatch.setattr(ledger_service, "find_open_session", stale_then_real)

    reused = open_or_reuse(session, seed.restaurant.id, seed.table.id)
    assert reused.id == winner.id
    assert len(calls) == 2


def test_open_rejects_unknown_or_inactive_tables(session, seed):
    with pytest.raises(NotFoundError):
        open_or_reuse(session, seed.restaurant.id, 424242)
    with pytest.raises(StateConflictError):
        open_or_reuse(session, seed.restaurant.id, seed.inactive_table.id)


def test_open_rejects_foreign_reservation(session, seed):
    with pytest.raises(OrderValidationError):
        open_or_reuse(session, seed.restaurant.id, seed.table.id, reservation_id=777)


def test_totals_buckets_and_grand_total(session, seed):
    table_session = open_session(session, seed.restaurant.id, seed.table.id)

    add_order_total(session, table_session, 4000, models.PaymentMethod.venue)
    add_order_total(session, table_session, 2500, models.PaymentMethod.card)
    remove_order_total(session, table_session, 1000, models.PaymentMethod.venue)

    assert table_session.totals() == {
        "card_total_cents": 2500,
        "pay_at_venue_total_cents": 3000,
        "grand_total_cents": 5500,
    }


def test_negative_amounts_are_rejected(session, seed):
    table_session = open_session(session, seed.restaurant.id, seed.table.id)
    with pytest.raises(OrderValidationError):
        add_order_total(session, table_session, -1, models.PaymentMethod.venue)


def test_removal_clamps_at_zero_and_logs(session, seed, caplog):
    table_session = open_session(session, seed.restaurant.id, seed.table.id)
    add_order_total(session, table_session, 1000, models.PaymentMethod.card)

    with caplog.at_level(logging.ERROR, logger="tableside.ledger_service"):
        remove_order_total(session, table_session, 1500, models.PaymentMethod.card)

    assert table_session.card_total_cents == 0
    assert table_session.grand_total_cents == 0
    assert "Ledger integrity" in caplog.text


def test_close_handles_requests_and_forces_orders_delivered(session, seed):
    table_session = open_session(session, seed.restaurant.id, seed.table.id)
    running = models.Order(
        restaurant_id=seed.restaurant.id, table_id=seed.table.id, session_id=table_session.id,
        currency="TRY", total_cents=6000, payment_method=models.PaymentMethod.venue,
        payment_status=models.PaymentStatus.not_required,
        kitchen_status=models.KitchenStatus.preparing,
    )
    cancelled = models.Order(
        restaurant_id=seed.restaurant.id, table_id=seed.table.id, session_id=table_session.id,
        currency="TRY", total_cents=500, payment_method=models.PaymentMethod.venue,
        status=models.OrderStatus.cancelled,
    )
    bill = models.ServiceRequest(
        restaurant_id=seed.restaurant.id, table_id=seed.table.id, session_id=table_session.id,
        type=models.ServiceRequestType.bill,
    )
    session.add_all([running, cancelled, bill])
    session.commit()

    closed = close_session(session, table_session.id, seed.restaurant.id)

    assert closed.status == models.SessionStatus.closed
    assert closed.closed_at is not None
    session.refresh(running)
    session.refresh(cancelled)
    session.refresh(bill)
    assert running.kitchen_status == models.KitchenStatus.delivered
    assert cancelled.kitchen_status == models.KitchenStatus.new
    assert bill.status == models.ServiceRequestStatus.handled

    with pytest.raises(StateConflictError):
        close_session(session, table_session.id, seed.restaurant.id)


def test_currency_comes_from_restaurant_then_region():
    assert currency_for_restaurant(models.Restaurant(name="a", currency="eur")) == "EUR"
    assert currency_for_restaurant(models.Restaurant(name="b", region="UK")) == "GBP"
    assert currency_for_restaurant(models.Restaurant(name="c", region="ZZ")) == "TRY"
    assert currency_for_restaurant(None) == "TRY"


def test_requests_made_before_the_session_close_with_it(session, seed):
    early = create_request(session, seed.table, models.ServiceRequestType.waiter)
    assert early.session_id is None

    table_session = open_session(session, seed.restaurant.id, seed.table.id)
    session.refresh(early)
    assert early.session_id == table_session.id

    close_session(session, table_session.id, seed.restaurant.id)

    view = get_table_status(session, seed.table)
    assert view["status"] == "empty"
    assert view["has_active_session"] is False
    assert view["open_service_request_count"] == 0


def test_close_sweeps_requests_that_never_got_a_session(session, seed):
    table_session = open_session(session, seed.restaurant.id, seed.table.id)
    # Written while the session was being opened elsewhere
    stray = models.ServiceRequest(
        restaurant_id=seed.restaurant.id, table_id=seed.table.id, type=models.ServiceRequestType.bill,
    )
    other_table = models.ServiceRequest(
        restaurant_id=seed.restaurant.id, table_id=seed.other_table.id, type=models.ServiceRequestType.bill,
    )
    session.add_all([stray, other_table])
    session.commit()

    close_session(session, table_session.id, seed.restaurant.id)

    session.refresh(stray)
    session.refresh(other_table)
    assert stray.status == models.ServiceRequestStatus.handled
    assert other_table.status == models.ServiceRequestStatus.open


def test_close_locks_orders_before_the_session(session, seed, monkeypatch):
    table_session = open_session(session, seed.restaurant.id, seed.table.id)
    locks = []
    real_lock_orders = ledger_service.lock_session_orders
    real_lock_session = ledger_service.lock_session

    def lock_orders(*args, **kwargs):
        locks.append("orders")
        return real_lock_orders(*args, **kwargs)

    def lock_session(*args, **kwargs):
        locks.append("session")
        return real_lock_session(*args, **kwargs)

    monkeypatch.setattr(ledger_service, "lock_session_orders", lock_orders)
    monkeypatch.setattr(ledger_service, "lock_session", lock_session)

    close_session(session, table_session.id, seed.restaurant.id)
    assert locks == ["orders", "session"]


def test_close_of_another_restaurants_session_is_not_found(session, seed):
    table_session = open_session(session, seed.restaurant.id, seed.table.id)
    with pytest.raises(NotFoundError):
        close_session(session, table_session.id, seed.restaurant.id + 1)
    with pytest.raises(NotFoundError):
        close_session(session, 999999, seed.restaurant.id)
