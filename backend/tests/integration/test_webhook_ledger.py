import pytest

from consultcore.services.webhook_ledger_service import WebhookLedgerService


@pytest.fixture
def ledger(db):
    return WebhookLedgerService(db)


def _log(ledger, event_id="evt_1", **headers):
    return ledger.log_received(
        source="stripe",
        event_type="payment_intent.succeeded",
        event_id=event_id,
        payload={"id": event_id},
        headers=headers or None,
    )


def test_first_delivery_is_recorded(db, ledger):
    event = _log(ledger)
    db.commit()

    assert event.status == "received"
    assert event.retry_count == 0
    assert ledger.is_duplicate(event) is False


def test_redelivery_reuses_the_row(db, ledger):
    first = _log(ledger)
    db.commit()

    again = _log(ledger)
    db.commit()

    assert again.id == first.id
    assert again.retry_count == 1
    assert again.last_retry_at is not None


def test_same_event_id_from_another_source_is_distinct(db, ledger):
    stripe_event = _log(ledger)
    cashfree_event = ledger.log_received(
        source="cashfree",
        event_type="PAYMENT_SUCCESS_WEBHOOK",
        event_id="evt_1",
        payload={},
    )
    db.commit()

    assert stripe_event.id != cashfree_event.id


def test_signature_headers_are_masked(db, ledger):
    event = ledger.log_received(
        source="paypal",
        event_type="CHECKOUT.ORDER.APPROVED",
        event_id="WH-1",
        payload={},
        headers={
            "PAYPAL-TRANSMISSION-SIG": "abc",
            "Authorization": "Bearer token",
            "X-Webhook-Signature": "sig",
            "User-Agent": "PayPal/AUHD-214.0",
        },
    )

    assert event.headers == {
        "PAYPAL-TRANSMISSION-SIG": "***",
        "Authorization": "***",
        "X-Webhook-Signature": "***",
        "User-Agent": "PayPal/AUHD-214.0",
    }


def test_processed_events_are_duplicates(db, ledger):
    event = _log(ledger)
    ledger.mark_processed(event, related_booking_id="01JBOOKING0000000000000000", duration_ms=12)
    db.commit()

    assert ledger.is_duplicate(event) is True
    assert event.processed_at is not None
    assert event.related_booking_id == "01JBOOKING0000000000000000"
    assert event.processing_duration_ms == 12


def test_failed_events_can_be_retried(db, ledger):
    event = _log(ledger)
    ledger.mark_failed(event, error="x" * 3000)
    db.commit()

    assert event.status == "failed"
    assert len(event.processing_error) == 2000
    assert ledger.is_duplicate(event) is False

    ledger.mark_processed(_log(ledger))
    db.commit()
    assert event.status == "processed"
