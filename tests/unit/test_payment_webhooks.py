"""
Unit tests for payment webhook ingestion and the dead-letter retry queue.
"""
import json

import pytest

from rxflow.core.errors import ExternalServiceError, ForbiddenError, ValidationError
from rxflow.integrations import pharmacy_client
from rxflow.models.dead_letter import DeadLetterEvent, DeadLetterKind, DeadLetterStatus
from rxflow.models.order import Order
from rxflow.models.refill import RefillQueue, RefillStatus
from rxflow.models.subscription import Subscription, SubscriptionStatus
from rxflow.services import dead_letter_service, payment_webhook_service, subscription_service
from tests.factories import OrderFactory
from tests.helpers import ctx_for


def _subscription(db, admin, patient):
    subscription, refills = subscription_service.create_subscription(
        db,
        ctx_for(admin),
        clinic_id=admin.clinic_id,
        patient_id=patient.id,
        plan_name="Monthly",
        medication_name="Semaglutide 2.5mg/mL",
    )
    return subscription, refills[0]


def _event(event_id, event_type, subscription_id, **data):
    return {"id": event_id, "type": event_type, "data": {"subscription_id": subscription_id, **data}}


class TestWebhookSecret:

    def test_matching_secret_passes(self):
        payment_webhook_service.verify_webhook_secret("test-webhook-secret")

    @pytest.mark.parametrize("provided", [None, "", "wrong-secret"])
    def test_wrong_secret_is_forbidden(self, provided):
        with pytest.raises(ForbiddenError) as exc_info:
            payment_webhook_service.verify_webhook_secret(provided)
        assert exc_info.value.code == "INVALID_WEBHOOK_SECRET"


class TestHandlePaymentWebhook:

    def test_invoice_paid_moves_refill_to_admin(self, db, admin, patient):
        subscription, refill = _subscription(db, admin, patient)

        status_code, body = payment_webhook_service.handle_payment_webhook(
            db, _event("evt_1", "invoice.paid", subscription.id, payment_reference="in_1")
        )

        assert status_code == 200
        assert body == {
            "event_id": "evt_1",
            "status": "processed",
            "type": "invoice.paid",
            "refill_id": refill.id,
        }
        db.expire_all()
        stored = db.get(RefillQueue, refill.id)
        assert stored.status == RefillStatus.PENDING_ADMIN
        assert stored.payment_reference == "in_1"

    def test_redelivered_event_is_applied_once(self, db, admin, patient):
        subscription, _ = _subscription(db, admin, patient)
        event = _event("evt_2", "invoice.paid", subscription.id)

        first = payment_webhook_service.handle_payment_webhook(db, event)
        db.expire_all()
        billing_after_first = db.get(Subscription, subscription.id).next_billing_date
        second = payment_webhook_service.handle_payment_webhook(db, event)

        assert first == second
        db.expire_all()
        assert db.get(Subscription, subscription.id).next_billing_date == billing_after_first

    def test_unknown_type_is_ignored(self, db, admin, patient):
        subscription, _ = _subscription(db, admin, patient)

        status_code, body = payment_webhook_service.handle_payment_webhook(
            db, _event("evt_3", "customer.updated", subscription.id)
        )

        assert status_code == 200
        assert body["status"] == "ignored"
        assert db.query(DeadLetterEvent).count() == 0

    def test_cancel_event_cancels_subscription(self, db, admin, patient):
        subscription, refill = _subscription(db, admin, patient)

        status_code, _ = payment_webhook_service.handle_payment_webhook(
            db, _event("evt_4", "subscription.canceled", subscription.id, reason="card expired")
        )

        assert status_code == 200
        db.expire_all()
        assert db.get(Subscription, subscription.id).status == SubscriptionStatus.CANCELED
        assert db.get(RefillQueue, refill.id).status == RefillStatus.CANCELLED

    def test_missing_event_id(self, db):
        with pytest.raises(ValidationError) as exc_info:
            payment_webhook_service.handle_payment_webhook(db, {"type": "invoice.paid", "data": {}})
        assert exc_info.value.code == "INVALID_EVENT"

    def test_failed_event_is_dead_lettered(self, db, admin, patient):
        subscription, _ = _subscription(db, admin, patient)
        subscription_service.pause_subscription(db, ctx_for(admin), subscription.id)

        status_code, body = payment_webhook_service.handle_payment_webhook(
            db, _event("evt_5", "subscription.paused", subscription.id)
        )

        assert status_code == 202
        assert body["status"] == "queued_for_retry"
        assert body["event_id"] == "evt_5"
        event = db.get(DeadLetterEvent, body["dead_letter_id"])
        assert event.kind == DeadLetterKind.PAYMENT_WEBHOOK
        assert event.status == DeadLetterStatus.PENDING
        assert event.clinic_id == admin.clinic_id
        assert json.loads(event.payload)["id"] == "evt_5"

    def test_unknown_subscription_is_dead_lettered(self, db):
        status_code, body = payment_webhook_service.handle_payment_webhook(
            db, _event("evt_6", "invoice.paid", 424242)
        )

        assert status_code == 202
        assert db.get(DeadLetterEvent, body["dead_letter_id"]).last_error == "Subscription not found"

    @pytest.mark.parametrize("paid_at", ["not-a-date", "2026-13-45T00:00:00Z", "05/01/2026"])
    def test_malformed_paid_at_is_dead_lettered(self, db, admin, patient, paid_at):
        subscription, refill = _subscription(db, admin, patient)

        status_code, body = payment_webhook_service.handle_payment_webhook(
            db, _event("evt_7", "invoice.paid", subscription.id, paid_at=paid_at)
        )

        assert status_code == 202
        assert body["status"] == "queued_for_retry"
        event = db.get(DeadLetterEvent, body["dead_letter_id"])
        assert event.last_error == "Invalid paid_at"
        assert event.clinic_id == admin.clinic_id
        db.expire_all()
        assert db.get(RefillQueue, refill.id).payment_verified is False

    def test_malformed_paid_at_redelivery_replays_acknowledgement(self, db, admin, patient):
        subscription, _ = _subscription(db, admin, patient)
        event = _event("evt_8", "invoice.paid", subscription.id, paid_at="yesterday")

        first = payment_webhook_service.handle_payment_webhook(db, event)
        second = payment_webhook_service.handle_payment_webhook(db, event)

        assert first == second
        assert db.query(DeadLetterEvent).count() == 1


class TestDeadLetterRetry:

    def _failed_pause(self, db, admin, patient):
        subscription, _ = _subscription(db, admin, patient)
        subscription_service.pause_subscription(db, ctx_for(admin), subscription.id)
        _, body = payment_webhook_service.handle_payment_webhook(
            db, _event("evt_dlq", "subscription.paused", subscription.id)
        )
        return subscription, body["dead_letter_id"]

    def test_retry_that_fails_again_counts_attempt(self, db, admin, patient):
        _, dead_letter_id = self._failed_pause(db, admin, patient)

        result = dead_letter_service.retry_dead_letters(db, clinic_id=admin.clinic_id)

        assert result["processed"] == 1
        assert result["succeeded"] == 0
        assert result["abandoned"] == 0
        assert result["errors"][0]["dead_letter_id"] == dead_letter_id
        db.expire_all()
        event = db.get(DeadLetterEvent, dead_letter_id)
        assert event.attempts == 1
        assert event.status == DeadLetterStatus.PENDING

    def test_retry_succeeds_once_state_allows(self, db, admin, patient):
        subscription, dead_letter_id = self._failed_pause(db, admin, patient)
        subscription_service.resume_subscription(db, ctx_for(admin), subscription.id)

        result = dead_letter_service.retry_dead_letters(db, clinic_id=admin.clinic_id)

        assert result == {"processed": 1, "succeeded": 1, "abandoned": 0, "errors": []}
        db.expire_all()
        assert db.get(DeadLetterEvent, dead_letter_id).status == DeadLetterStatus.SUCCEEDED
        assert db.get(Subscription, subscription.id).status == SubscriptionStatus.PAUSED

    def test_event_is_abandoned_at_max_attempts(self, db, admin, patient):
        _, dead_letter_id = self._failed_pause(db, admin, patient)
        event = db.get(DeadLetterEvent, dead_letter_id)
        event.max_attempts = 2
        event.attempts = 1
        db.commit()

        result = dead_letter_service.retry_dead_letters(db, clinic_id=admin.clinic_id)

        assert result["abandoned"] == 1
        db.expire_all()
        event = db.get(DeadLetterEvent, dead_letter_id)
        assert event.status == DeadLetterStatus.ABANDONED
        assert event.attempts == 2
        # Abandoned events are not picked up again.
        assert dead_letter_service.retry_dead_letters(db, clinic_id=admin.clinic_id)["processed"] == 0

    def test_other_clinic_events_are_not_retried(self, db, admin, other_clinic, patient):
        self._failed_pause(db, admin, patient)

        result = dead_letter_service.retry_dead_letters(db, clinic_id=other_clinic.id)

        assert result["processed"] == 0

    def test_pharmacy_submission_retry_stores_reference(self, db, clinic, patient, monkeypatch):
        def unavailable(payload):
            raise ExternalServiceError("Pharmacy submission failed", code="PHARMACY_SUBMISSION_FAILED")

        order = OrderFactory(clinic_id=clinic.id, patient_id=patient.id)
        monkeypatch.setattr(pharmacy_client, "submit_prescription", unavailable)
        dead_letter_service.enqueue_dead_letter(
            db,
            kind=DeadLetterKind.PHARMACY_SUBMISSION,
            payload={"order_id": order.id},
            clinic_id=clinic.id,
            error="timeout",
        )
        assert dead_letter_service.retry_dead_letters(db, clinic_id=clinic.id)["succeeded"] == 0

        monkeypatch.setattr(pharmacy_client, "submit_prescription", lambda payload: "RX-77")
        result = dead_letter_service.retry_dead_letters(db, clinic_id=clinic.id)

        assert result["succeeded"] == 1
        db.expire_all()
        assert db.get(Order, order.id).pharmacy_reference == "RX-77"
