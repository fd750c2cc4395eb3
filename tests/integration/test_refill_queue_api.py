"""
HTTP tests for /api/v1/refill-queue.
"""
import threading

from rxflow.models.order import Order
from rxflow.models.refill import RefillStatus
from rxflow.services import refill_service
from tests.factories import RefillFactory
from tests.helpers import auth_headers

BASE = "/api/v1/refill-queue"


class TestApproveEndpoint:

    def test_approve_then_approve_again(self, client, db, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)

        first = client.post(f"{BASE}/{refill.id}/approve", headers=auth_headers(admin))
        second = client.post(f"{BASE}/{refill.id}/approve", headers=auth_headers(admin))

        assert first.status_code == 200
        body = first.json()
        assert body["success"] is True
        assert body["refill"]["status"] == "APPROVED"
        assert body["refill"]["adminApproved"] is True
        assert body["refill"]["orderId"] is not None

        assert second.status_code == 400
        assert second.json() == {
            "error": "Refill already approved",
            "code": "ALREADY_APPROVED",
            "detail": {"refill_id": refill.id, "status": "APPROVED"},
        }

    def test_idempotent_retry_replays_first_response(self, client, db, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)
        headers = {**auth_headers(admin), "Idempotency-Key": "approve-abc-123"}

        first = client.post(f"{BASE}/{refill.id}/approve", headers=headers, json={"notes": "ok"})
        second = client.post(f"{BASE}/{refill.id}/approve", headers=headers, json={"notes": "ok"})

        assert first.status_code == second.status_code == 200
        assert first.json() == second.json()
        assert db.query(Order).filter(Order.refill_id == refill.id).count() == 1

    def test_retry_during_first_call_gets_first_response(self, client, db, admin, patient, monkeypatch):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)
        headers = {**auth_headers(admin), "Idempotency-Key": "approve-in-flight"}
        approve = refill_service.approve_refill
        approved, release = threading.Event(), threading.Event()

        def approve_then_hold(*args, **kwargs):
            result = approve(*args, **kwargs)
            approved.set()
            release.wait(timeout=10)
            return result

        monkeypatch.setattr(refill_service, "approve_refill", approve_then_hold)
        responses = {}

        def post(name):
            responses[name] = client.post(f"{BASE}/{refill.id}/approve", headers=headers)

        first = threading.Thread(target=post, args=("first",))
        first.start()
        assert approved.wait(timeout=10)
        retry = threading.Thread(target=post, args=("retry",))
        retry.start()
        retry.join(timeout=0.5)
        assert retry.is_alive()

        release.set()
        first.join(timeout=10)
        retry.join(timeout=10)

        assert responses["first"].status_code == responses["retry"].status_code == 200
        assert responses["retry"].json() == responses["first"].json()
        assert db.query(Order).filter(Order.refill_id == refill.id).count() == 1

    def test_same_key_with_different_notes(self, client, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)
        headers = {**auth_headers(admin), "Idempotency-Key": "approve-notes"}
        client.post(f"{BASE}/{refill.id}/approve", headers=headers, json={"notes": "ok"})

        response = client.post(f"{BASE}/{refill.id}/approve", headers=headers, json={"notes": "ship today"})

        assert response.status_code == 409
        assert response.json()["code"] == "IDEMPOTENCY_KEY_REUSED"

    def test_key_reused_for_another_refill(self, client, db, admin, patient):
        one = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)
        two = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)
        headers = {**auth_headers(admin), "Idempotency-Key": "shared-key"}
        client.post(f"{BASE}/{one.id}/approve", headers=headers)

        response = client.post(f"{BASE}/{two.id}/approve", headers=headers)

        assert response.status_code == 409
        assert response.json()["code"] == "IDEMPOTENCY_KEY_REUSED"

    def test_unpaid_refill(self, client, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id, payment_verified=False)

        response = client.post(f"{BASE}/{refill.id}/approve", headers=auth_headers(admin))

        assert response.status_code == 400
        assert response.json()["code"] == "PAYMENT_NOT_VERIFIED"

    def test_completed_refill_is_conflict(self, client, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id, status=RefillStatus.COMPLETED)

        response = client.post(f"{BASE}/{refill.id}/approve", headers=auth_headers(admin))

        assert response.status_code == 409
        assert response.json()["error"] == "Refill already completed"

    def test_staff_cannot_approve(self, client, staff, patient):
        refill = RefillFactory(clinic_id=staff.clinic_id, patient_id=patient.id)

        response = client.post(f"{BASE}/{refill.id}/approve", headers=auth_headers(staff))

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_missing_token(self, client, patient):
        refill = RefillFactory(clinic_id=patient.clinic_id, patient_id=patient.id)

        response = client.post(f"{BASE}/{refill.id}/approve")

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"


class TestQueueReads:

    def test_list_uses_camel_case(self, client, staff, patient):
        RefillFactory(clinic_id=staff.clinic_id, patient_id=patient.id)

        response = client.get(BASE, headers=auth_headers(staff))

        assert response.status_code == 200
        rows = response.json()
        assert len(rows) == 1
        assert rows[0]["patientId"] == patient.id
        assert rows[0]["paymentVerified"] is True
        assert "patient_id" not in rows[0]

    def test_list_filters_by_status(self, client, staff, patient):
        RefillFactory(clinic_id=staff.clinic_id, patient_id=patient.id)
        RefillFactory(
            clinic_id=staff.clinic_id,
            patient_id=patient.id,
            status=RefillStatus.PENDING_PAYMENT,
            payment_verified=False,
        )

        response = client.get(BASE, params={"status": "PENDING_PAYMENT"}, headers=auth_headers(staff))

        assert [row["status"] for row in response.json()] == ["PENDING_PAYMENT"]

    def test_stats_counts_every_status(self, client, staff, patient):
        RefillFactory(clinic_id=staff.clinic_id, patient_id=patient.id)
        RefillFactory(clinic_id=staff.clinic_id, patient_id=patient.id, status=RefillStatus.COMPLETED)

        response = client.get(f"{BASE}/stats", headers=auth_headers(staff))

        assert response.status_code == 200
        stats = response.json()
        assert stats["PENDING_ADMIN"] == 1
        assert stats["COMPLETED"] == 1
        assert stats["SCHEDULED"] == 0
        assert stats["total"] == 2

    def test_super_admin_must_name_clinic(self, client, super_admin, clinic):
        missing = client.get(f"{BASE}/stats", headers=auth_headers(super_admin))
        named = client.get(f"{BASE}/stats", params={"clinicId": clinic.id}, headers=auth_headers(super_admin))

        assert missing.status_code == 400
        assert missing.json()["code"] == "CLINIC_REQUIRED"
        assert named.status_code == 200

    def test_series_lists_every_shipment(self, client, admin, patient):
        response = client.post(
            "/api/v1/subscriptions",
            json={"patientId": patient.id, "packageMonths": 12, "medicationName": "Semaglutide"},
            headers=auth_headers(admin),
        )
        first_id = response.json()["refills"][0]["id"]

        series = client.get(f"{BASE}/{first_id}/series", headers=auth_headers(admin)).json()

        assert [row["shipmentNumber"] for row in series] == [1, 2, 3, 4]
        assert {row["totalShipments"] for row in series} == {4}


class TestLifecycleEndpoints:

    def test_verify_payment(self, client, staff, patient):
        refill = RefillFactory(
            clinic_id=staff.clinic_id,
            patient_id=patient.id,
            status=RefillStatus.PENDING_PAYMENT,
            payment_verified=False,
        )

        response = client.post(
            f"{BASE}/{refill.id}/verify-payment",
            json={"paymentMethod": "card", "paymentReference": "ch_9"},
            headers=auth_headers(staff),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "PENDING_ADMIN"
        assert response.json()["paymentReference"] == "ch_9"

    def test_reject_requires_reason(self, client, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)

        response = client.post(f"{BASE}/{refill.id}/reject", json={}, headers=auth_headers(admin))

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_hold_resume_cancel(self, client, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)
        headers = auth_headers(admin)

        held = client.post(f"{BASE}/{refill.id}/hold", json={"reason": "address check"}, headers=headers)
        resumed = client.post(f"{BASE}/{refill.id}/resume", headers=headers)
        cancelled = client.post(f"{BASE}/{refill.id}/cancel", headers=headers)
        again = client.post(f"{BASE}/{refill.id}/cancel", headers=headers)

        assert held.json()["status"] == "ON_HOLD"
        assert held.json()["statusReason"] == "address check"
        assert resumed.json()["status"] == "PENDING_ADMIN"
        assert cancelled.json()["status"] == "CANCELLED"
        assert again.status_code == 409
        assert again.json()["code"] == "REFILL_TERMINAL"
