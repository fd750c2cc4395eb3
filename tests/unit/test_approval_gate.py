"""
Unit tests for the admin approval gate (refill_service.approve_refill).

Approval succeeds iff the entry is PENDING_ADMIN with verified payment and
has not been approved before; every failure carries a stable code.
"""
import json
import threading

import pytest

from rxflow.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from rxflow.models.audit import AuditLog
from rxflow.models.order import AssignmentSource, Order, OrderStatus
from rxflow.models.refill import RefillQueue, RefillStatus
from rxflow.models.routing import RoutingStrategy
from rxflow.services import refill_service
from rxflow.utils.datetime_utils import utc_now
from tests.factories import ProviderFactory, RefillFactory, RoutingConfigFactory
from tests.helpers import ctx_for


# -------------------------------------------------------------------
# Happy path
# -------------------------------------------------------------------

class TestApproveHappyPath:

    def test_approves_and_queues_order(self, db, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)

        approved = refill_service.approve_refill(db, ctx_for(admin), refill.id, notes="ok to ship")

        assert approved.status == RefillStatus.APPROVED
        assert approved.admin_approved is True
        assert approved.admin_approved_by == admin.id
        assert approved.admin_notes == "ok to ship"
        assert approved.order_id is not None

        order = db.get(Order, approved.order_id)
        assert order.refill_id == refill.id
        assert order.status == OrderStatus.QUEUED_FOR_PROVIDER
        assert order.assigned_provider_id is None

    def test_writes_audit_row(self, db, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)

        refill_service.approve_refill(db, ctx_for(admin), refill.id)

        entries = db.query(AuditLog).filter(AuditLog.action == "REFILL_APPROVED").all()
        assert len(entries) == 1
        assert entries[0].entity_id == refill.id
        assert entries[0].actor_id == admin.id
        assert "order_id" in json.loads(entries[0].metadata_json)

    def test_super_admin_may_approve_any_clinic(self, db, super_admin, patient):
        refill = RefillFactory(clinic_id=patient.clinic_id, patient_id=patient.id)

        approved = refill_service.approve_refill(db, ctx_for(super_admin), refill.id)

        assert approved.status == RefillStatus.APPROVED


# -------------------------------------------------------------------
# Rejections, in precedence order
# -------------------------------------------------------------------

class TestApproveRejections:

    def test_staff_is_forbidden(self, db, staff, patient):
        refill = RefillFactory(clinic_id=staff.clinic_id, patient_id=patient.id)

        with pytest.raises(ForbiddenError):
            refill_service.approve_refill(db, ctx_for(staff), refill.id)

    @pytest.mark.parametrize("bad_id", [0, -4])
    def test_invalid_id(self, db, admin, bad_id):
        with pytest.raises(ValidationError) as exc_info:
            refill_service.approve_refill(db, ctx_for(admin), bad_id)
        assert exc_info.value.code == "INVALID_ID"

    def test_missing_refill_is_404(self, db, admin):
        with pytest.raises(NotFoundError) as exc_info:
            refill_service.approve_refill(db, ctx_for(admin), 999999)
        assert exc_info.value.code == "REFILL_NOT_FOUND"

    def test_other_clinic_refill_is_404(self, db, other_admin, patient):
        refill = RefillFactory(clinic_id=patient.clinic_id, patient_id=patient.id)

        with pytest.raises(NotFoundError):
            refill_service.approve_refill(db, ctx_for(other_admin), refill.id)

        db.expire_all()
        assert db.get(RefillQueue, refill.id).status == RefillStatus.PENDING_ADMIN

    def test_second_approval_is_already_approved(self, db, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)
        refill_service.approve_refill(db, ctx_for(admin), refill.id)

        with pytest.raises(ValidationError) as exc_info:
            refill_service.approve_refill(db, ctx_for(admin), refill.id)

        assert exc_info.value.code == "ALREADY_APPROVED"
        assert exc_info.value.message == "Refill already approved"
        assert exc_info.value.http_status == 400
        assert db.query(Order).filter(Order.refill_id == refill.id).count() == 1

    @pytest.mark.parametrize(
        "status",
        [RefillStatus.COMPLETED, RefillStatus.DECLINED, RefillStatus.CANCELLED],
    )
    def test_terminal_wins_over_already_approved(self, db, admin, patient, status):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id, status=status)
        # Approved earlier, then moved to a terminal state.
        db.query(RefillQueue).filter(RefillQueue.id == refill.id).update(
            {RefillQueue.admin_approved_at: utc_now()}, synchronize_session=False
        )
        db.commit()

        with pytest.raises(ConflictError) as exc_info:
            refill_service.approve_refill(db, ctx_for(admin), refill.id)

        assert exc_info.value.code == "REFILL_TERMINAL"
        assert exc_info.value.http_status == 409

    def test_pending_payment_is_invalid_status(self, db, admin, patient):
        refill = RefillFactory(
            clinic_id=admin.clinic_id,
            patient_id=patient.id,
            status=RefillStatus.PENDING_PAYMENT,
            payment_verified=False,
        )

        with pytest.raises(ValidationError) as exc_info:
            refill_service.approve_refill(db, ctx_for(admin), refill.id)

        assert exc_info.value.code == "INVALID_STATUS"

    def test_unverified_payment_is_rejected(self, db, admin, patient):
        refill = RefillFactory(
            clinic_id=admin.clinic_id,
            patient_id=patient.id,
            status=RefillStatus.PENDING_ADMIN,
            payment_verified=False,
        )

        with pytest.raises(ValidationError) as exc_info:
            refill_service.approve_refill(db, ctx_for(admin), refill.id)

        assert exc_info.value.code == "PAYMENT_NOT_VERIFIED"
        db.expire_all()
        assert db.get(RefillQueue, refill.id).admin_approved_at is None


# -------------------------------------------------------------------
# Concurrent approvals
# -------------------------------------------------------------------

class TestConcurrentApproval:

    def test_two_admins_approving_at_once_create_one_order(
        self, db, session_factory, admin, super_admin, patient
    ):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)
        refill_id = refill.id
        contexts = [ctx_for(admin), ctx_for(super_admin)]
        barrier = threading.Barrier(len(contexts))
        winners, losers, unexpected = [], [], []

        def approve(ctx):
            session = session_factory()
            try:
                barrier.wait()
                approved = refill_service.approve_refill(session, ctx, refill_id)
                winners.append(approved.order_id)
            except ValidationError as exc:
                losers.append(exc.code)
            except Exception as exc:  # noqa: BLE001
                unexpected.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=approve, args=(ctx,)) for ctx in contexts]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert unexpected == []
        assert len(winners) == 1
        assert losers == ["ALREADY_APPROVED"]
        assert db.query(Order).filter(Order.refill_id == refill_id).count() == 1
        assert db.query(AuditLog).filter(AuditLog.action == "REFILL_APPROVED").count() == 1
        db.expire_all()
        stored = db.get(RefillQueue, refill_id)
        assert stored.status == RefillStatus.APPROVED
        assert stored.order_id == winners[0]


# -------------------------------------------------------------------
# Series and routing side effects
# -------------------------------------------------------------------

class TestApproveSideEffects:

    def test_series_siblings_are_untouched(self, db, admin, patient):
        series = refill_service.schedule_shipment_series(
            db,
            clinic_id=admin.clinic_id,
            patient_id=patient.id,
            package_months=12,
            bud_days=90,
            payment_verified=True,
        )
        db.commit()
        first, siblings = series[0], series[1:]
        assert len(siblings) == 3

        refill_service.approve_refill(db, ctx_for(admin), first.id)

        db.expire_all()
        for sibling in siblings:
            stored = db.get(RefillQueue, sibling.id)
            assert stored.status == RefillStatus.SCHEDULED
            assert stored.admin_approved_at is None
            assert stored.order_id is None

    def test_auto_assign_on_approval_routes_round_robin(self, db, admin, patient):
        first = ProviderFactory(clinic_id=admin.clinic_id)
        ProviderFactory(clinic_id=admin.clinic_id)
        RoutingConfigFactory(
            clinic_id=admin.clinic_id,
            routing_strategy=RoutingStrategy.ROUND_ROBIN,
            auto_assign_on_approval=True,
        )
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)

        approved = refill_service.approve_refill(db, ctx_for(admin), refill.id)

        assert approved.status == RefillStatus.PENDING_PROVIDER
        order = db.get(Order, approved.order_id)
        db.refresh(order)
        assert order.assigned_provider_id == first.id
        assert order.assignment_source == AssignmentSource.ROUND_ROBIN

    def test_provider_choice_leaves_order_unassigned(self, db, admin, patient, routing_enabled):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)

        approved = refill_service.approve_refill(db, ctx_for(admin), refill.id)

        assert approved.status == RefillStatus.APPROVED
        assert db.get(Order, approved.order_id).assigned_provider_id is None


# -------------------------------------------------------------------
# Payment verification and rejection
# -------------------------------------------------------------------

class TestPaymentAndReject:

    def test_verify_payment_moves_to_pending_admin(self, db, staff, patient):
        refill = RefillFactory(
            clinic_id=staff.clinic_id,
            patient_id=patient.id,
            status=RefillStatus.PENDING_PAYMENT,
            payment_verified=False,
        )

        updated = refill_service.verify_payment(
            db, ctx_for(staff), refill.id, payment_method="card", payment_reference="ch_123"
        )

        assert updated.status == RefillStatus.PENDING_ADMIN
        assert updated.payment_verified is True
        assert updated.payment_reference == "ch_123"
        assert updated.payment_verified_by == staff.id

    def test_verify_payment_twice_is_invalid_status(self, db, staff, patient):
        refill = RefillFactory(clinic_id=staff.clinic_id, patient_id=patient.id)

        with pytest.raises(ValidationError) as exc_info:
            refill_service.verify_payment(db, ctx_for(staff), refill.id)
        assert exc_info.value.code == "INVALID_STATUS"

    def test_reject_declines_with_reason(self, db, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)

        rejected = refill_service.reject_refill(db, ctx_for(admin), refill.id, reason="Dose too high")

        assert rejected.status == RefillStatus.DECLINED
        assert rejected.status_reason == "Dose too high"

    def test_cancelled_refill_cannot_be_held(self, db, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id, status=RefillStatus.CANCELLED)

        with pytest.raises(ConflictError) as exc_info:
            refill_service.hold_refill(db, ctx_for(admin), refill.id, reason="pause")
        assert exc_info.value.message == "Refill already cancelled"

    def test_hold_and_resume_returns_to_stage(self, db, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)

        held = refill_service.hold_refill(db, ctx_for(admin), refill.id, reason="address check")
        assert held.status == RefillStatus.ON_HOLD

        resumed = refill_service.resume_refill(db, ctx_for(admin), refill.id)
        assert resumed.status == RefillStatus.PENDING_ADMIN
        assert resumed.status_reason is None

    def test_cancel_cancels_open_order(self, db, admin, patient):
        refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)
        approved = refill_service.approve_refill(db, ctx_for(admin), refill.id)

        cancelled = refill_service.cancel_refill(db, ctx_for(admin), refill.id, reason="patient request")

        assert cancelled.status == RefillStatus.CANCELLED
        order = db.get(Order, approved.order_id)
        db.refresh(order)
        assert order.status == OrderStatus.CANCELLED
