"""
Unit tests for provider routing: claims, automatic strategies, manual override.
"""
import threading

import pytest

from rxflow.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from rxflow.models.order import AssignmentSource, Order, ProviderAssignment
from rxflow.models.provider import ProviderStatus
from rxflow.models.refill import RefillQueue, RefillStatus
from rxflow.models.routing import ProviderRoutingConfig, RoutingStrategy
from rxflow.services import refill_service, routing_service
from tests.factories import (
    OrderFactory,
    PatientFactory,
    ProviderFactory,
    RefillFactory,
    RoutingConfigFactory,
)
from tests.helpers import ctx_for


def _approved_order(db, admin, patient):
    refill = RefillFactory(clinic_id=admin.clinic_id, patient_id=patient.id)
    approved = refill_service.approve_refill(db, ctx_for(admin), refill.id)
    return db.get(Order, approved.order_id)


# -------------------------------------------------------------------
# Self-claim
# -------------------------------------------------------------------

class TestClaimPrescription:

    def test_claim_assigns_order_and_moves_refill(self, db, admin, patient, provider_user, routing_enabled):
        order = _approved_order(db, admin, patient)

        claimed = routing_service.claim_prescription(db, ctx_for(provider_user), order_id=order.id)

        assert claimed.assigned_provider_id == provider_user.provider_id
        assert claimed.assignment_source == AssignmentSource.SELF_SELECT
        assert claimed.assigned_at is not None

        assignments = db.query(ProviderAssignment).filter(ProviderAssignment.order_id == order.id).all()
        assert len(assignments) == 1
        assert assignments[0].assigned_by == provider_user.id

        db.expire_all()
        assert db.get(RefillQueue, order.refill_id).status == RefillStatus.PENDING_PROVIDER

    def test_second_claim_is_already_claimed(
        self, db, admin, patient, provider_user, second_provider_user, routing_enabled
    ):
        order = _approved_order(db, admin, patient)
        routing_service.claim_prescription(db, ctx_for(provider_user), order_id=order.id)

        with pytest.raises(ConflictError) as exc_info:
            routing_service.claim_prescription(db, ctx_for(second_provider_user), order_id=order.id)

        assert exc_info.value.code == "ALREADY_CLAIMED"
        assert exc_info.value.message == "This prescription is already assigned to a provider"
        db.expire_all()
        assert db.get(Order, order.id).assigned_provider_id == provider_user.provider_id
        assert db.query(ProviderAssignment).filter(ProviderAssignment.order_id == order.id).count() == 1

    def test_claim_when_routing_disabled(self, db, admin, patient, provider_user):
        order = _approved_order(db, admin, patient)

        with pytest.raises(ValidationError) as exc_info:
            routing_service.claim_prescription(db, ctx_for(provider_user), order_id=order.id)

        assert exc_info.value.code == "ROUTING_DISABLED"

    def test_claim_outside_license_states(self, db, admin, clinic, provider_user, routing_enabled):
        texan = PatientFactory(clinic_id=clinic.id, state="TX")
        order = _approved_order(db, admin, texan)

        with pytest.raises(ForbiddenError) as exc_info:
            routing_service.claim_prescription(db, ctx_for(provider_user), order_id=order.id)

        assert exc_info.value.code == "NOT_LICENSED"
        db.expire_all()
        assert db.get(Order, order.id).assigned_provider_id is None

    def test_admin_cannot_claim(self, db, admin, patient, routing_enabled):
        order = _approved_order(db, admin, patient)

        with pytest.raises(ForbiddenError):
            routing_service.claim_prescription(db, ctx_for(admin), order_id=order.id)

    def test_other_clinic_order_is_404(self, db, other_clinic, provider_user, routing_enabled):
        foreign = OrderFactory(clinic_id=other_clinic.id)
        RoutingConfigFactory(clinic_id=other_clinic.id)

        with pytest.raises(NotFoundError):
            routing_service.claim_prescription(db, ctx_for(provider_user), order_id=foreign.id)

    def test_concurrent_claims_have_one_winner(
        self, db, session_factory, admin, patient, provider_user, second_provider_user, routing_enabled
    ):
        order = _approved_order(db, admin, patient)
        order_id = order.id
        contexts = [ctx_for(provider_user), ctx_for(second_provider_user)]
        barrier = threading.Barrier(len(contexts))
        winners, losers, unexpected = [], [], []

        def claim(ctx):
            session = session_factory()
            try:
                barrier.wait()
                routing_service.claim_prescription(session, ctx, order_id=order_id)
                winners.append(ctx.provider_id)
            except ConflictError as exc:
                losers.append(exc.code)
            except Exception as exc:  # noqa: BLE001
                unexpected.append(exc)
            finally:
                session.close()

        threads = [threading.Thread(target=claim, args=(ctx,)) for ctx in contexts]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert unexpected == []
        assert len(winners) == 1
        assert losers == ["ALREADY_CLAIMED"]
        db.expire_all()
        assert db.get(Order, order_id).assigned_provider_id == winners[0]
        assert db.query(ProviderAssignment).filter(ProviderAssignment.order_id == order_id).count() == 1


# -------------------------------------------------------------------
# Automatic strategies
# -------------------------------------------------------------------

class TestAutomaticRouting:

    def test_round_robin_rotates(self, db, clinic, patient, provider, second_provider):
        RoutingConfigFactory(clinic_id=clinic.id, routing_strategy=RoutingStrategy.ROUND_ROBIN)
        orders = [OrderFactory(clinic_id=clinic.id, patient_id=patient.id) for _ in range(3)]

        picked = [
            routing_service.assign_provider(db, clinic_id=clinic.id, order_id=o.id).id
            for o in orders
        ]

        assert picked == [provider.id, second_provider.id, provider.id]
        config = db.query(ProviderRoutingConfig).filter(ProviderRoutingConfig.clinic_id == clinic.id).one()
        db.refresh(config)
        assert config.last_assigned_index == 0
        assert config.last_assigned_provider_id == provider.id

    def test_state_match_picks_licensed_provider(self, db, clinic, provider, second_provider):
        RoutingConfigFactory(clinic_id=clinic.id, routing_strategy=RoutingStrategy.STATE_LICENSE_MATCH)
        nevadan = PatientFactory(clinic_id=clinic.id, state="NV")
        order = OrderFactory(clinic_id=clinic.id, patient_id=nevadan.id)

        chosen = routing_service.assign_provider(db, clinic_id=clinic.id, order_id=order.id)

        assert chosen.id == provider.id
        db.expire_all()
        assert db.get(Order, order.id).assignment_source == AssignmentSource.STATE_MATCH

    def test_state_match_balances_open_orders(self, db, clinic, patient, provider, second_provider):
        RoutingConfigFactory(clinic_id=clinic.id, routing_strategy=RoutingStrategy.STATE_LICENSE_MATCH)
        OrderFactory(clinic_id=clinic.id, patient_id=patient.id, assigned_provider_id=provider.id)
        order = OrderFactory(clinic_id=clinic.id, patient_id=patient.id)

        chosen = routing_service.assign_provider(db, clinic_id=clinic.id, order_id=order.id)

        assert chosen.id == second_provider.id

    def test_state_match_without_licensed_provider_leaves_unassigned(self, db, clinic, provider, second_provider):
        RoutingConfigFactory(clinic_id=clinic.id, routing_strategy=RoutingStrategy.STATE_LICENSE_MATCH)
        texan = PatientFactory(clinic_id=clinic.id, state="TX")
        order = OrderFactory(clinic_id=clinic.id, patient_id=texan.id)

        assert routing_service.assign_provider(db, clinic_id=clinic.id, order_id=order.id) is None
        db.expire_all()
        assert db.get(Order, order.id).assigned_provider_id is None

    def test_provider_choice_does_not_auto_assign(self, db, clinic, patient, provider, routing_enabled):
        order = OrderFactory(clinic_id=clinic.id, patient_id=patient.id)

        assert routing_service.assign_provider(db, clinic_id=clinic.id, order_id=order.id) is None

    def test_no_active_providers(self, db, clinic, patient):
        RoutingConfigFactory(clinic_id=clinic.id, routing_strategy=RoutingStrategy.ROUND_ROBIN)
        order = OrderFactory(clinic_id=clinic.id, patient_id=patient.id)

        assert routing_service.assign_provider(db, clinic_id=clinic.id, order_id=order.id) is None


class TestAvailableProviders:

    def test_state_filters_to_licensed(self, db, clinic, provider, second_provider):
        providers = routing_service.get_available_providers(db, clinic.id, "NV")

        assert [p.id for p in providers] == [provider.id]

    def test_no_state_lists_every_active_provider(self, db, clinic, provider, second_provider):
        ProviderFactory(clinic_id=clinic.id, status=ProviderStatus.INACTIVE)

        providers = routing_service.get_available_providers(db, clinic.id)

        assert [p.id for p in providers] == [provider.id, second_provider.id]

    def test_falls_back_to_all_when_nobody_is_licensed(self, db, clinic, provider, second_provider):
        providers = routing_service.get_available_providers(db, clinic.id, "TX")

        assert [p.id for p in providers] == [provider.id, second_provider.id]

    def test_other_clinic_providers_are_excluded(self, db, clinic, other_clinic, provider):
        ProviderFactory(clinic_id=other_clinic.id, license_states=["NV"])

        assert [p.id for p in routing_service.get_available_providers(db, clinic.id, "NV")] == [provider.id]


# -------------------------------------------------------------------
# Manual assignment and views
# -------------------------------------------------------------------

class TestManualAssignment:

    def test_admin_assigns_even_when_routing_disabled(self, db, admin, patient, second_provider):
        order = _approved_order(db, admin, patient)

        assigned = routing_service.manually_assign(
            db, ctx_for(admin), order_id=order.id, provider_id=second_provider.id
        )

        assert assigned.assigned_provider_id == second_provider.id
        assert assigned.assignment_source == AssignmentSource.MANUAL
        db.expire_all()
        assert db.get(RefillQueue, order.refill_id).status == RefillStatus.PENDING_PROVIDER

    def test_cannot_reassign(self, db, admin, patient, provider, second_provider):
        order = _approved_order(db, admin, patient)
        routing_service.manually_assign(db, ctx_for(admin), order_id=order.id, provider_id=provider.id)

        with pytest.raises(ConflictError) as exc_info:
            routing_service.manually_assign(db, ctx_for(admin), order_id=order.id, provider_id=second_provider.id)

        assert exc_info.value.code == "ALREADY_CLAIMED"

    def test_provider_from_other_clinic(self, db, admin, patient, other_clinic):
        order = _approved_order(db, admin, patient)
        outsider = ProviderFactory(clinic_id=other_clinic.id)

        with pytest.raises(NotFoundError) as exc_info:
            routing_service.manually_assign(db, ctx_for(admin), order_id=order.id, provider_id=outsider.id)

        assert exc_info.value.code == "PROVIDER_NOT_FOUND"

    def test_staff_cannot_assign(self, db, admin, staff, patient, provider):
        order = _approved_order(db, admin, patient)

        with pytest.raises(ForbiddenError):
            routing_service.manually_assign(db, ctx_for(staff), order_id=order.id, provider_id=provider.id)


class TestRoutingViews:

    def test_provider_view_when_disabled(self, db, provider_user):
        view = routing_service.get_provider_routing_view(db, ctx_for(provider_user))

        assert view == {"enabled": False, "available": [], "assigned": []}

    def test_provider_view_filters_by_license(
        self, db, admin, clinic, patient, second_provider_user, routing_enabled
    ):
        in_state = _approved_order(db, admin, patient)
        _approved_order(db, admin, PatientFactory(clinic_id=clinic.id, state="TX"))

        view = routing_service.get_provider_routing_view(db, ctx_for(second_provider_user))

        assert view["enabled"] is True
        assert [o.id for o in view["available"]] == [in_state.id]
        assert view["assigned"] == []

    def test_assigned_queue_after_claim(self, db, admin, patient, provider_user, routing_enabled):
        order = _approved_order(db, admin, patient)
        routing_service.claim_prescription(db, ctx_for(provider_user), order_id=order.id)

        view = routing_service.get_provider_routing_view(db, ctx_for(provider_user))

        assert view["available"] == []
        assert [o.id for o in view["assigned"]] == [order.id]

    def test_admin_queue_counts_open_orders(self, db, admin, clinic, patient, provider, second_provider):
        routing_service.manually_assign(
            db, ctx_for(admin), order_id=_approved_order(db, admin, patient).id, provider_id=provider.id
        )
        waiting = _approved_order(db, admin, patient)

        queue = routing_service.get_admin_routing_queue(db, ctx_for(admin), clinic_id=clinic.id)

        assert queue["enabled"] is False
        assert queue["strategy"] == RoutingStrategy.PROVIDER_CHOICE.value
        assert [o.id for o in queue["unassigned"]] == [waiting.id]
        counts = {row["provider"].id: row["open_orders"] for row in queue["providers"]}
        assert counts == {provider.id: 1, second_provider.id: 0}

    def test_config_upsert_resets_cursor_on_strategy_change(self, db, admin, clinic):
        RoutingConfigFactory(
            clinic_id=clinic.id, routing_strategy=RoutingStrategy.ROUND_ROBIN, last_assigned_index=3
        )

        config = routing_service.upsert_routing_config(
            db,
            ctx_for(admin),
            clinic_id=clinic.id,
            routing_strategy=RoutingStrategy.STATE_LICENSE_MATCH,
        )

        assert config.routing_strategy == RoutingStrategy.STATE_LICENSE_MATCH
        assert config.last_assigned_index == -1
        assert config.routing_enabled is True
