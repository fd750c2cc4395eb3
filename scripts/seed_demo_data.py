#!/usr/bin/env python3
# scripts/seed_demo_data.py
"""
rxflow demo data seeder (2 clinics) + reset.

Per clinic:
- 1 ADMIN, 1 STAFF, 3 PROVIDER users (each linked to a Provider with license states)
- ~20 patients spread across a handful of states
- subscriptions through the real service layer, so refills and shipment
  series are created exactly as the API would create them
- a routing config (clinic A: provider choice, clinic B: round robin with auto-assign)
- one SUPER_ADMIN without a clinic

Demo clinics are tagged by slug prefix "demo-" so --reset only touches them.
Bearer tokens for each demo login are printed at the end.

Run:
  python -m scripts.seed_demo_data --seed
  python -m scripts.seed_demo_data --reset
  python -m scripts.seed_demo_data --reset --seed
"""
from __future__ import annotations

import argparse
import logging
import random
from datetime import timedelta

from sqlalchemy.orm import Session

from rxflow.core.database import SessionLocal
from rxflow.core.request_context import RequestContext
from rxflow.core.security import create_access_token
from rxflow.models.clinic import Clinic
from rxflow.models.patient import Patient
from rxflow.models.provider import Provider
from rxflow.models.routing import RoutingStrategy
from rxflow.models.user import RoleName, User
from rxflow.services import routing_service, subscription_service
from rxflow.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

DEMO_SLUG_PREFIX = "demo-"
DEMO_EMAIL_DOMAIN = "rxflow.demo"
SUPER_ADMIN_EMAIL = f"platform@{DEMO_EMAIL_DOMAIN}"

CLINICS = [
    {"slug": "demo-a", "name": "Demo Clinic A", "bud_days": 90, "strategy": RoutingStrategy.PROVIDER_CHOICE},
    {"slug": "demo-b", "name": "Demo Clinic B", "bud_days": 60, "strategy": RoutingStrategy.ROUND_ROBIN},
]

PROVIDERS = [
    ("Maya", "Okafor", ["CA", "NV", "OR"]),
    ("Daniel", "Reyes", ["TX", "FL"]),
    ("Priya", "Shah", []),  # licensed everywhere
]

FIRST_NAMES = ["Alex", "Jordan", "Sam", "Taylor", "Morgan", "Casey", "Riley", "Avery", "Quinn", "Jamie"]
LAST_NAMES = ["Nguyen", "Smith", "Garcia", "Brown", "Lee", "Patel", "Kim", "Lopez", "Clark", "Hall"]
STATES = ["CA", "TX", "FL", "NV", "OR", "NY"]
MEDICATIONS = ["Semaglutide 2.5mg/mL", "Tirzepatide 10mg/mL", "Testosterone Cypionate 200mg/mL"]
PATIENTS_PER_CLINIC = 20


def _user(db: Session, *, clinic_id: int | None, email: str, first: str, last: str, role: RoleName, provider_id=None) -> User:
    user = User(
        clinic_id=clinic_id,
        provider_id=provider_id,
        email=email,
        first_name=first,
        last_name=last,
        role=role,
        is_active=True,
    )
    db.add(user)
    db.flush()
    return user


def seed_clinic(db: Session, blueprint: dict, rng: random.Random) -> list[User]:
    clinic = Clinic(name=blueprint["name"], slug=blueprint["slug"], default_bud_days=blueprint["bud_days"])
    db.add(clinic)
    db.flush()
    tag = blueprint["slug"]

    logins = [
        _user(db, clinic_id=clinic.id, email=f"admin.{tag}@{DEMO_EMAIL_DOMAIN}", first="Clinic", last="Admin",
              role=RoleName.ADMIN),
        _user(db, clinic_id=clinic.id, email=f"staff.{tag}@{DEMO_EMAIL_DOMAIN}", first="Front", last="Desk",
              role=RoleName.STAFF),
    ]
    for first, last, states in PROVIDERS:
        provider = Provider(clinic_id=clinic.id, first_name=first, last_name=last, license_states=states)
        db.add(provider)
        db.flush()
        logins.append(
            _user(
                db,
                clinic_id=clinic.id,
                email=f"{first.lower()}.{tag}@{DEMO_EMAIL_DOMAIN}",
                first=first,
                last=last,
                role=RoleName.PROVIDER,
                provider_id=provider.id,
            )
        )

    patients = []
    for _ in range(PATIENTS_PER_CLINIC):
        patient = Patient(
            clinic_id=clinic.id,
            first_name=rng.choice(FIRST_NAMES),
            last_name=rng.choice(LAST_NAMES),
            state=rng.choice(STATES),
        )
        db.add(patient)
        patients.append(patient)
    db.commit()

    ctx = RequestContext.system(clinic.id)
    routing_service.upsert_routing_config(
        db,
        ctx,
        clinic_id=clinic.id,
        routing_enabled=True,
        routing_strategy=blueprint["strategy"],
        auto_assign_on_approval=blueprint["strategy"] != RoutingStrategy.PROVIDER_CHOICE,
    )

    now = utc_now()
    for patient in patients:
        # Mix of monthly plans (single refill) and multi-month packages (shipment series).
        package_months = rng.choice([None, None, 3, 6])
        subscription_service.create_subscription(
            db,
            ctx,
            clinic_id=clinic.id,
            patient_id=patient.id,
            plan_name=f"{package_months}-month package" if package_months else "Monthly",
            medication_name=rng.choice(MEDICATIONS),
            vial_count=rng.choice([1, 1, 3]),
            package_months=package_months,
            start_date=now - timedelta(days=rng.randint(0, 10)),
            payment_verified=rng.random() < 0.7,
        )

    logger.info("Seeded %s (%s patients)", clinic.slug, len(patients))
    return logins


def reset(db: Session) -> None:
    clinics = db.query(Clinic).filter(Clinic.slug.like(f"{DEMO_SLUG_PREFIX}%")).all()
    for clinic in clinics:
        db.delete(clinic)
    db.query(User).filter(User.email == SUPER_ADMIN_EMAIL).delete(synchronize_session=False)
    db.commit()
    print(f"Removed {len(clinics)} demo clinic(s)")


def seed(db: Session) -> None:
    if db.query(Clinic).filter(Clinic.slug.like(f"{DEMO_SLUG_PREFIX}%")).first():
        print("Demo clinics already exist. Run with --reset first.")
        return

    rng = random.Random(11)
    logins = [
        _user(db, clinic_id=None, email=SUPER_ADMIN_EMAIL, first="Platform", last="Admin", role=RoleName.SUPER_ADMIN)
    ]
    db.commit()
    for blueprint in CLINICS:
        logins.extend(seed_clinic(db, blueprint, rng))

    print("Demo logins (bearer tokens):")
    for user in logins:
        token = create_access_token(user.id, clinic_id=user.clinic_id, role=user.role.value)
        print(f"  {user.role.value:<12} {user.email:<40} {token}")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="rxflow demo data")
    p.add_argument("--seed", action="store_true", help="Create demo clinics, users and subscriptions")
    p.add_argument("--reset", action="store_true", help="Delete demo clinics (runs before --seed)")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO)

    if not args.seed and not args.reset:
        raise SystemExit("Nothing to do. Use --seed and/or --reset.")

    db: Session = SessionLocal()
    try:
        if args.reset:
            reset(db)
        if args.seed:
            seed(db)
    except Exception:
        db.rollback()
        logger.exception("Demo seed failed")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
