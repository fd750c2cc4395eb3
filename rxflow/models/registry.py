# rxflow/models/registry.py
# Importing this module registers every table on Base.metadata
# (alembic autogenerate, test schema creation).
from rxflow.models.audit import AuditLog
from rxflow.models.clinic import Clinic
from rxflow.models.dead_letter import DeadLetterEvent
from rxflow.models.idempotency import IdempotencyRecord
from rxflow.models.job_run import JobRun
from rxflow.models.order import Order, ProviderAssignment
from rxflow.models.patient import Patient
from rxflow.models.provider import Provider
from rxflow.models.refill import RefillQueue
from rxflow.models.routing import ProviderRoutingConfig
from rxflow.models.subscription import Subscription
from rxflow.models.user import User

__all__ = [
    "AuditLog",
    "Clinic",
    "DeadLetterEvent",
    "IdempotencyRecord",
    "JobRun",
    "Order",
    "Patient",
    "Provider",
    "ProviderAssignment",
    "ProviderRoutingConfig",
    "RefillQueue",
    "Subscription",
    "User",
]
