# rxflow/services/idempotency_service.py
"""
Idempotency ledger for mutating requests.

A client retries with the same Idempotency-Key and gets the first call's
response back, without the mutation running twice. The first call reserves
the key by committing a record without a response before it runs; a retry
that arrives while that call is still running waits for the response and
replays it. Redis holds a copy of finished records for fast replay; the
idempotency_records table is authoritative.
"""
from __future__ import annotations

import hashlib
import json
import logging
import time
from datetime import timedelta
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rxflow.core.config import get_settings
from rxflow.core.errors import ConflictError, ValidationError
from rxflow.core.redis import cache_get, cache_set
from rxflow.core.request_context import RequestContext
from rxflow.models.idempotency import IdempotencyRecord
from rxflow.utils.datetime_utils import utc_now

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "idem:"
MAX_KEY_LENGTH = 255
POLL_INTERVAL_SECONDS = 0.1

IdempotentResult = tuple[int, Any]


def request_fingerprint(method: str, path: str, body: Any = None) -> str:
    """Stable hash of a request; key order in the body does not matter."""
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{method.upper()} {path}\n{canonical}".encode("utf-8")).hexdigest()


def _redis_key(resource: str, key: str) -> str:
    return f"{REDIS_KEY_PREFIX}{resource}:{key}"


def _snapshot(record: IdempotencyRecord) -> dict:
    return {
        "clinic_id": record.clinic_id,
        "request_fingerprint": record.request_fingerprint,
        "response_status": record.response_status,
        "response_body": record.response_body,
    }


def _lookup(db: Session, key: str, resource: str) -> dict | None:
    cached = cache_get(_redis_key(resource, key))
    if cached:
        return json.loads(cached)
    record = (
        db.query(IdempotencyRecord)
        .filter(IdempotencyRecord.key == key, IdempotencyRecord.resource == resource)
        .populate_existing()
        .first()
    )
    return _snapshot(record) if record else None


def _ensure_same_request(snapshot: dict, ctx: RequestContext, fingerprint: str | None, key: str) -> None:
    """Refuse keys reused for another request or by another clinic."""
    same_clinic = ctx.is_super_admin or snapshot["clinic_id"] == ctx.clinic_id
    if not same_clinic or snapshot["request_fingerprint"] != fingerprint:
        logger.warning("Idempotency key %s reused for a different request", key)
        raise ConflictError(
            "Idempotency key was already used for a different request",
            code="IDEMPOTENCY_KEY_REUSED",
        )


def _cache(snapshot: dict, resource: str, key: str) -> None:
    ttl = get_settings().idempotency_retention_hours * 3600
    cache_set(_redis_key(resource, key), json.dumps(snapshot), ttl=ttl)


def _reserve(
    db: Session,
    *,
    key: str,
    resource: str,
    ctx: RequestContext,
    fingerprint: str | None,
    clinic_id: int | None,
) -> int | None:
    """
    Insert the pending record. Returns its id, or None when another call
    holds the key already.
    """
    record = IdempotencyRecord(
        key=key,
        resource=resource,
        clinic_id=clinic_id,
        user_id=ctx.user_id,
        request_fingerprint=fingerprint,
    )
    db.add(record)
    try:
        db.flush()
        record_id = record.id
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Idempotency key %s reserved concurrently; waiting for its response", key)
        return None
    return record_id


def _release(db: Session, record_id: int, key: str) -> None:
    """Drop a reservation whose call failed so the client can retry."""
    try:
        db.rollback()
        db.query(IdempotencyRecord).filter(IdempotencyRecord.id == record_id).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("Could not release idempotency key %s", key, exc_info=True)


def _claim_or_replay(
    db: Session,
    *,
    key: str,
    resource: str,
    ctx: RequestContext,
    fingerprint: str | None,
    clinic_id: int | None,
) -> tuple[int | None, IdempotentResult | None]:
    """
    Either reserve the key (returns its record id) or return the stored
    response of the call that holds it, waiting while that call runs.
    """
    deadline = time.monotonic() + get_settings().idempotency_wait_seconds
    while True:
        snapshot = _lookup(db, key, resource)
        if snapshot is None:
            record_id = _reserve(
                db, key=key, resource=resource, ctx=ctx, fingerprint=fingerprint, clinic_id=clinic_id
            )
            if record_id is not None:
                return record_id, None
        else:
            _ensure_same_request(snapshot, ctx, fingerprint, key)
            if snapshot["response_status"] is not None:
                logger.info("Replaying stored response for idempotency key %s", key)
                return None, (snapshot["response_status"], json.loads(snapshot["response_body"]))

        if time.monotonic() >= deadline:
            raise ConflictError(
                "A request with this Idempotency-Key is still in progress",
                code="IDEMPOTENCY_REQUEST_IN_PROGRESS",
            )
        time.sleep(POLL_INTERVAL_SECONDS)


def with_idempotency(
    db: Session,
    *,
    key: str | None,
    resource: str,
    ctx: RequestContext,
    fingerprint: str | None,
    clinic_id: int | None,
    fn: Callable[[], IdempotentResult],
) -> IdempotentResult:
    """
    Run `fn` at most once per (key, resource).

    `fn` returns (status, body). Only 2xx results are stored; errors raised
    by `fn` propagate and release the key, so the client may retry. Without
    a key, `fn` simply runs.
    """
    if not key:
        return fn()
    key = key.strip()
    if not key or len(key) > MAX_KEY_LENGTH:
        raise ValidationError("Idempotency-Key must be 1-255 characters", code="INVALID_IDEMPOTENCY_KEY")

    record_id, stored = _claim_or_replay(
        db, key=key, resource=resource, ctx=ctx, fingerprint=fingerprint, clinic_id=clinic_id
    )
    if stored is not None:
        return stored

    try:
        status_code, body = fn()
    except Exception:
        _release(db, record_id, key)
        raise
    if not 200 <= status_code < 300:
        _release(db, record_id, key)
        return status_code, body

    response_body = json.dumps(body, default=str)
    db.query(IdempotencyRecord).filter(IdempotencyRecord.id == record_id).update(
        {
            IdempotencyRecord.response_status: status_code,
            IdempotencyRecord.response_body: response_body,
        },
        synchronize_session=False,
    )
    db.commit()

    _cache(
        {
            "clinic_id": clinic_id,
            "request_fingerprint": fingerprint,
            "response_status": status_code,
            "response_body": response_body,
        },
        resource,
        key,
    )
    # Return the stored form so the first response and replays are identical.
    return status_code, json.loads(response_body)


def purge_expired_records(db: Session, *, older_than_hours: int | None = None) -> int:
    """Delete records past the retention window. Returns the number removed."""
    hours = older_than_hours if older_than_hours is not None else get_settings().idempotency_retention_hours
    cutoff = utc_now() - timedelta(hours=hours)
    removed = (
        db.query(IdempotencyRecord)
        .filter(IdempotencyRecord.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("Purged %s idempotency records older than %s hours", removed, hours)
    return removed
