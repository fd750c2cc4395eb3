# rxflow/integrations/pharmacy_client.py
import logging
import time
from typing import Any

import httpx

from rxflow.core.config import get_settings
from rxflow.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

# Seconds between attempts; multiplied by the attempt number.
RETRY_BACKOFF_SECONDS = 0.5


def is_configured() -> bool:
    return bool(get_settings().pharmacy_api_url)


def submit_prescription(payload: dict[str, Any]) -> str | None:
    """
    Send a completed prescription to the fulfilment pharmacy.

    Returns the pharmacy's reference, or None when no pharmacy is configured.
    Raises ExternalServiceError once the bounded retries are exhausted;
    4xx answers are not retried.
    """
    settings = get_settings()
    if not settings.pharmacy_api_url:
        logger.debug("PHARMACY_API_URL not set; skipping submission for order %s", payload.get("order_id"))
        return None

    url = f"{settings.pharmacy_api_url.rstrip('/')}/prescriptions"
    headers = {"Content-Type": "application/json"}
    if settings.pharmacy_api_key:
        headers["Authorization"] = f"Bearer {settings.pharmacy_api_key}"

    attempts = settings.external_call_max_retries + 1
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            response = httpx.post(
                url,
                json=payload,
                headers=headers,
                timeout=settings.external_call_timeout_seconds,
            )
            response.raise_for_status()
            body = response.json() if response.content else {}
            reference = body.get("reference") or body.get("id")
            logger.info("Order %s submitted to pharmacy (ref=%s)", payload.get("order_id"), reference)
            return str(reference) if reference is not None else None
        except httpx.HTTPStatusError as exc:
            last_error = exc
            if exc.response.status_code < 500:
                logger.error(
                    "Pharmacy rejected order %s with %s",
                    payload.get("order_id"),
                    exc.response.status_code,
                )
                break
        except httpx.HTTPError as exc:
            last_error = exc

        logger.warning(
            "Pharmacy submission attempt %s/%s for order %s failed: %s",
            attempt,
            attempts,
            payload.get("order_id"),
            last_error,
        )
        if attempt < attempts:
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)

    raise ExternalServiceError(
        "Pharmacy submission failed",
        code="PHARMACY_SUBMISSION_FAILED",
        detail={"order_id": payload.get("order_id"), "error": str(last_error)},
    )
