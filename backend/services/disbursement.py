"""
Disbursement sink: hands finalized payout records to whatever moves money.

WebhookDisbursementSink POSTs each record as JSON:
  Endpoint:  POST {DISBURSEMENT_WEBHOOK_URL}
  Auth:      Authorization: Bearer <DISBURSEMENT_API_KEY>
  Headers:   Idempotency-Key: payout-<record id>
  Success:   any 2xx means the receiver has the record

The idempotency key is what makes retrying a half-finished hand-off safe.
The receiver dedupes on it, so a record that was delivered but never marked
PAID (e.g. the process died in between) is not paid twice.
"""

import logging
import time
from typing import Optional, Protocol

import httpx

import config
from db.models import PayoutRecord

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 2.0


class DisbursementError(RuntimeError):
    """A payout record could not be handed to the sink."""


class DisbursementSink(Protocol):
    def disburse(self, record: PayoutRecord) -> bool:
        ...


def idempotency_key(record: PayoutRecord) -> str:
    return f"payout-{record.id}"


def record_payload(record: PayoutRecord) -> dict:
    return {
        "payout_id": record.id,
        "campaign_id": record.campaign_id,
        "clip_id": record.clip_id,
        "user_id": record.user_id,
        "amount": f"{record.amount:.2f}",
        "currency": "USD",
        "period_views": record.period_views,
        "budget_limited": record.budget_limited,
        "computed_at": record.computed_at.isoformat() if record.computed_at else None,
    }


class WebhookDisbursementSink:
    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        backoff_base: float = RETRY_BACKOFF_BASE,
    ):
        self.url = url if url is not None else config.DISBURSEMENT_WEBHOOK_URL
        self.api_key = api_key if api_key is not None else config.DISBURSEMENT_API_KEY
        self.backoff_base = backoff_base
        self._client = client or httpx.Client(
            timeout=timeout if timeout is not None else config.HTTP_TIMEOUT
        )

    def close(self) -> None:
        self._client.close()

    def disburse(self, record: PayoutRecord) -> bool:
        """
        Deliver one record. Returns True once the receiver confirms (2xx).

        Raises:
            DisbursementError: on a non-retryable response or exhausted retries
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key(record),
        }
        payload = record_payload(record)

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.post(self.url, json=payload, headers=headers)
            except httpx.RequestError as e:
                logger.warning(
                    f"Network error disbursing payout {record.id}, "
                    f"attempt {attempt}/{MAX_RETRIES}: {e}"
                )
                if attempt < MAX_RETRIES:
                    time.sleep(self.backoff_base * attempt)
                    continue
                raise DisbursementError(
                    f"Failed to disburse payout {record.id} after {MAX_RETRIES} retries: {e}"
                ) from e

            if 200 <= response.status_code < 300:
                logger.debug(f"Payout {record.id} accepted by sink ({response.status_code})")
                return True

            if response.status_code == 429 or response.status_code >= 500:
                wait_time = self.backoff_base * attempt
                logger.warning(
                    f"Sink returned {response.status_code} for payout {record.id}, "
                    f"attempt {attempt}/{MAX_RETRIES}, waiting {wait_time}s..."
                )
                if attempt < MAX_RETRIES:
                    time.sleep(wait_time)
                continue

            raise DisbursementError(
                f"Sink rejected payout {record.id} with {response.status_code}: {response.text[:200]}"
            )

        raise DisbursementError(f"All {MAX_RETRIES} retries exhausted for payout {record.id}")


def build_disbursement_sink() -> Optional[WebhookDisbursementSink]:
    """The configured sink, or None when DISBURSEMENT_WEBHOOK_URL is unset."""
    if not config.DISBURSEMENT_WEBHOOK_URL:
        return None
    return WebhookDisbursementSink()
