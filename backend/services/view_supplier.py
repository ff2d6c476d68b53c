"""
View supplier: where current view counts come from.

The engine never talks to a social platform directly. Anything that can turn
(platform, url) into a ViewSnapshot satisfies the ViewSupplier protocol.

HttpViewSupplier talks to a view-tracking API:
  Endpoint:   GET {VIEW_SUPPLIER_BASE_URL}/views?platform=...&url=...
  Auth:       Authorization: Bearer <VIEW_SUPPLIER_API_KEY>
  Response:   {"views": int, "likes": int | null, "shares": int | null}
  Rate limit: returns 429 when exceeded

Retries on 429, 5xx and network errors with linear backoff. Any failure that
survives the retries is raised as ViewSupplierError so callers can skip the
one clip and keep going.
"""

import logging
import time
from typing import Optional, Protocol

import httpx

import config
from models.schemas import ViewSnapshot

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MAX_RETRIES = 3            # Retry count for network/rate-limit errors
RETRY_BACKOFF_BASE = 2.0   # Linear backoff base (2s, 4s, 6s)


class ViewSupplierError(RuntimeError):
    """A view count could not be obtained for one clip."""


class ViewSupplier(Protocol):
    def fetch_snapshot(self, platform: str, url: str) -> ViewSnapshot:
        ...


# ===========================================================================
# HTTP implementation
# ===========================================================================

class HttpViewSupplier:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        backoff_base: float = RETRY_BACKOFF_BASE,
    ):
        self.base_url = (base_url if base_url is not None else config.VIEW_SUPPLIER_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.VIEW_SUPPLIER_API_KEY
        self.backoff_base = backoff_base
        self._client = client or httpx.Client(
            timeout=timeout if timeout is not None else config.HTTP_TIMEOUT
        )

    def close(self) -> None:
        self._client.close()

    def fetch_snapshot(self, platform: str, url: str) -> ViewSnapshot:
        """
        Fetch the current counts for one clip.

        Raises:
            ViewSupplierError: on a non-retryable response, a malformed body,
                               or once all retries are exhausted
        """
        params = {"platform": platform, "url": url}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        endpoint = f"{self.base_url}/views"

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.get(endpoint, params=params, headers=headers)
            except httpx.RequestError as e:
                # Network error or timeout: retry with backoff
                wait_time = self.backoff_base * attempt
                logger.warning(
                    f"Network error fetching views for {url}, "
                    f"attempt {attempt}/{MAX_RETRIES}: {e}"
                )
                if attempt < MAX_RETRIES:
                    time.sleep(wait_time)
                    continue
                raise ViewSupplierError(
                    f"Failed to fetch views for {url} after {MAX_RETRIES} retries: {e}"
                ) from e

            # --- Success ---
            if response.status_code == 200:
                return _parse_snapshot(response, url)

            # --- Rate limited (429) or server error (5xx): retryable ---
            if response.status_code == 429 or response.status_code >= 500:
                wait_time = self.backoff_base * attempt
                logger.warning(
                    f"View supplier returned {response.status_code} for {url}, "
                    f"attempt {attempt}/{MAX_RETRIES}, waiting {wait_time}s..."
                )
                if attempt < MAX_RETRIES:
                    time.sleep(wait_time)
                continue

            # --- Client error (4xx, not 429): not retryable ---
            raise ViewSupplierError(
                f"View supplier returned {response.status_code} for {url}: {response.text[:200]}"
            )

        raise ViewSupplierError(f"All {MAX_RETRIES} retries exhausted for {url}")


def _parse_snapshot(response: httpx.Response, url: str) -> ViewSnapshot:
    try:
        data = response.json()
        views = int(data["views"])
    except (ValueError, KeyError, TypeError) as e:
        raise ViewSupplierError(f"Malformed view supplier response for {url}: {e}") from e

    if views < 0:
        raise ViewSupplierError(f"Negative view count for {url}: {views}")

    return ViewSnapshot(
        views=views,
        likes=_safe_int(data.get("likes")),
        shares=_safe_int(data.get("shares")),
    )


def _safe_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def build_view_supplier() -> Optional[HttpViewSupplier]:
    """The configured supplier, or None when VIEW_SUPPLIER_BASE_URL is unset."""
    if not config.VIEW_SUPPLIER_BASE_URL:
        return None
    return HttpViewSupplier()
