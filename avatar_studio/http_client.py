import time
import random
import logging
from typing import Iterable, Optional

import requests

from .errors import PermanentProviderError, TransientProviderError, ProviderError

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 4
BASE_DELAY = 2.0       # seconds, doubles each retry: 2, 4, 8, 16
JITTER_MAX = 1.0
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
DEFAULT_TIMEOUT = 60


def _sleep_for(attempt: int, retry_after: Optional[str] = None) -> float:
    if retry_after and retry_after.isdigit():
        return float(retry_after)
    return BASE_DELAY * (2 ** attempt) + random.uniform(0, JITTER_MAX)


def provider_error(provider: str, response: requests.Response) -> ProviderError:
    """Map a non-2xx provider response onto the provider error hierarchy."""
    try:
        body = response.json()
    except ValueError:
        body = None

    message = response.text[:500] if body is None else str(body)[:500]
    reason = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            message = err.get("message") or message
            reason = err.get("status") or err.get("code")
        elif body.get("description"):
            message = body["description"]
        elif body.get("detail"):
            message = str(body["detail"])

    status = response.status_code
    error_cls = TransientProviderError if status in RETRYABLE_STATUS_CODES else PermanentProviderError
    return error_cls(provider, f"HTTP {status}: {message}", status_code=status, reason=reason)


def request_with_backoff(
    method: str,
    url: str,
    provider: str,
    passthrough_statuses: Iterable[int] = (),
    **kwargs,
) -> requests.Response:
    """
    Make an HTTP request with exponential backoff on retryable errors (429, 5xx).

    Uses: base_delay * 2^attempt + random jitter, or the Retry-After header.

    Args:
        provider: name used in logs and raised errors
        passthrough_statuses: non-2xx codes returned to the caller instead
            of raised (e.g. 404 while an operation is not yet visible)

    Raises:
        TransientProviderError: retries exhausted on 429/5xx or network errors
        PermanentProviderError: any other non-2xx response
    """
    kwargs.setdefault("timeout", DEFAULT_TIMEOUT)
    passthrough = set(passthrough_statuses)

    for attempt in range(MAX_RETRIES + 1):
        try:
            response = requests.request(method, url, **kwargs)
        except requests.exceptions.RequestException as e:
            if attempt >= MAX_RETRIES:
                raise TransientProviderError(provider, f"Request failed: {e}") from e
            delay = _sleep_for(attempt)
            logger.warning(
                f"{provider} request error on attempt {attempt + 1}/{MAX_RETRIES + 1}: {e}, "
                f"retrying in {delay:.1f}s"
            )
            time.sleep(delay)
            continue

        if response.ok or response.status_code in passthrough:
            return response

        if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= MAX_RETRIES:
            raise provider_error(provider, response)

        delay = _sleep_for(attempt, response.headers.get("Retry-After"))
        logger.warning(
            f"{provider} {response.status_code} on attempt {attempt + 1}/{MAX_RETRIES + 1}, "
            f"retrying in {delay:.1f}s (url={url})"
        )
        time.sleep(delay)

    raise TransientProviderError(provider, f"Request to {url} failed after {MAX_RETRIES + 1} attempts")
