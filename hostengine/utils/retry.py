"""
Backoff schedule shared by HTTP calls and transfer retries.

HTTP calls (catalog lookups, Steam Web API queries, outbound
notifications) go through request_with_retry, which retries rate
limiting, 5xx answers, timeouts and dropped connections.
"""

import time
from dataclasses import dataclass
from typing import Any, Optional

import requests
from loguru import logger

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


@dataclass
class RetryConfig:
    """
    :param max_retries: Retries after the first attempt
    :param backoff_factor: Seconds multiplied by 2**attempt between attempts
    :param retry_on_timeout: Retry requests.Timeout
    :param retry_on_connection_error: Retry requests.ConnectionError
    :param request_timeout: Timeout in seconds passed to each HTTP request
    """

    max_retries: int = 3
    backoff_factor: float = 1.0
    retry_on_timeout: bool = True
    retry_on_connection_error: bool = True
    request_timeout: float = 10.0


def backoff_delay(config: RetryConfig, attempt: int) -> float:
    """Seconds to wait after the 0-based `attempt` failed."""
    return config.backoff_factor * (2**attempt)


def should_retry_exception(exc: Exception, config: RetryConfig) -> bool:
    if isinstance(exc, requests.HTTPError):
        return (
            exc.response is not None
            and exc.response.status_code in RETRYABLE_STATUS_CODES
        )
    if isinstance(exc, requests.Timeout):
        return config.retry_on_timeout
    if isinstance(exc, requests.ConnectionError):
        return config.retry_on_connection_error
    return False


def request_with_retry(
    method: str,
    url: str,
    data: Optional[dict[str, str]] = None,
    json: Any = None,
    config: Optional[RetryConfig] = None,
) -> requests.Response:
    """
    Send a GET or POST, retrying transient failures.

    A bad status is raised through raise_for_status() and retried only when
    it is in RETRYABLE_STATUS_CODES.

    :param method: "GET" or "POST"
    :param url: URL to request
    :param data: Query parameters for GET, form data for POST
    :param json: JSON body for POST
    :param config: Retry configuration, defaults to RetryConfig()
    :raises ValueError: On any other method
    :raises requests.RequestException: On a non-retryable error or once retries run out
    """
    config = config or RetryConfig()
    method = method.upper()
    if method not in ("GET", "POST"):
        raise ValueError(f"Unsupported HTTP method: {method}")

    attempt = 0
    while True:
        try:
            if method == "POST":
                response = requests.post(
                    url, data=data, json=json, timeout=config.request_timeout
                )
            else:
                response = requests.get(
                    url, params=data, timeout=config.request_timeout
                )
            response.raise_for_status()
            return response
        except requests.RequestException as e:
            if not should_retry_exception(e, config) or attempt >= config.max_retries:
                logger.warning(
                    f"{method} {url} failed after {attempt + 1} attempt(s): "
                    f"{e.__class__.__name__}"
                )
                raise
            delay = backoff_delay(config, attempt)
            logger.info(
                f"{method} {url} attempt {attempt + 1}/{config.max_retries + 1} failed "
                f"({e.__class__.__name__}), retrying in {delay:.1f}s"
            )
            time.sleep(delay)
            attempt += 1
