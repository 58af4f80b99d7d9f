"""Shared HTTP GET with timeout, quota and error mapping."""

import logging
from typing import Optional

import requests

from ..errors import QuotaExceeded, SourceFetchError
from ..quota import QuotaGuard

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "ElectionWatch Monitor Bot 1.0"
TRANSIENT_ERRORS = (requests.exceptions.Timeout, requests.exceptions.ConnectionError)


def http_get(
    url: str,
    timeout: float = 10,
    guard: Optional[QuotaGuard] = None,
    headers: Optional[dict] = None,
    params: Optional[dict] = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> requests.Response:
    """
    GET a URL and return the response.

    Timeouts and connection errors are retried through ``guard`` when given.

    Raises:
        SourceFetchError: on timeout, connection failure, non-2xx status or
            an exhausted quota
    """
    request_headers = {"User-Agent": user_agent}
    if headers:
        request_headers.update(headers)

    def _get():
        response = requests.get(url, headers=request_headers, params=params, timeout=timeout)
        response.raise_for_status()
        return response

    try:
        if guard is not None:
            return guard.call(_get, retry_on=TRANSIENT_ERRORS)
        return _get()
    except requests.exceptions.HTTPError as e:
        status = e.response.status_code if e.response is not None else "?"
        raise SourceFetchError(f"HTTP {status} from {url}") from e
    except requests.exceptions.RequestException as e:
        raise SourceFetchError(f"Request to {url} failed: {e}") from e
    except QuotaExceeded as e:
        raise SourceFetchError(str(e)) from e
