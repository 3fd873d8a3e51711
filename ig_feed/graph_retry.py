from __future__ import annotations

import httpx


def _retry_after_seconds(response: httpx.Response | None) -> float | None:
    if response is None:
        return None
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def is_retryable_graph_exception(exc: BaseException) -> tuple[bool, float | None, str | None]:
    """
    Graph API retry policy:
    - connection and timeout errors
    - HTTP 429 (honouring Retry-After)
    - HTTP 5xx
    """
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        if code == 429 or code >= 500:
            return True, _retry_after_seconds(exc.response), f"http_{code}"
        return False, None, f"http_{code}"

    if isinstance(exc, httpx.TimeoutException):
        return True, None, "timeout"

    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return True, None, "network_error"

    return False, None, None
