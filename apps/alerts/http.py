"""
Small JSON-over-HTTP helper shared by the monitoring source, enrichment and
evidence steps.
"""

from __future__ import annotations

import base64
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

logger = logging.getLogger(__name__)

USER_AGENT = "AlertTriage/1.0"


class HttpError(Exception):
    """Non-2xx response or transport failure."""

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


def basic_auth_header(user: str, token: str) -> str:
    raw = f"{user}:{token}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def _send(
    url: str,
    *,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    payload: Any = None,
    auth: tuple[str, str] | None = None,
    timeout: float = 10.0,
) -> str:
    if params:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}{urllib.parse.urlencode(params)}"

    request_headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
    data = None
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        request_headers["Content-Type"] = "application/json"
    if auth:
        request_headers["Authorization"] = basic_auth_header(*auth)
    request_headers.update(headers or {})

    request = urllib.request.Request(url, data=data, headers=request_headers, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if e.fp else ""
        raise HttpError(f"HTTP error ({e.code}): {e.reason}", status=e.code, body=body) from e
    except urllib.error.URLError as e:
        raise HttpError(f"Request to {url} failed: {e.reason}") from e
    except TimeoutError as e:
        raise HttpError(f"Request to {url} timed out after {timeout}s") from e


def request_json(url: str, **kwargs: Any) -> Any:
    """Send a request and decode the JSON response body (``None`` for an empty body)."""
    body = _send(url, **kwargs)
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise HttpError(f"Invalid JSON from {url}", body=body[:500]) from e


def request_text(url: str, **kwargs: Any) -> str:
    return _send(url, **kwargs)
