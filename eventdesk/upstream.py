from __future__ import annotations

import logging
from typing import Any

import requests

from eventdesk.errors import NetworkError, UpstreamRejected, UpstreamTimeout


logger = logging.getLogger(__name__)

BODY_PREVIEW_CHARS = 2000


def send(
    http: requests.Session,
    method: str,
    url: str,
    *,
    timeout: float,
    service: str,
    **kwargs: Any,
) -> requests.Response:
    """Issue one request and translate transport failures and non-2xx answers."""
    try:
        response = http.request(method, url, timeout=timeout, **kwargs)
    except requests.Timeout as exc:
        logger.warning("%s %s %s timed out after %ss", service, method, url, timeout)
        raise UpstreamTimeout(f"{service} did not answer within {timeout}s", original_error=exc) from exc
    except requests.RequestException as exc:
        logger.warning("%s %s %s failed: %s", service, method, url, exc)
        raise NetworkError(f"{service} is unreachable: {exc}", original_error=exc) from exc
    if not response.ok:
        body = response.text[:BODY_PREVIEW_CHARS]
        logger.error("%s %s %s -> HTTP %s: %s", service, method, url, response.status_code, body)
        raise UpstreamRejected(
            f"{service} API error: {response.status_code}",
            status=response.status_code,
            body=body,
        )
    return response


def json_body(response: requests.Response) -> dict[str, Any]:
    if response.status_code == 204 or not response.content:
        return {}
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError("Upstream response root must be an object.")
    return payload
