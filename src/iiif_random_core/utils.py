"""HTTP and URL helpers shared by the pipeline and the storage layer."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

import requests
from requests import RequestException

from .logger import get_logger, summarize_for_debug

logger = get_logger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "iiif-random-display/0.3 (+https://iiif.io)",
    "Accept": 'application/ld+json;profile="http://iiif.io/api/presentation/3/context.json",application/json;q=0.9,*/*;q=0.5',
    "Accept-Language": "en-US,en;q=0.9",
}


class ManifestFetchError(RuntimeError):
    """Raised when a manifest cannot be downloaded or decoded."""

    def __init__(self, url: str, message: str):
        """Keep the offending URL alongside the message."""
        super().__init__(f"{url}: {message}")
        self.url = url


def build_session() -> requests.Session:
    """Create a `requests.Session` preloaded with the default headers."""
    session = requests.Session()
    session.headers.update(DEFAULT_HEADERS)
    return session


def _log_request_exception(url: str, exc: RequestException) -> None:
    logger.error("Failed to fetch manifest %s: %s", url, exc)
    response = getattr(exc, "response", None)
    if response is not None:
        status_code = getattr(response, "status_code", None)
        if status_code is not None:
            logger.error("HTTP Status: %s", status_code)
        response_text = getattr(response, "text", None)
        if response_text:
            logger.debug("Response preview: %s", summarize_for_debug(response_text))


def fetch_manifest_json(url: str, session: requests.Session | None = None, timeout: float = 20) -> dict[str, Any]:
    """Fetch and decode one manifest; any transport, status or JSON problem raises ManifestFetchError."""
    http = session or requests
    logger.debug("Fetching manifest %s", url)
    try:
        resp = http.get(url, timeout=timeout)
        resp.raise_for_status()
    except RequestException as exc:
        _log_request_exception(url, exc)
        raise ManifestFetchError(url, str(exc)) from exc

    try:
        data = resp.json()
    except ValueError as exc:
        logger.error("JSON parsing error from %s: %s", url, exc)
        logger.debug("Response preview: %s", summarize_for_debug(resp.text or ""))
        raise ManifestFetchError(url, f"malformed JSON: {exc}") from exc

    if not isinstance(data, dict):
        logger.error("Manifest %s is not a JSON object (got %s)", url, type(data).__name__)
        raise ManifestFetchError(url, "manifest body is not a JSON object")
    return data


def is_valid_url(value: str) -> bool:
    """Return True for an absolute URL (scheme and host) without whitespace."""
    candidate = (value or "").strip()
    if not candidate or any(ch.isspace() for ch in candidate):
        return False
    try:
        parts = urlsplit(candidate)
        port_ok = parts.port is None or parts.port > 0
    except ValueError:
        return False
    return bool(parts.scheme and parts.hostname) and port_ok


def url_origin(url: str) -> str | None:
    """Return `scheme://host[:port]` for `url`, or None when it is not absolute."""
    try:
        parts = urlsplit((url or "").strip())
        port = parts.port
    except ValueError:
        return None
    host = parts.hostname
    if not parts.scheme or not host:
        return None
    if ":" in host:
        host = f"[{host}]"
    return f"{parts.scheme}://{host}:{port}" if port else f"{parts.scheme}://{host}"
