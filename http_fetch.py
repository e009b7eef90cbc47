"""Blocking HTTP fetch shared by the HTML crawler and the PDF downloader."""

from __future__ import annotations

import logging
import os

import requests

from errors import FetchError

REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
MAX_REDIRECTS = 5

# Generic browser headers; some admissions sites reject the default requests UA.
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

LOGGER = logging.getLogger(__name__)


def fetch(
    url: str,
    *,
    timeout: float | None = None,
    max_redirects: int = MAX_REDIRECTS,
    headers: dict[str, str] | None = None,
) -> requests.Response:
    """GET a URL with browser-like headers, raising FetchError unless the final status is 2xx."""
    timeout = REQUEST_TIMEOUT_SECONDS if timeout is None else timeout
    LOGGER.debug("Fetching %s", url, extra={"fields": {"url": url}})

    with requests.Session() as session:
        session.max_redirects = max_redirects
        try:
            response = session.get(
                url,
                headers=headers or BROWSER_HEADERS,
                timeout=timeout,
                allow_redirects=True,
            )
        except requests.TooManyRedirects as exc:
            raise FetchError(url, "Too many redirects") from exc
        except requests.Timeout as exc:
            LOGGER.warning("Request timeout for %s", url, extra={"fields": {"url": url, "timeout": timeout}})
            raise FetchError(url, "Request timeout") from exc
        except requests.RequestException as exc:
            raise FetchError(url, f"Request error: {exc}") from exc

    if not 200 <= response.status_code < 300:
        raise FetchError(url, f"HTTP {response.status_code}")

    LOGGER.debug(
        "Fetched %s (%s bytes, %s redirects)",
        url,
        len(response.content),
        len(response.history),
        extra={"fields": {"url": url, "content_length": len(response.content), "redirects": len(response.history)}},
    )
    return response
