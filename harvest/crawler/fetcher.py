"""Single-attempt HTTP fetcher for product pages."""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..config import DEFAULT_USER_AGENT
from ..errors import NetworkError

DEFAULT_TIMEOUT = 20.0
LOGGER = logging.getLogger(__name__)


class PageFetcher:
    """Fetch page HTML with a bounded timeout.

    There is no retry here: a failed URL is retried only by a later claim
    after the worker marks it ``error``.
    """

    def __init__(
        self,
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ) -> None:
        headers = {
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml",
        }
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(timeout),
            headers=headers,
            follow_redirects=True,
        )
        if client is not None:
            self.client.headers.update(headers)

    def fetch(self, url: str) -> str:
        """Return the response body of ``url``.

        Raises
        ------
        NetworkError
            On timeout, transport failure or non-2xx status
        """
        try:
            response = self.client.get(url)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Timeout fetching {url}") from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"Request failed: {exc}") from exc

        if not response.is_success:
            raise NetworkError(f"HTTP {response.status_code}")

        LOGGER.debug("Fetched %s (status=%s, %d bytes)", url, response.status_code, len(response.content))
        return response.text

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> PageFetcher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
