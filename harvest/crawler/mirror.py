"""Optional image mirroring to Cloudflare Images (import by URL)."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

LOGGER = logging.getLogger(__name__)

CF_IMAGES_URL = "https://api.cloudflare.com/client/v4/accounts/{account_id}/images/v1"
MIRROR_DELAY = 0.15  # seconds between uploads, keeps under the API rate limit


class ImageMirror:
    """Best-effort copy of product images to an external host.

    Nothing here raises: a failed upload just yields no mirror id.
    """

    def __init__(
        self,
        account_id: Optional[str] = None,
        token: Optional[str] = None,
        *,
        delay: float = MIRROR_DELAY,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.account_id = account_id
        self.token = token
        self.delay = delay
        self._client = client
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.account_id and self.token)

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(self._timeout))
        return self._client

    def mirror(self, image_url: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Ask the image host to import ``image_url``.

        Returns
        -------
        str or None
            Remote image id, or None when disabled or on any failure
            (duplicate uploads included)
        """
        if not self.enabled:
            return None

        form = {
            "url": (None, image_url),
            "requireSignedURLs": (None, "false"),
            "metadata": (None, json.dumps(metadata or {})),
        }
        try:
            response = self.client.post(
                CF_IMAGES_URL.format(account_id=self.account_id),
                headers={"Authorization": f"Bearer {self.token}"},
                files=form,
            )
            payload = response.json()
        except Exception as exc:
            LOGGER.warning("Image mirror failed for %s: %s", image_url, exc)
            return None

        if not isinstance(payload, dict) or not payload.get("success"):
            errors = payload.get("errors") if isinstance(payload, dict) else payload
            LOGGER.warning("Image mirror rejected %s: %s", image_url, errors)
            return None

        result = payload.get("result") or {}
        return result.get("id") or None

    def mirror_all(self, handle: str, images: List[str]) -> Dict[str, str]:
        """Mirror images in order and map each mirrored URL to its remote id."""
        mirrored: Dict[str, str] = {}
        if not self.enabled:
            return mirrored

        for position, image_url in enumerate(images):
            if position:
                time.sleep(self.delay)
            image_id = self.mirror(image_url, {"handle": handle, "pos": position})
            if image_id:
                mirrored[image_url] = image_id

        LOGGER.debug("Mirrored %d/%d image(s) for %s", len(mirrored), len(images), handle)
        return mirrored

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
