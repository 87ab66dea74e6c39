"""Nexus Mods REST client for mod metadata."""

import os
import time
from typing import Any

import requests

from . import __version__
from .nexus import DEFAULT_GAME_DOMAIN

REST_BASE_URL = "https://api.nexusmods.com/v1"


class NexusAPIError(Exception):
    """Base exception for Nexus API errors."""

    pass


class NexusRateLimited(NexusAPIError):
    """Raised when rate limited by the API."""

    def __init__(self, retry_after: int = 60):
        self.retry_after = retry_after
        super().__init__(f"Rate limited. Retry after {retry_after} seconds.")


class NexusAPI:
    """Client for the Nexus Mods REST API."""

    def __init__(self, api_key: str | None = None, session: requests.Session | None = None):
        self.api_key = api_key or os.environ.get("NEXUS_API_KEY")
        if not self.api_key:
            raise NexusAPIError(
                "No API key provided. Set NEXUS_API_KEY environment variable "
                "or pass --api-key flag."
            )
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "apikey": self.api_key,
                "User-Agent": f"fo76-mod-deploy/{__version__}",
            }
        )
        self._last_request_time = 0.0
        self._min_request_interval = 0.5  # 2 requests per second max

    def _rate_limit_wait(self) -> None:
        """Ensure we don't exceed rate limits."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self._min_request_interval:
            time.sleep(self._min_request_interval - elapsed)
        self._last_request_time = time.time()

    def _handle_response(self, response: requests.Response) -> dict[str, Any]:
        """Handle API response and raise appropriate errors."""
        if response.status_code == 429:
            retry_after = int(response.headers.get("Retry-After", 60))
            raise NexusRateLimited(retry_after)
        if response.status_code == 403:
            raise NexusAPIError(f"Access forbidden: {response.text}")
        if response.status_code == 404:
            raise NexusAPIError(f"Resource not found: {response.url}")
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise NexusAPIError(str(e))
        return response.json()

    def get_mod_info(self, mod_id: int, game_domain: str = DEFAULT_GAME_DOMAIN) -> dict[str, Any]:
        """Get mod metadata (name, version, summary, ...) from the REST API."""
        if mod_id < 0:
            raise NexusAPIError("Mod has no Nexus Mods page")
        self._rate_limit_wait()
        url = f"{REST_BASE_URL}/games/{game_domain}/mods/{mod_id}.json"
        response = self.session.get(url)
        return self._handle_response(response)
