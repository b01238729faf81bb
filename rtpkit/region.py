"""Region URL discovery for cloud-hosted servers."""

from __future__ import annotations

import json
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections import deque
from dataclasses import dataclass, field

SETTINGS_CACHE_SECONDS = 3.0


class RegionError(Exception):
    """Raised when region settings cannot be obtained or used."""


@dataclass
class _HostnameSettings:
    urls: deque[str]
    updated_at: float
    attempts: dict[str, int] = field(default_factory=dict)


class RegionURLProvider:
    """Fetches and hands out region URLs, best first, per cloud hostname."""

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._cache: dict[str, _HostnameSettings] = {}
        self._lock = threading.Lock()

    def refresh_region_settings(self, cloud_hostname: str, token: str) -> None:
        """Fetch region settings unless fetched within the last few seconds."""
        with self._lock:
            cached = self._cache.get(cloud_hostname)
        if cached is not None and time.monotonic() - cached.updated_at < SETTINGS_CACHE_SECONDS:
            return

        url = f"https://{cloud_hostname}/settings/regions"
        request = urllib.request.Request(
            url, headers={"Authorization": f"Bearer {token}"}, method="GET"
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                status = response.status
                reason = response.reason
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise RegionError(
                "refreshRegionSettings failed to fetch region settings. "
                f"http status: {exc.code} {exc.reason}"
            ) from exc
        except OSError as exc:
            raise RegionError(f"refreshRegionSettings request failed: {exc}") from exc

        if status != 200:
            raise RegionError(
                "refreshRegionSettings failed to fetch region settings. "
                f"http status: {status} {reason}"
            )

        urls = _decode_region_urls(body)
        with self._lock:
            self._cache[cloud_hostname] = _HostnameSettings(
                urls=deque(urls), updated_at=time.monotonic()
            )

    def pop_best_url(self, cloud_hostname: str, token: str) -> str:
        """Remove and return the best remaining region URL."""
        with self._lock:
            settings = self._cache.get(cloud_hostname)
            if settings is None or not settings.urls:
                raise RegionError("no regions available")
            return settings.urls.popleft()


def _decode_region_urls(body: bytes) -> list[str]:
    prefix = "refreshRegionSettings failed to decode region settings: "
    try:
        document = json.loads(body)
    except ValueError as exc:
        raise RegionError(prefix + str(exc)) from exc
    if not isinstance(document, dict):
        raise RegionError(prefix + "expected a JSON object")
    regions = document.get("regions") or []
    if not isinstance(regions, list):
        raise RegionError(prefix + "regions must be a list")
    urls = []
    for region in regions:
        if not isinstance(region, dict):
            raise RegionError(prefix + "region must be an object")
        region_url = region.get("url", "")
        if not isinstance(region_url, str):
            raise RegionError(prefix + "region url must be a string")
        urls.append(region_url)
    return urls


def parse_cloud_url(server_url: str) -> str:
    """Return the hostname of ``server_url`` if it is a cloud URL."""
    try:
        hostname = urllib.parse.urlparse(server_url).hostname or ""
    except ValueError as exc:
        raise RegionError(f"invalid server url ({server_url}): {exc}") from exc
    if not is_cloud(hostname):
        raise RegionError("not a cloud url")
    return hostname


def is_cloud(hostname: str) -> bool:
    """Return True if ``hostname`` belongs to the hosted cloud service."""
    return hostname.endswith("livekit.cloud") or hostname.endswith("livekit.io")