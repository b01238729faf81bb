import json
import urllib.error
from unittest.mock import patch

import pytest

from rtpkit.region import RegionError, RegionURLProvider, is_cloud, parse_cloud_url

HOST = "project.livekit.cloud"
BODY = json.dumps(
    {
        "regions": [
            {"region": "a", "url": "https://a.example.com", "distance": "10"},
            {"region": "b", "url": "https://b.example.com", "distance": "20"},
        ]
    }
).encode()


class _FakeResponse:
    def __init__(self, body, status=200, reason="OK"):
        self._body = body
        self.status = status
        self.reason = reason

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_pops_urls_in_order_then_fails():
    provider = RegionURLProvider(timeout=1.0)
    with patch("urllib.request.urlopen", return_value=_FakeResponse(BODY)):
        provider.refresh_region_settings(HOST, "token")
    assert provider.pop_best_url(HOST, "token") == "https://a.example.com"
    assert provider.pop_best_url(HOST, "token") == "https://b.example.com"
    with pytest.raises(RegionError):
        provider.pop_best_url(HOST, "token")


def test_request_carries_bearer_token_and_url():
    provider = RegionURLProvider(timeout=1.0)
    with patch("urllib.request.urlopen", return_value=_FakeResponse(BODY)) as opener:
        provider.refresh_region_settings(HOST, "token")
    request = opener.call_args.args[0]
    assert request.full_url == f"https://{HOST}/settings/regions"
    assert request.get_header("Authorization") == "Bearer token"


def test_refresh_is_cached():
    provider = RegionURLProvider(timeout=1.0)
    with patch("urllib.request.urlopen", return_value=_FakeResponse(BODY)) as opener:
        provider.refresh_region_settings(HOST, "token")
        assert provider.pop_best_url(HOST, "token") == "https://a.example.com"
        provider.refresh_region_settings(HOST, "token")
    assert opener.call_count == 1
    # the cached list was not repopulated by the second refresh
    assert provider.pop_best_url(HOST, "token") == "https://b.example.com"
    with pytest.raises(RegionError):
        provider.pop_best_url(HOST, "token")


def test_refresh_after_cache_expiry():
    provider = RegionURLProvider(timeout=1.0)
    with patch("urllib.request.urlopen", return_value=_FakeResponse(BODY)) as opener, patch(
        "time.monotonic", return_value=100.0
    ) as clock:
        provider.refresh_region_settings(HOST, "token")
        provider.pop_best_url(HOST, "token")
        clock.return_value = 104.0
        provider.refresh_region_settings(HOST, "token")
    assert opener.call_count == 2
    assert provider.pop_best_url(HOST, "token") == "https://a.example.com"


def test_http_error_raises():
    provider = RegionURLProvider(timeout=1.0)
    error = urllib.error.HTTPError("https://x", 401, "Unauthorized", hdrs=None, fp=None)
    with patch("urllib.request.urlopen", side_effect=error):
        with pytest.raises(RegionError, match="401"):
            provider.refresh_region_settings(HOST, "token")


def test_bad_body_raises():
    provider = RegionURLProvider(timeout=1.0)
    with patch("urllib.request.urlopen", return_value=_FakeResponse(b"not json")):
        with pytest.raises(RegionError):
            provider.refresh_region_settings(HOST, "token")


def test_unknown_host_has_no_regions():
    with pytest.raises(RegionError, match="no regions available"):
        RegionURLProvider(timeout=1.0).pop_best_url("other.livekit.cloud", "token")


def test_is_cloud():
    assert is_cloud("project.livekit.cloud")
    assert is_cloud("x.livekit.io")
    assert not is_cloud("example.com")


def test_parse_cloud_url():
    assert parse_cloud_url(f"wss://{HOST}") == HOST
    with pytest.raises(RegionError, match="not a cloud url"):
        parse_cloud_url("wss://example.com")


def test_parse_cloud_url_invalid():
    with pytest.raises(RegionError):
        parse_cloud_url("http://[::1")