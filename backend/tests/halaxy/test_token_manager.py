import json

import httpx
import pytest

from bloom.services.halaxy.errors import ConfigurationError, UpstreamAuthError
from bloom.services.halaxy.token_manager import TokenManager
from halaxy_fakes import TOKEN_URL, make_config


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _token_server(expires_in=3600, status_code=200):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if status_code != 200:
            return httpx.Response(status_code, text="invalid_client")
        return httpx.Response(
            200, json={"access_token": f"token-{len(calls)}", "expires_in": expires_in}
        )

    return calls, httpx.Client(transport=httpx.MockTransport(handler))


def test_fetches_token_with_client_credentials_json():
    calls, http = _token_server()
    manager = TokenManager(make_config(), http, clock=FakeClock())

    assert manager.get_access_token() == "token-1"

    assert len(calls) == 1
    assert str(calls[0].url) == TOKEN_URL
    assert calls[0].headers["content-type"] == "application/json"
    assert json.loads(calls[0].content) == {
        "grant_type": "client_credentials",
        "client_id": "client-id",
        "client_secret": "client-secret",
    }


def test_token_inside_refresh_buffer_is_refetched():
    clock = FakeClock()
    calls, http = _token_server(expires_in=60)
    manager = TokenManager(make_config(), http, clock=clock)

    assert manager.get_access_token() == "token-1"
    assert manager.get_access_token() == "token-2"
    assert len(calls) == 2


def test_token_outside_refresh_buffer_is_reused():
    clock = FakeClock()
    calls, http = _token_server(expires_in=300)
    manager = TokenManager(make_config(), http, clock=clock)

    assert manager.get_access_token() == "token-1"
    clock.now += 10
    assert manager.get_access_token() == "token-1"
    assert len(calls) == 1

    clock.now += 300 - 120
    assert manager.get_access_token() == "token-2"


def test_invalidate_forces_new_token():
    calls, http = _token_server()
    manager = TokenManager(make_config(), http, clock=FakeClock())

    manager.get_access_token()
    manager.invalidate_token()
    manager.invalidate_token()
    assert manager.get_access_token() == "token-2"
    assert len(calls) == 2


def test_missing_credentials_raise_configuration_error():
    calls, http = _token_server()
    manager = TokenManager(make_config(client_secret=""), http, clock=FakeClock())

    assert manager.has_credentials() is False
    with pytest.raises(ConfigurationError):
        manager.get_access_token()
    assert calls == []


def test_rejected_credentials_raise_upstream_auth_error():
    _, http = _token_server(status_code=401)
    manager = TokenManager(make_config(), http, clock=FakeClock())

    with pytest.raises(UpstreamAuthError) as excinfo:
        manager.get_access_token()

    assert excinfo.value.status_code == 401
    assert "401" in str(excinfo.value)
    assert "invalid_client" in str(excinfo.value)


def test_token_status_reports_expiry():
    clock = FakeClock()
    _, http = _token_server(expires_in=3600)
    manager = TokenManager(make_config(), http, clock=clock)

    assert manager.get_token_status().as_dict() == {
        "hasToken": False,
        "expiresAt": None,
        "isExpired": True,
    }

    manager.get_access_token()
    status = manager.get_token_status()
    assert status.has_token is True
    assert status.is_expired is False
    assert status.expires_at.startswith("2023-11-14T23:13:20")

    clock.now += 3600
    assert manager.get_token_status().is_expired is True
