"""
Tests for the provider API client with a scripted HTTP session.
"""

import pytest
import requests

from stax.errors import Cancelled, CredentialsRejected, InvalidArgument, TransportUnavailable
from stax.utils.api import MAX_ATTEMPTS, WPEngineAPI, backoff_delay
from stax.utils.cancellation import CancellationToken


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeHTTPSession:
    """requests.Session stand-in returning scripted responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.headers = {}
        self.auth = None
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


def make_api(*responses, cancel_token=None):
    session = FakeHTTPSession(*responses)
    sleeps = []
    api = WPEngineAPI("user", "secret", session=session, sleep=sleeps.append, cancel_token=cancel_token)
    return api, session, sleeps


INSTALL = {
    "name": "example",
    "environment": "production",
    "primary_domain": "www.example.com",
    "domains": [{"name": "www.example.com"}, {"name": "example.com"}],
    "php_version": "8.2",
}


def test_get_install():
    api, session, _ = make_api(FakeResponse(200, INSTALL))

    site = api.get_install("example")

    assert site.install_name == "example"
    assert site.primary_domain == "www.example.com"
    assert site.additional_domains == ["example.com"]
    assert session.calls[0][0] == "https://api.wpengineapi.com/v1/installs/example"
    assert session.auth == ("user", "secret")


def test_retries_server_errors_then_succeeds():
    api, session, sleeps = make_api(
        FakeResponse(503),
        requests.ConnectionError("reset"),
        FakeResponse(200, INSTALL),
    )
    assert api.get_install("example").install_name == "example"
    assert len(session.calls) == 3
    assert len(sleeps) == 2


def test_gives_up_after_max_attempts():
    api, session, _ = make_api(*[FakeResponse(502) for _ in range(MAX_ATTEMPTS)])
    with pytest.raises(TransportUnavailable) as excinfo:
        api.get_install("example")
    assert excinfo.value.attempts == MAX_ATTEMPTS
    assert "HTTP 502" in str(excinfo.value)


@pytest.mark.parametrize("status", [401, 403])
def test_rejected_credentials_are_not_retried(status):
    api, session, sleeps = make_api(FakeResponse(status))
    with pytest.raises(CredentialsRejected) as excinfo:
        api.get_install("example")
    assert excinfo.value.status == status
    assert len(session.calls) == 1
    assert sleeps == []


def test_client_error_is_not_retried():
    api, session, _ = make_api(FakeResponse(404))
    with pytest.raises(TransportUnavailable):
        api.get_install("missing")
    assert len(session.calls) == 1


def test_invalid_json():
    api, _, _ = make_api(FakeResponse(200, ValueError("bad json")))
    with pytest.raises(TransportUnavailable, match="invalid JSON"):
        api.get_install("example")


@pytest.mark.parametrize("name", ["../admin", "a b", ""])
def test_install_name_validated(name):
    api, session, _ = make_api()
    with pytest.raises(InvalidArgument):
        api.get_install(name)
    assert session.calls == []


def test_list_installs_follows_pagination():
    api, session, _ = make_api(
        FakeResponse(200, {"results": [{"name": "one"}], "next": "https://api.wpengineapi.com/v1/installs?offset=1"}),
        FakeResponse(200, {"results": [{"name": "two"}], "next": None}),
    )
    assert [site.install_name for site in api.list_installs()] == ["one", "two"]
    assert session.calls[1] == ("https://api.wpengineapi.com/v1/installs?offset=1", None)


def test_cancelled_before_request():
    token = CancellationToken()
    token.cancel()
    api, session, _ = make_api(FakeResponse(200, INSTALL), cancel_token=token)
    with pytest.raises(Cancelled):
        api.get_install("example")
    assert session.calls == []


def test_close():
    api, session, _ = make_api()
    api.close()
    assert session.closed


@pytest.mark.parametrize("attempt", [1, 2, 3, 10])
def test_backoff_delay_grows_and_is_capped(attempt):
    low = backoff_delay(attempt, rng=lambda: 0.0)
    high = backoff_delay(attempt, rng=lambda: 1.0)
    assert 0 < low <= high
    assert high <= 8.0 * 1.25
