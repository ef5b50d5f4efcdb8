"""
Client for the WP Engine provider API
"""

import random
import time
from typing import Any, Callable, Dict, List, Optional

import requests

from stax.errors import CredentialsRejected, InvalidArgument, TransportUnavailable
from stax.models import ProviderSite
from stax.utils.cancellation import CancellationToken
from stax.utils.security import validate_arg

DEFAULT_BASE_URL = "https://api.wpengineapi.com/v1"
REQUEST_TIMEOUT = 30

MAX_ATTEMPTS = 3
BACKOFF_BASE = 0.5
BACKOFF_CAP = 8.0
BACKOFF_JITTER = 0.25


def backoff_delay(attempt: int, rng: Callable[[], float] = random.random) -> float:
    """
    Exponential backoff with jitter for the given retry number (1-based)

    Args:
        attempt: Number of the attempt that just failed
        rng: Source of uniform numbers in [0, 1)

    Returns:
        float: Seconds to wait before the next attempt
    """
    delay = min(BACKOFF_CAP, BACKOFF_BASE * (2 ** (attempt - 1)))
    jitter = delay * BACKOFF_JITTER * (2 * rng() - 1)
    return max(0.0, delay + jitter)


class WPEngineAPI:
    """
    Read-only access to installs through the provider API
    """

    def __init__(self, api_user: str, api_password: str, base_url: str = DEFAULT_BASE_URL,
                 session: Optional[requests.Session] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 sleep: Callable[[float], Any] = None,
                 verbose: bool = False):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.auth = (api_user, api_password)
        self.session.headers.setdefault("Accept", "application/json")
        self.cancel_token = cancel_token or CancellationToken()
        self._sleep = sleep or self.cancel_token.wait
        self.verbose = verbose

    def close(self):
        self.session.close()

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Performs a GET with the retry policy

        Raises:
            CredentialsRejected: On 401/403
            TransportUnavailable: On other failures, after retries where applicable
        """
        last_error = ""
        for attempt in range(1, MAX_ATTEMPTS + 1):
            self.cancel_token.raise_if_cancelled("provider API")
            try:
                response = self.session.get(url, params=params, timeout=REQUEST_TIMEOUT)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = str(e)
            else:
                if response.status_code in (401, 403):
                    raise CredentialsRejected(
                        f"Provider API rejected the credentials ({response.status_code})",
                        status=response.status_code,
                    )
                if response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                elif response.status_code >= 400:
                    raise TransportUnavailable(
                        f"Provider API request failed: HTTP {response.status_code} for {url}",
                        attempts=attempt,
                    )
                else:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise TransportUnavailable(f"Provider API returned invalid JSON: {e}",
                                                   attempts=attempt) from e

            if attempt < MAX_ATTEMPTS:
                delay = backoff_delay(attempt)
                if self.verbose:
                    print(f"⚠️ Attempt {attempt}/{MAX_ATTEMPTS} failed ({last_error}). Retrying in {delay:.1f}s...")
                if self._sleep(delay) is True:
                    self.cancel_token.raise_if_cancelled("provider API")

        raise TransportUnavailable(
            f"Provider API unavailable after {MAX_ATTEMPTS} attempts: {last_error}",
            attempts=MAX_ATTEMPTS,
        )

    def list_installs(self) -> List[ProviderSite]:
        """
        Lists every install visible to the account, following pagination
        """
        sites: List[ProviderSite] = []
        url: Optional[str] = f"{self.base_url}/installs"
        params: Optional[Dict[str, Any]] = {"limit": 100}
        while url:
            data = self._get(url, params=params)
            results = data.get("results", []) if isinstance(data, dict) else data
            sites.extend(ProviderSite.from_api(item) for item in results)
            url = data.get("next") if isinstance(data, dict) else None
            params = None
        return sites

    def get_install(self, name: str) -> ProviderSite:
        """
        Gets the details of a single install

        Raises:
            InvalidArgument: If the name fails validation
        """
        validate_arg(name, "install name")
        if "/" in name:
            raise InvalidArgument("install name", repr(name))
        data = self._get(f"{self.base_url}/installs/{name}")
        return ProviderSite.from_api(data)
