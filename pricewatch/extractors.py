from __future__ import annotations

from typing import Any, Dict, Optional

import requests
from curl_cffi import requests as curl_requests

from .base import BaseExtractor
from .errors import ExtractionError
from .models import ExtractionMethod, Source
from .rate_limiter import RateLimiter

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


def _check_status(status_code: Optional[int], url: str) -> None:
    # any 2xx is a usable page
    if status_code is None or not 200 <= int(status_code) < 300:
        raise ExtractionError(f"HTTP_{status_code} from {url}")


class DirectExtractor(BaseExtractor):
    """Primary backend: fetch the page directly with browser TLS impersonation."""

    method = ExtractionMethod.PRIMARY

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 30.0,
        impersonate: str = "chrome120",
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(rate_limiter=rate_limiter, **kwargs)
        self._timeout = timeout
        self._impersonate = impersonate
        self._headers = dict(DEFAULT_HEADERS if headers is None else headers)

    def fetch(self, source: Source) -> str:
        session = curl_requests.Session()
        try:
            response = session.get(
                source.target_url,
                headers=self._headers,
                impersonate=self._impersonate,
                timeout=self._timeout,
            )
        finally:
            session.close()
        _check_status(getattr(response, "status_code", None), source.target_url)
        return response.text


class BrowserlessExtractor(BaseExtractor):
    """Fallback backend: render the page in a remote headless browser.

    Uses the browserless ``/content`` REST endpoint, which loads the page,
    waits for the row selector and returns the rendered HTML."""

    method = ExtractionMethod.FALLBACK

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: float = 45.0,
        wait_selector: Optional[str] = None,
        selector_timeout: float = 20.0,
        session: Optional[requests.Session] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(rate_limiter=rate_limiter, **kwargs)
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._wait_selector = wait_selector
        self._selector_timeout = selector_timeout
        self._session = session or requests.Session()

    def build_payload(self, source: Source) -> Dict[str, Any]:
        return {
            "url": source.target_url,
            "gotoOptions": {
                "waitUntil": "networkidle2",
                "timeout": int(self._timeout * 1000),
            },
            "waitForSelector": {
                "selector": self._wait_selector or source.row_selector,
                "timeout": int(self._selector_timeout * 1000),
            },
        }

    def fetch(self, source: Source) -> str:
        params = {"token": self._token} if self._token else None
        try:
            response = self._session.post(
                f"{self._base_url}/content",
                params=params,
                json=self.build_payload(source),
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ExtractionError(f"{type(exc).__name__}: {exc}") from exc
        _check_status(response.status_code, source.target_url)
        return response.text
