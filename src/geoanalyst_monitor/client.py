from __future__ import annotations

import time
from contextlib import AbstractContextManager
from typing import Any

import requests
from loguru import logger

from geoanalyst_monitor.settings import get_settings


class AnalysisApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationExpired(AnalysisApiError):
    """401 from the analysis service; the session is expected to recover."""


def _error_message(response: requests.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    message = body.get("message")
    if message:
        return str(message)
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    return None


class AnalysisApiClient(AbstractContextManager["AnalysisApiClient"]):
    """Synchronous client for the analysis status and stop endpoints.

    Credential refresh is the session's business: a caller that needs cookie
    or token renewal passes a configured ``requests.Session``.
    """

    def __init__(
        self,
        *,
        service_url: str | None = None,
        api_key: str | None = None,
        session: requests.Session | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        self.service_url = (service_url or settings.service_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.geoanalyst_api_key
        self.timeout = timeout or settings.geoanalyst_request_timeout_seconds

        self._owns_session = session is None
        self._session: requests.Session | None = session or requests.Session()
        # Sent per request so a borrowed session keeps its own headers.
        self._headers = {"X-API-Key": self.api_key} if self.api_key else {}

    def close(self) -> None:
        if self._session and self._owns_session:
            self._session.close()
        self._session = None

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def fetch_status(self, analysis_id: str) -> dict[str, Any]:
        return self._request(
            "GET",
            f"/analysis/{analysis_id}",
            params={"_t": int(time.time() * 1000)},
        )

    def stop_analysis(self, analysis_id: str) -> dict[str, Any]:
        return self._request("POST", f"/analysis/{analysis_id}/stop")

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if self._session is None:
            raise AnalysisApiError("Client is closed.")

        url = f"{self.service_url}{path}"
        logger.debug(f"API request: {method} {url}")
        try:
            response = self._session.request(
                method,
                url,
                headers=self._headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise AnalysisApiError(str(exc) or exc.__class__.__name__) from exc

        if response.status_code == 401:
            raise AuthenticationExpired(
                _error_message(response) or "Session expired.",
                status_code=401,
            )
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise AnalysisApiError(
                _error_message(response) or str(exc),
                status_code=response.status_code,
            ) from exc

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise AnalysisApiError(
                f"Invalid JSON from {url}.", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise AnalysisApiError(
                f"Unexpected response shape from {url}.", status_code=response.status_code
            )
        return payload
