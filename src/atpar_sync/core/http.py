"""JSON-over-HTTP transport shared by the Azure DevOps and Notion connectors.

Each ``RestClient`` keeps one ``requests.Session`` per thread (the
orchestrator calls connectors from worker threads) and wraps every request
in a tenacity retry loop that only retries ``TransientRemoteError``.
HTTP status codes are translated into the sync error taxonomy here, so the
connectors never see raw ``requests`` exceptions.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

import requests
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..sync.errors import (
    CredentialExpiredError,
    RecordNotFoundError,
    RemoteRejectedError,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)

JSON_PATCH = "application/json-patch+json"


class RestClient:
    """Minimal REST client with thread-local sessions and retry.

    Args:
        base_url: Prefix for relative request paths.
        auth_header: Full ``Authorization`` header value.
        extra_headers: Headers sent with every request (e.g. API version).
        retry_attempts: Total attempts for transient failures.
        backoff_min: Lower bound of the exponential backoff, in seconds.
        backoff_max: Upper bound of the exponential backoff, in seconds.
        timeout: ``(connect, read)`` timeout passed to requests.
    """

    def __init__(
        self,
        base_url: str,
        auth_header: str,
        extra_headers: dict[str, str] | None = None,
        retry_attempts: int = 3,
        backoff_min: float = 1.0,
        backoff_max: float = 10.0,
        timeout: tuple[float, float] = (10, 60),
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._auth_header = auth_header
        self._extra_headers = extra_headers or {}
        self._retry_attempts = retry_attempts
        self._backoff_min = backoff_min
        self._backoff_max = backoff_max
        self._thread_local = threading.local()

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            session = requests.Session()
            session.headers.update(self._extra_headers)
            session.headers["Authorization"] = self._auth_header
            self._thread_local.session = session
        return self._thread_local.session

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(
                multiplier=1, min=self._backoff_min, max=self._backoff_max
            ),
            retry=retry_if_exception_type(TransientRemoteError),
            reraise=True,
        )

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        content_type: str = "application/json",
    ) -> Any:
        """Send a request and return the decoded JSON body (``None`` if empty).

        Raises:
            TransientRemoteError: After the retry budget is exhausted.
            CredentialExpiredError: On HTTP 401.
            RecordNotFoundError: On HTTP 404.
            RemoteRejectedError: On any other 4xx.
        """
        for attempt in self._retrying():
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "Retrying %s %s (attempt %d)",
                        method,
                        path,
                        attempt.retry_state.attempt_number,
                    )
                return self._send(method, path, params, json, content_type)
        return None  # pragma: no cover - Retrying always runs or raises

    def get(self, path: str, **kwargs: Any) -> Any:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> Any:
        return self.request("POST", path, **kwargs)

    def patch(self, path: str, **kwargs: Any) -> Any:
        return self.request("PATCH", path, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> Any:
        return self.request("DELETE", path, **kwargs)

    def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        body: Any,
        content_type: str,
    ) -> Any:
        url = self.url_for(path)
        headers = {"Content-Type": content_type} if body is not None else {}
        logger.debug("%s %s", method, url)
        try:
            response = self._get_session().request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientRemoteError(
                f"{method} {url} failed: {exc}"
            ) from exc

        status = response.status_code
        if status < 400:
            if status == 204 or not response.content:
                return None
            return response.json()

        detail = _error_detail(response)
        message = f"{method} {url} returned {status}: {detail}"
        if status == 429 or status >= 500:
            raise TransientRemoteError(message, status_code=status)
        if status == 401:
            raise CredentialExpiredError(message)
        if status == 404:
            raise RecordNotFoundError(message)
        raise RemoteRejectedError(message, status_code=status)


def _error_detail(response: requests.Response) -> str:
    """Extract a short error message from an API error body."""
    try:
        body = response.json()
    except ValueError:
        return (response.text or response.reason or "").strip()[:300]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:300]
    return str(body)[:300]
