"""
HTTP client for the Judit legal-tracking API.

Tracking and requests live on separate hosts (tracking.* / requests.*); both
are derived from the single base URL stored with the credential. Transient
failures (5xx, 429, network) are retried with exponential backoff; any other
non-2xx status raises ProviderApiError immediately.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from app.core.config import settings
from app.services.credential_service import ResolvedCredential
from app.utils.exceptions import ProviderApiError, SyncCancelledError, SyncTimeoutError

logger = logging.getLogger(__name__)

TRACKING_ENDPOINT = "https://tracking.prod.judit.io/tracking"
REQUESTS_ENDPOINT = "https://requests.prod.judit.io/requests"
TERMINAL_REMOTE_STATUSES = {"completed", "failed", "cancelled"}
API_KEY_HEADER = "api-key"


@dataclass(frozen=True)
class JuditEndpoints:
    requests: str
    tracking: str
    responses: str


@dataclass
class PollOutcome:
    status: str
    payload: Dict[str, Any]
    attempts: int


def _swap_host(host: str, old: str, new: str) -> str:
    if host.lower().startswith(f"{old}."):
        return f"{new}.{host[len(old) + 1:]}"
    return host


def _with_last_segment(segments: List[str], drop: str, want: str) -> str:
    kept = [s for s in segments if s.lower() != drop]
    if not kept or kept[-1].lower() != want:
        kept.append(want)
    return "/" + "/".join(kept)


def build_endpoints(base_url: Optional[str]) -> JuditEndpoints:
    """Derive the requests, tracking and responses endpoints from one base URL."""
    raw = (base_url or "").strip()
    if not raw:
        return JuditEndpoints(REQUESTS_ENDPOINT, TRACKING_ENDPOINT, _responses_from(REQUESTS_ENDPOINT))

    parts = urlsplit(raw)
    if not parts.scheme or not parts.netloc:
        normalized = raw.rstrip("/")
        requests_url = f"{normalized}/requests"
        return JuditEndpoints(requests_url, f"{normalized}/tracking", f"{normalized}/responses")

    segments = [s.strip() for s in parts.path.split("/") if s.strip()]
    requests_url = urlunsplit((
        parts.scheme,
        _swap_host(parts.netloc, "tracking", "requests"),
        _with_last_segment(segments, "tracking", "requests"),
        "", "",
    ))
    tracking_url = urlunsplit((
        parts.scheme,
        _swap_host(parts.netloc, "requests", "tracking"),
        _with_last_segment(segments, "requests", "tracking"),
        "", "",
    ))
    return JuditEndpoints(requests_url, tracking_url, _responses_from(requests_url))


def _responses_from(requests_url: str) -> str:
    parts = urlsplit(requests_url)
    segments = [s for s in parts.path.split("/") if s]
    if segments:
        segments[-1] = "responses"
    else:
        segments = ["responses"]
    return urlunsplit((parts.scheme, parts.netloc, "/" + "/".join(segments), "", ""))


def _search(process_number: str) -> Dict[str, Any]:
    return {"search_type": "lawsuit_cnj", "search_key": process_number}


def remote_status_of(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    status = payload.get("status")
    if not isinstance(status, str):
        request = payload.get("request")
        status = request.get("status") if isinstance(request, dict) else None
    return status.strip().lower() if isinstance(status, str) else ""


def _error_message(body: Any, status: int) -> str:
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return f"Judit request failed with HTTP {status}"


class JuditClient:
    def __init__(
        self,
        credential: ResolvedCredential,
        max_retries: Optional[int] = None,
        backoff_ms: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.credential = credential
        self.endpoints = build_endpoints(credential.base_url)
        self.max_retries = min(max(int(max_retries or settings.JUDIT_MAX_RETRIES), 1), 10)
        self.backoff_ms = min(max(int(backoff_ms or settings.JUDIT_BACKOFF_MS), 100), 60000)
        self._sleep = sleep
        self._http = httpx.Client(
            timeout=timeout or settings.JUDIT_TIMEOUT_SECONDS,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def __enter__(self) -> "JuditClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    # ── Request plumbing ─────────────────────────────────────────────────────

    def _headers(self) -> Dict[str, str]:
        return {API_KEY_HEADER: self.credential.api_key, "Content-Type": "application/json"}

    def redacted_headers(self) -> Dict[str, str]:
        """Headers as stored on a Sync Record; the key itself never is."""
        return {API_KEY_HEADER: "***", "Content-Type": "application/json"}

    def backoff_delay(self, attempt: int) -> float:
        return (self.backoff_ms * (2 ** attempt)) / 1000.0

    def _request(
        self,
        method: str,
        url: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        last_error: Optional[ProviderApiError] = None

        for attempt in range(self.max_retries):
            try:
                response = self._http.request(
                    method, url, json=json_body, params=params, headers=self._headers(),
                )
            except httpx.TransportError as e:
                last_error = ProviderApiError(f"Judit unreachable: {e}", status=None)
                logger.warning(
                    "Judit %s %s network error (attempt %s/%s): %s",
                    method, url, attempt + 1, self.max_retries, e,
                )
            else:
                body = self._parse(response)
                if response.is_success:
                    return body
                error = ProviderApiError(
                    _error_message(body, response.status_code),
                    status=response.status_code,
                    body=body,
                )
                if response.status_code != 429 and response.status_code < 500:
                    raise error
                last_error = error
                logger.warning(
                    "Judit %s %s returned %s (attempt %s/%s)",
                    method, url, response.status_code, attempt + 1, self.max_retries,
                )

            if attempt < self.max_retries - 1:
                self._sleep(self.backoff_delay(attempt))

        raise last_error or ProviderApiError("Judit request failed")

    def _parse(self, response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # ── Tracking ─────────────────────────────────────────────────────────────

    def create_tracking(self, process_number: str) -> Dict[str, Any]:
        body = {"search": _search(process_number), "recurrence": 1}
        return self._request("POST", self.endpoints.tracking, json_body=body) or {}

    def renew_tracking(self, tracking_id: str, process_number: str) -> Dict[str, Any]:
        url = f"{self.endpoints.tracking}/{quote(tracking_id, safe='')}"
        body = {"search": _search(process_number), "recurrence": 1}
        return self._request("PUT", url, json_body=body) or {}

    # ── Requests ─────────────────────────────────────────────────────────────

    @staticmethod
    def build_request_payload(
        process_number: str,
        with_attachments: Optional[bool] = None,
        on_demand: Optional[bool] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"search": _search(process_number)}
        if isinstance(with_attachments, bool):
            payload["with_attachments"] = with_attachments
        if isinstance(on_demand, bool):
            payload["on_demand"] = on_demand
        return payload

    def create_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", self.endpoints.requests, json_body=payload) or {}

    def get_request_status(self, request_id: str) -> Dict[str, Any]:
        url = f"{self.endpoints.requests}/{quote(request_id, safe='')}"
        return self._request("GET", url) or {}

    def fetch_result_page(self, request_id: str, page: int, page_size: Optional[int] = None) -> Dict[str, Any]:
        params = {
            "request_id": request_id,
            "page": page,
            "page_size": page_size or settings.JUDIT_RESPONSES_PAGE_SIZE,
        }
        body = self._request("GET", self.endpoints.responses, params=params)
        return body if isinstance(body, dict) else {}

    def fetch_all_result_pages(self, request_id: str, page_size: Optional[int] = None) -> List[Dict[str, Any]]:
        pages: List[Dict[str, Any]] = []
        page = 1
        while True:
            body = self.fetch_result_page(request_id, page, page_size)
            pages.append(body)
            try:
                page_count = int(body.get("page_count") or 1)
            except (TypeError, ValueError):
                page_count = 1
            if page >= max(page_count, 1):
                return pages
            page += 1

    def poll_request(
        self,
        request_id: str,
        interval_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PollOutcome:
        interval = settings.JUDIT_POLL_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        attempts_allowed = max(int(max_attempts or settings.JUDIT_POLL_MAX_ATTEMPTS), 1)
        last_status = ""

        for attempt in range(1, attempts_allowed + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelledError("Polling cancelled", attempts=attempt - 1, last_status=last_status)

            payload = self.get_request_status(request_id)
            last_status = remote_status_of(payload)
            if last_status in TERMINAL_REMOTE_STATUSES:
                return PollOutcome(status=last_status, payload=payload, attempts=attempt)

            if attempt == attempts_allowed:
                break
            if cancel_event is not None:
                if cancel_event.wait(interval):
                    raise SyncCancelledError("Polling cancelled", attempts=attempt, last_status=last_status)
            else:
                self._sleep(interval)

        raise SyncTimeoutError(
            f"Judit request {request_id} still '{last_status or 'unknown'}' after {attempts_allowed} checks",
            attempts=attempts_allowed,
            last_status=last_status or None,
        )
