"""
REST client for the Fisikal booking platform.

Implements ``BookingGateway`` over the platform's web API with aiohttp.

Session handling:
    The platform uses a cookie session (``fisikal_v2_session``) plus a
    Rails CSRF token scraped from the site's ``<meta name="csrf-token">``.
    Both live in an explicit ``SessionContext`` owned by the client and
    replaced under a single lock. A 401/403 drops the context so the next
    call logs in again.

Retry policy:
    Reads (schedule listing, occurrence details) retry with exponential
    backoff. Writes are attempted exactly once: a timed-out registration
    may or may not have landed upstream, and the next tick decides.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import aiohttp
from dateutil import parser as date_parser

from .models import (
    LISTED_STATUSES,
    AlreadyEnrolled,
    AlreadyWaitlisted,
    Booked,
    Cancelled,
    Full,
    GatewayError,
    Occurrence,
    OccurrenceFilter,
    OccurrenceStatus,
    Outcome,
    WaitlistFull,
    Waitlisted,
    WaitlistUnavailable,
)

logger = logging.getLogger(__name__)

SESSION_COOKIE = "fisikal_v2_session"
CSRF_META_RE = re.compile(r'<meta name="csrf-token" content="([^"]+)"')

# Only these count as "the member already has a place"; other "already"
# wording (e.g. "already at capacity") is a plain failure
ALREADY_WAITLISTED_PHRASES = (
    "already on the waiting list",
    "already on waiting list",
    "already on the waitlist",
    "already on waitlist",
    "already in the waiting list",
    "already waiting",
    "already waitlisted",
)
ALREADY_ENROLLED_PHRASES = (
    "already enrolled",
    "already joined",
    "already booked",
    "already registered",
    "already signed up",
    "already attending",
)

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class GatewayAPIError(Exception):
    """Base exception for booking platform API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimitError(GatewayAPIError):
    """Rate limit exceeded."""
    pass


class AuthenticationError(GatewayAPIError):
    """Login failed or the session was rejected (401/403)."""
    pass


@dataclass
class SessionContext:
    """Authenticated session state. Replaced whole, never edited in place."""

    cookie: str
    csrf_token: Optional[str]
    authenticated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _as_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _error_text(body: Any) -> str:
    """Flatten an error payload into lowercase text for keyword checks."""
    if body is None:
        return ""
    if isinstance(body, str):
        return body.lower()
    try:
        return json.dumps(body).lower()
    except (TypeError, ValueError):
        return str(body).lower()


def _already_outcome(status: Optional[int], text: str, detail: str) -> Optional[Outcome]:
    """AlreadyWaitlisted/AlreadyEnrolled for a 409/422 naming the member's own place."""
    if status not in (409, 422):
        return None
    if any(phrase in text for phrase in ALREADY_WAITLISTED_PHRASES):
        return AlreadyWaitlisted(detail=detail)
    if any(phrase in text for phrase in ALREADY_ENROLLED_PHRASES):
        return AlreadyEnrolled(detail=detail)
    return None


def classify_register_failure(status: Optional[int], body: Any) -> Outcome:
    """Map a failed ``join`` response to an Outcome."""
    text = _error_text(body)
    detail = text[:200]

    already = _already_outcome(status, text, detail)
    if already is not None:
        return already
    if status == 422:
        return Full(detail=detail or "class is full")
    return GatewayError(detail=detail or f"HTTP {status}", status_code=status)


def classify_waitlist_failure(status: Optional[int], body: Any) -> Outcome:
    """Map a failed ``wait`` response to an Outcome."""
    text = _error_text(body)
    detail = text[:200]

    already = _already_outcome(status, text, detail)
    if already is not None:
        return already
    if status == 404 or any(
        phrase in text for phrase in ("not enabled", "not available", "disabled")
    ):
        return WaitlistUnavailable(detail=detail or "waiting list not available")
    if status == 422:
        return WaitlistFull(detail=detail or "waiting list is full")
    return GatewayError(detail=detail or f"HTTP {status}", status_code=status)


class FisikalClient:
    """
    Async client for the Fisikal web API.

    Features:
        - Cookie + CSRF login with an explicit SessionContext
        - Rate limiting to avoid upstream throttling
        - Retries with exponential backoff for reads only
        - Outcome values (not exceptions) for booking writes

    Usage:
        async with FisikalClient(email, password) as client:
            occurrences = await client.fetch_occurrences(occurrence_filter)
            token = await client.fetch_concurrency_token(occurrence.id)
            outcome = await client.register(occurrence.id, token)
    """

    DEFAULT_BASE_URL = "https://ymca-triangle.fisikal.com"

    def __init__(
        self,
        email: str,
        password: str,
        base_url: str = DEFAULT_BASE_URL,
        session: Optional[aiohttp.ClientSession] = None,
        rate_limit: float = 2.0,  # requests per second
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        """
        Initialize the client.

        Args:
            email: Member login email
            password: Member password
            base_url: Site root; the API lives under ``/api/web``
            session: Optional aiohttp session (created if not provided)
            rate_limit: Maximum requests per second
            timeout: Per-request timeout in seconds
            max_retries: Attempts for read requests
            retry_delay: Base delay between read retries (exponential backoff)
        """
        self._email = email
        self._password = password
        self._base_url = base_url.rstrip("/")
        self._api_url = f"{self._base_url}/api/web"

        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._rate_limit = rate_limit
        self._max_retries = max_retries
        self._retry_delay = retry_delay

        self._request_times: list[float] = []
        self._rate_lock = asyncio.Lock()

        self._context: Optional[SessionContext] = None
        self._auth_lock = asyncio.Lock()

    async def __aenter__(self) -> "FisikalClient":
        self._ensure_http_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    def _ensure_http_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={
                    "Accept": "*/*",
                    "Accept-Language": "en-US,en;q=0.9",
                    "User-Agent": USER_AGENT,
                    "X-Requested-With": "XMLHttpRequest",
                },
            )
            self._owns_session = True
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._context is not None

    # =========================================================================
    # Session management
    # =========================================================================

    def invalidate_session(self) -> None:
        """Forget the current session; the next call logs in again."""
        if self._context is not None:
            logger.info("Booking session invalidated, will re-authenticate")
        self._context = None
        if self._session is not None:
            self._session.cookie_jar.clear()

    async def _ensure_authenticated(self) -> SessionContext:
        context = self._context
        if context is not None:
            return context

        async with self._auth_lock:
            if self._context is None:
                self._context = await self._login()
            return self._context

    async def _fetch_csrf_token(self) -> Optional[str]:
        """Scrape the CSRF token from the site root."""
        session = self._ensure_http_session()
        await self._rate_limit_wait()
        async with session.get(f"{self._base_url}/") as response:
            html = await response.text()
        match = CSRF_META_RE.search(html)
        return match.group(1) if match else None

    async def _login(self) -> SessionContext:
        """
        Log in and build a fresh SessionContext.

        Raises:
            AuthenticationError: When no session cookie comes back.
        """
        if not self._email or not self._password:
            raise AuthenticationError("Booking credentials are not configured")

        session = self._ensure_http_session()
        try:
            csrf_token = await self._fetch_csrf_token()
            payload = {"user": {"email": self._email, "password": self._password, "errors": None}}
            headers = {"Referer": f"{self._base_url}/"}
            if csrf_token:
                headers["X-CSRF-Token"] = csrf_token

            await self._rate_limit_wait()
            async with session.post(
                f"{self._api_url}/sessions",
                data={"json": json.dumps(payload)},
                headers=headers,
            ) as response:
                if response.status in (401, 403, 422):
                    raise AuthenticationError(
                        f"Login rejected: {response.status}", status_code=response.status
                    )
                cookie = response.cookies.get(SESSION_COOKIE)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayAPIError(f"Login request failed: {e}") from e

        if cookie is None:
            raise AuthenticationError("Authentication failed - no session cookie received")

        logger.info("Authenticated with booking platform")
        await self._initialize_session_state()

        # The token is bound to the session, so scrape it again after login
        try:
            csrf_token = await self._fetch_csrf_token() or csrf_token
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not refresh CSRF token after login: {e!r}")

        return SessionContext(cookie=cookie.value, csrf_token=csrf_token)

    async def _initialize_session_state(self) -> None:
        """Touch the linked-clients endpoint; the platform only reports lock_version afterwards."""
        params = {
            "include_self": "true",
            "json": json.dumps({"limit": {"start": 0, "count": 10}}),
        }
        try:
            await self._raw_request("GET", f"{self._api_url}/users/clients/linked", params=params)
        except GatewayAPIError as e:
            logger.warning(f"Session initialization failed: {e}")

    # =========================================================================
    # Transport
    # =========================================================================

    async def _rate_limit_wait(self) -> None:
        """Wait if necessary to respect rate limits."""
        async with self._rate_lock:
            now = time.time()

            self._request_times = [t for t in self._request_times if now - t < 1.0]

            if len(self._request_times) >= self._rate_limit:
                wait_time = 1.0 - (now - self._request_times[0])
                if wait_time > 0:
                    await asyncio.sleep(wait_time)

            self._request_times.append(time.time())

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any:
        text = await response.text()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def _raw_request(self, method: str, url: str, **kwargs) -> Any:
        """
        Single HTTP request. Raises GatewayAPIError subclasses on HTTP errors.

        A 401/403 also invalidates the session.
        """
        session = self._ensure_http_session()
        await self._rate_limit_wait()

        try:
            async with session.request(method, url, **kwargs) as response:
                body = await self._read_body(response)
                status = response.status
        except asyncio.TimeoutError as e:
            raise GatewayAPIError("Request timed out") from e
        except aiohttp.ClientError as e:
            raise GatewayAPIError(f"Request failed: {e}") from e

        if status in (401, 403):
            self.invalidate_session()
            raise AuthenticationError(
                f"Session rejected: {status}", status_code=status, body=body
            )
        if status == 429:
            raise RateLimitError("Rate limit exceeded", status_code=429, body=body)
        if status >= 400:
            raise GatewayAPIError(
                f"API error: {status} - {_error_text(body)[:200]}",
                status_code=status,
                body=body,
            )
        return body

    async def _request(self, method: str, path: str, retry: bool = True, **kwargs) -> Any:
        """
        Authenticated request against the API with optional retries.

        Args:
            method: HTTP method
            path: Path under ``/api/web``
            retry: Retry transient failures (reads only)

        Raises:
            GatewayAPIError: On API errors
            AuthenticationError: On 401/403 (session already invalidated)
            asyncio.CancelledError: When the task is cancelled (re-raised)
        """
        url = f"{self._api_url}{path}"
        attempts = self._max_retries if retry else 1
        last_error: Optional[GatewayAPIError] = None

        base_headers = kwargs.pop("headers", None) or {}

        for attempt in range(attempts):
            context = await self._ensure_authenticated()
            headers = dict(base_headers)
            if method != "GET":
                headers.setdefault("Origin", self._base_url)
                headers.setdefault("Referer", f"{self._base_url}/")
                if context.csrf_token:
                    headers.setdefault("X-CSRF-Token", context.csrf_token)

            try:
                return await self._raw_request(method, url, headers=headers, **kwargs)

            except AuthenticationError:
                raise

            except RateLimitError as e:
                delay = self._retry_delay * (2 ** attempt) * 2
                last_error = e
                if attempt + 1 < attempts:
                    logger.warning(f"Rate limited, waiting {delay}s before retry")
                    await asyncio.sleep(delay)

            except GatewayAPIError as e:
                # 4xx are final, 5xx and network errors are retried
                if e.status_code is not None and e.status_code < 500:
                    raise
                last_error = e
                if attempt + 1 < attempts:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(f"{e}, retry {attempt + 1}/{attempts}")
                    await asyncio.sleep(delay)

        raise last_error or GatewayAPIError("Request failed after retries")

    # =========================================================================
    # Reads
    # =========================================================================

    def _build_filter(self, occurrence_filter: OccurrenceFilter) -> dict:
        filters: list[dict] = [
            {"by": "status", "with": [s.value for s in LISTED_STATUSES]},
            {"by": "since", "with": occurrence_filter.since.astimezone(timezone.utc).isoformat()},
            {"by": "till", "with": occurrence_filter.till.astimezone(timezone.utc).isoformat()},
        ]
        if occurrence_filter.location_ids:
            filters.append({"by": "location_id", "with": list(occurrence_filter.location_ids)})
        return {"filter": filters}

    async def fetch_occurrences(
        self, occurrence_filter: OccurrenceFilter
    ) -> list[Occurrence]:
        """
        Fetch the schedule listing for a time range.

        Malformed entries are logged and skipped.
        """
        params = {
            "all_service_categories": "true",
            "json": json.dumps(self._build_filter(occurrence_filter)),
        }
        data = await self._request("GET", "/schedule/occurrences", params=params)
        occurrences = self._parse_listing(data)
        logger.debug(f"Fetched {len(occurrences)} occurrences")
        return occurrences

    async def fetch_bookings(
        self, occurrence_filter: OccurrenceFilter
    ) -> list[Occurrence]:
        """
        Fetch the member's own bookings and waitlist places.

        The bookings endpoint only answers when a status filter is sent.
        """
        params = {"json": json.dumps(self._build_filter(occurrence_filter))}
        data = await self._request("GET", "/schedule/occurrences/bookings", params=params)
        bookings = self._parse_listing(data)
        logger.debug(f"Fetched {len(bookings)} bookings")
        return bookings

    def _parse_listing(self, data) -> list[Occurrence]:
        if isinstance(data, dict):
            items = data.get("data") or data.get("occurrences") or data.get("bookings") or []
        elif isinstance(data, list):
            items = data
        else:
            items = []

        occurrences = []
        for item in items:
            try:
                occurrence = self._parse_occurrence(item)
                if occurrence:
                    occurrences.append(occurrence)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Failed to parse occurrence: {e}")
        return occurrences

    async def fetch_concurrency_token(self, occurrence_id: str) -> Optional[int]:
        """Read the current lock_version for an occurrence."""
        data = await self._request("GET", f"/schedule/occurrences/{occurrence_id}")
        if not isinstance(data, dict):
            return None
        details = data.get("occurrence") or data
        lock_version = details.get("lock_version")
        return int(lock_version) if lock_version is not None else None

    def _parse_occurrence(self, data: dict) -> Optional[Occurrence]:
        """Parse one occurrence from the schedule listing."""
        occurrence_id = _as_id(data.get("id"))
        starts = data.get("occurs_at") or data.get("start_time")
        service = data.get("service") or {}
        trainer = data.get("trainer") or {}
        location = data.get("location") or {}
        activity_id = _as_id(data.get("service_id") or service.get("id"))

        if not occurrence_id or not starts or not activity_id:
            return None

        start_time = date_parser.isoparse(starts)
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)

        lock_version = data.get("lock_version")

        return Occurrence(
            id=occurrence_id,
            activity_id=activity_id,
            activity_name=data.get("service_title") or service.get("name") or "",
            instructor_id=_as_id(data.get("trainer_id") or trainer.get("id")),
            instructor_name=data.get("trainer_name") or trainer.get("name"),
            location_id=_as_id(data.get("location_id") or location.get("id")),
            location_name=data.get("location_name") or location.get("name"),
            start_time=start_time,
            duration_minutes=int(data.get("duration_in_minutes") or data.get("duration") or 0),
            capacity=int(data.get("service_group_size") or 0),
            attended_count=int(data.get("attended_clients_count") or 0),
            is_enrolled=bool(data.get("is_joined")),
            is_waitlisted=bool(data.get("is_waited")),
            is_full_group=bool(data.get("full_group")),
            waitlist_enabled=bool(data.get("waiting_list_enabled")),
            booking_lead_hours=int(data.get("restrict_to_book_in_advance_time_in_hours") or 0),
            lock_version=int(lock_version) if lock_version is not None else None,
            status=OccurrenceStatus.parse(data.get("status")),
        )

    # =========================================================================
    # Writes
    # =========================================================================

    async def _write(self, method: str, path: str, payload: Optional[dict] = None):
        """
        Issue a single write. Returns (body, None) or (None, error).

        Never retried here; the scheduler retries on its next tick.
        """
        try:
            body = await self._request(
                method,
                path,
                retry=False,
                data={"json": json.dumps(payload or {})},
            )
            return body, None
        except GatewayAPIError as e:
            return None, e

    async def register(self, occurrence_id: str, token: Optional[int]) -> Outcome:
        """
        Book an occurrence with its current lock_version.

        A 422 means the class is full unless the body says otherwise.
        """
        payload = {"lock_version": token} if token is not None else {}
        _, error = await self._write(
            "POST", f"/schedule/occurrences/{occurrence_id}/join", payload
        )
        if error is None:
            logger.info(f"Registered for occurrence {occurrence_id}")
            return Booked()
        if isinstance(error, AuthenticationError):
            return GatewayError(detail=str(error), status_code=error.status_code)
        if error.status_code is None:
            return GatewayError(detail=str(error))
        return classify_register_failure(error.status_code, error.body)

    async def join_waitlist(self, occurrence_id: str) -> Outcome:
        _, error = await self._write("POST", f"/schedule/occurrences/{occurrence_id}/wait")
        if error is None:
            logger.info(f"Joined waiting list for occurrence {occurrence_id}")
            return Waitlisted()
        if isinstance(error, AuthenticationError):
            return GatewayError(detail=str(error), status_code=error.status_code)
        if error.status_code is None:
            return GatewayError(detail=str(error))
        return classify_waitlist_failure(error.status_code, error.body)

    async def cancel(self, occurrence_id: str) -> Outcome:
        _, error = await self._write("DELETE", f"/schedule/occurrences/{occurrence_id}/cancel")
        if error is None:
            logger.info(f"Cancelled booking for occurrence {occurrence_id}")
            return Cancelled()
        return self._cancel_failure(error)

    async def leave_waitlist(self, occurrence_id: str) -> Outcome:
        _, error = await self._write("DELETE", f"/schedule/occurrences/{occurrence_id}/wait")
        if error is None:
            logger.info(f"Left waiting list for occurrence {occurrence_id}")
            return Cancelled()
        return self._cancel_failure(error)

    @staticmethod
    def _cancel_failure(error: GatewayAPIError) -> Outcome:
        body = error.body
        if error.status_code == 400 and isinstance(body, dict) and body.get("exception"):
            detail = f"Cannot cancel: {body['exception']}"
        elif error.status_code == 404:
            detail = "Class not found or not enrolled"
        elif error.status_code == 422:
            detail = "Class cannot be cancelled at this time"
        else:
            detail = str(error)
        return GatewayError(detail=detail, status_code=error.status_code)
