"""
Live API client for the iRacing data API.

Every call goes through a global concurrency semaphore and a sliding-window
throttle, and transient failures are retried with exponential backoff.
Caching is NOT done here; see app.race.provider and app.lookup.
"""
import os
import logging
import threading
from typing import Optional, List, Dict, Any

import requests
from dotenv import load_dotenv
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)

from app.errors import NotFound, UpstreamUnavailable
from app.utils.rate_limiter import RateLimiter
from config.settings import settings

load_dotenv()

logger = logging.getLogger("iracing_client")

API_TOKEN = settings.iracing_auth_token or os.getenv("IRACING_AUTH_TOKEN")

# Session number of the main race within a subsession's lap data
MAIN_RACE_SIMSESSION = 0


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, UpstreamUnavailable) and error.retryable


class IRacingClient:
    """
    Thin HTTP client for the iRacing data API.

    The data API answers most endpoints with a short-lived `link` to the
    real payload, and lap data with a list of chunk files; both are followed
    transparently.

    Errors:
    - HTTP 404 or an empty member list -> NotFound
    - network errors, timeouts, 429 and 5xx -> UpstreamUnavailable (retried)
    - other 4xx -> UpstreamUnavailable (not retried)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        auth_token: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.base_url = (base_url or settings.iracing_base_url).rstrip("/")
        self._auth_token = auth_token if auth_token is not None else API_TOKEN
        self._timeout = timeout if timeout is not None else settings.upstream_timeout_seconds
        self._session = session or requests.Session()
        self._rate_limiter = rate_limiter or RateLimiter(max_requests=settings.requests_per_minute)
        # Limits concurrent requests across every parallel enrichment run
        self._semaphore = threading.Semaphore(max_concurrency or settings.upstream_max_concurrency)

    def _get_headers(self) -> dict:
        """Get API authentication headers."""
        headers = {"Accept": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    @retry(
        stop=stop_after_attempt(settings.upstream_retry_attempts),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    def _request_json(self, url: str, params: Optional[dict] = None, authenticated: bool = True) -> Any:
        """
        Perform one throttled GET and decode the JSON body.

        Retries on retryable UpstreamUnavailable errors with exponential backoff.
        """
        self._rate_limiter.acquire()
        with self._semaphore:
            try:
                response = self._session.get(
                    url,
                    headers=self._get_headers() if authenticated else None,
                    params=params,
                    timeout=self._timeout,
                )
            except requests.Timeout as e:
                logger.warning(f"Upstream timeout for {url}: {e}")
                raise UpstreamUnavailable(f"Upstream request timed out: {url}", cause=e)
            except requests.RequestException as e:
                logger.warning(f"Upstream connection error for {url}: {e}")
                raise UpstreamUnavailable(f"Upstream request failed: {e}", cause=e)

        status = response.status_code
        if status == 404:
            raise NotFound(f"Upstream resource not found: {url}")
        if status == 429:
            logger.warning(f"Upstream rate limit hit for {url}")
            raise UpstreamUnavailable("Upstream rate limit exceeded")
        if status >= 500:
            raise UpstreamUnavailable(f"Upstream error {status} for {url}")
        if status >= 400:
            raise UpstreamUnavailable(f"Upstream rejected request ({status}) for {url}", retryable=False)

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Upstream returned invalid JSON for {url}", cause=e)

    def _get(self, path: str, params: Optional[dict] = None) -> Any:
        """GET a data API endpoint, following its `link` indirection."""
        data = self._request_json(f"{self.base_url}{path}", params=params)
        if isinstance(data, dict) and "link" in data and len(data) <= 2:
            logger.debug(f"Following data link for {path}")
            data = self._request_json(data["link"], authenticated=False)
        return data

    def _get_chunked(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Download and concatenate every chunk referenced by chunk_info."""
        chunk_info = payload.get("chunk_info") or {}
        base_url = chunk_info.get("base_download_url", "")
        items: List[Dict[str, Any]] = []
        for file_name in chunk_info.get("chunk_file_names") or []:
            chunk = self._request_json(f"{base_url}{file_name}", authenticated=False)
            if isinstance(chunk, list):
                items.extend(chunk)
        return items

    # ===== RACES =====

    def fetch_race_skeleton(self, race_id: int) -> Dict[str, Any]:
        """
        Get the full result document of a subsession.

        One call; contains every participant's summary line but no laps.
        """
        data = self._get("/data/results/get", {"subsession_id": race_id})
        if not isinstance(data, dict) or not data.get("session_results"):
            raise NotFound(f"Race {race_id} not found", key=str(race_id))
        return data

    def fetch_participant_laps(
        self,
        race_id: int,
        cust_id: int,
        simsession_number: int = MAIN_RACE_SIMSESSION,
    ) -> List[Dict[str, Any]]:
        """Get every lap one participant drove in the race session."""
        payload = self._get(
            "/data/results/lap_data",
            {
                "subsession_id": race_id,
                "simsession_number": simsession_number,
                "cust_id": cust_id,
            },
        )
        if isinstance(payload, list):
            return payload
        if not isinstance(payload, dict):
            return []
        if payload.get("chunk_info"):
            return self._get_chunked(payload)
        return list(payload.get("lap_data") or [])

    # ===== MEMBERS =====

    def fetch_driver_profile(self, cust_id: int) -> Dict[str, Any]:
        """Get one member's profile including licenses."""
        data = self._get(
            "/data/member/get",
            {"cust_ids": cust_id, "include_licenses": "true"},
        )
        members = data.get("members") if isinstance(data, dict) else None
        if not members:
            raise NotFound(f"Driver {cust_id} not found", key=str(cust_id))
        return members[0]

    # ===== LOOKUP COLLECTIONS =====

    def fetch_all_cars(self) -> List[Dict[str, Any]]:
        """Get every car in the service."""
        data = self._get("/data/car/get")
        if not isinstance(data, list):
            logger.warning(f"Unexpected cars response format: {type(data).__name__}")
            return []
        logger.info(f"Fetched {len(data)} cars from iRacing API")
        return data

    def fetch_category_constants(self) -> List[Dict[str, Any]]:
        """Get the racing category constants ({label, value} pairs)."""
        data = self._get("/data/constants/categories")
        if not isinstance(data, list):
            logger.warning(f"Unexpected categories response format: {type(data).__name__}")
            return []
        logger.info(f"Fetched {len(data)} categories from iRacing API")
        return data


# Global client instance
_client: Optional[IRacingClient] = None


def get_iracing_client() -> IRacingClient:
    """Get or create the global upstream client."""
    global _client
    if _client is None:
        _client = IRacingClient()
    return _client
