import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from mgnrega_pulse.core.errors import (
    NotFoundError,
    PulseError,
    UpstreamFailureError,
    UpstreamTimeoutError,
    ValidationError,
)
from mgnrega_pulse.services.normalizer import normalize_record
from mgnrega_pulse.services.retry import RetryExecutor
from mgnrega_pulse.services.staleness import Period

logger = logging.getLogger(__name__)


def get_session(pool_size=10, connect_retries=2, backoff=0.5):
    # urllib3 only retries failed connects; whole-request retries belong to RetryExecutor
    s = requests.Session()
    retries = Retry(
        total=connect_retries,
        connect=connect_retries,
        read=0,
        status=0,
        backoff_factor=backoff,
        allowed_methods=["GET"],
    )
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=retries)
    s.mount("https://", adapter)
    s.mount("http://", adapter)
    s.headers.update({"User-Agent": "MGNREGAPulse/1.0", "Accept": "application/json"})
    return s


@dataclass
class UpstreamResult:
    success: bool
    data: Any = None
    total: int = 0
    error: Optional[PulseError] = None

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error else None


class DataGovGateway:
    """Calls the data.gov.in MGNREGA resource.

    Every operation returns an ``UpstreamResult`` instead of raising, and
    counts one upstream call on the shared cache statistics.
    """

    def __init__(self, settings, cache, retry: Optional[RetryExecutor] = None,
                 session: Optional[requests.Session] = None,
                 state_name_lookup: Optional[Callable[[str], Optional[str]]] = None):
        self.settings = settings
        self.cache = cache
        self.retry = retry or RetryExecutor()
        self.session = session or get_session()
        self.state_name_lookup = state_name_lookup

    # ---------- HTTP ----------

    def _get(self, filters: Dict[str, Any], limit: Optional[int] = None) -> Dict[str, Any]:
        """Blocking GET; runs in a worker thread."""
        params = {
            "api-key": self.settings.API_KEY,
            "format": "json",
            "limit": limit or self.settings.API_LIMIT,
        }
        for name, value in filters.items():
            if value is not None:
                params[f"filters[{name}]"] = value

        timeout = self.settings.API_TIMEOUT_MS / 1000.0
        try:
            response = self.session.get(self.settings.DATASET_URL, params=params, timeout=timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.HTTPError as http_err:
            status = getattr(http_err.response, "status_code", None)
            if status == 403:
                raise UpstreamFailureError("Access denied (403). Check your API key or dataset permissions.",
                                           {"status": status})
            raise UpstreamFailureError(f"HTTP error occurred: {http_err}", {"status": status})
        except requests.exceptions.Timeout:
            raise UpstreamTimeoutError("The request timed out.")
        except requests.exceptions.RequestException as e:
            raise UpstreamFailureError(f"API request failed: {e}")
        except ValueError as e:
            raise UpstreamFailureError(f"Malformed JSON from API: {e}")

        if not isinstance(payload, dict):
            raise UpstreamFailureError("Unexpected API response shape")
        return payload

    async def _request(self, filters: Dict[str, Any], limit: Optional[int] = None,
                       name: str = "upstream") -> Dict[str, Any]:
        if not self.settings.API_KEY or not self.settings.DATASET_URL:
            raise UpstreamFailureError("Missing API_KEY or DATASET_URL")

        async def attempt():
            return await self.retry.with_timeout(
                lambda: asyncio.to_thread(self._get, filters, limit),
                self.settings.API_TIMEOUT_MS,
            )

        return await self.retry.execute(
            attempt,
            self.settings.MAX_RETRY_ATTEMPTS,
            self.settings.RETRY_BASE_DELAY_MS,
            name=name,
        )

    # ---------- OPERATIONS ----------

    async def fetch_by_entity_and_period(self, district_code: str, period: Period,
                                         state_name: Optional[str] = None) -> UpstreamResult:
        """One normalized record for a district and period."""
        start = time.monotonic()
        self.cache.increment_upstream_calls()

        if not state_name and self.state_name_lookup is not None:
            state_name = await asyncio.to_thread(self.state_name_lookup, district_code)
        if not state_name:
            return UpstreamResult(False, error=ValidationError(
                "State name required for API call", {"district_code": district_code}))

        fin_year, month = period.to_fiscal()
        try:
            payload = await self._request({
                "state_name": state_name,
                "fin_year": fin_year,
                "district_code": district_code,
                "month": month,
            }, name=f"fetch {district_code} {period.label}")
        except PulseError as e:
            logger.error("Government API error for district %s: %s", district_code, e.message)
            return UpstreamResult(False, error=e)

        records = payload.get("records") or []
        if not records:
            return UpstreamResult(False, error=NotFoundError("No data found"))

        try:
            data = normalize_record(records[0], source="api")
        except ValidationError as e:
            logger.warning("Malformed upstream record for %s: %s", district_code, e.message)
            return UpstreamResult(False, error=e)

        logger.info("API call successful for district %s in %dms",
                    district_code, (time.monotonic() - start) * 1000)
        return UpstreamResult(True, data=data, total=payload.get("total") or len(records))

    async def fetch_children(self, state_code: str, state_name: Optional[str]) -> UpstreamResult:
        """Districts of a state, deduplicated by code (last seen wins)."""
        self.cache.increment_upstream_calls()
        if not state_name:
            return UpstreamResult(False, error=ValidationError(
                "State name required to fetch districts", {"state_code": state_code}))

        try:
            payload = await self._request({"state_name": state_name}, name=f"districts of {state_code}")
        except PulseError as e:
            logger.error("Failed to fetch districts for state %s: %s", state_code, e.message)
            return UpstreamResult(False, error=e)

        districts = {}
        for r in payload.get("records") or []:
            if r.get("district_code") and r.get("district_name"):
                districts[str(r["district_code"])] = {
                    "district_code": str(r["district_code"]),
                    "district_name": r["district_name"],
                    "state_code": str(r.get("state_code") or state_code),
                    "state_name": r.get("state_name") or state_name,
                }
        return UpstreamResult(True, data=list(districts.values()), total=len(districts))

    async def fetch_all_parents(self) -> UpstreamResult:
        """States seen in the dataset, deduplicated by code."""
        self.cache.increment_upstream_calls()
        try:
            payload = await self._request({}, limit=self.settings.API_LIMIT, name="states")
        except PulseError as e:
            logger.error("Failed to fetch states: %s", e.message)
            return UpstreamResult(False, error=e)

        states = {}
        for r in payload.get("records") or []:
            if r.get("state_code") and r.get("state_name"):
                states[str(r["state_code"])] = {
                    "state_code": str(r["state_code"]),
                    "state_name": r["state_name"],
                }
        return UpstreamResult(True, data=list(states.values()), total=len(states))

    async def fetch_by_parent_and_year(self, state_name: str, fin_year: str) -> UpstreamResult:
        """Raw records for a whole state and financial year."""
        self.cache.increment_upstream_calls()
        try:
            payload = await self._request({"state_name": state_name, "fin_year": fin_year},
                                          name=f"{state_name} {fin_year}")
        except PulseError as e:
            logger.error("Government API error for %s: %s", state_name, e.message)
            return UpstreamResult(False, error=e)

        records: List[Dict[str, Any]] = payload.get("records") or []
        logger.info("Fetched %d records for %s (%s)", len(records), state_name, fin_year)
        return UpstreamResult(True, data=records, total=payload.get("total") or len(records))
