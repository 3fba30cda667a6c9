"""
Read-through coordination across the process cache, the database and the
government API.

For a district and period the orchestrator serves the cache when it can,
then a fresh database row, and only then goes upstream. A failed refresh
degrades to whatever the database already holds; a hard failure is raised
only when no tier has any data.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from mgnrega_pulse.core.errors import (
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from mgnrega_pulse.services import keys
from mgnrega_pulse.services.cache import CacheTTL, TierCache
from mgnrega_pulse.services.data_fetcher import UpstreamResult
from mgnrega_pulse.services.normalizer import HOUSEHOLDS_FIELD, present_record
from mgnrega_pulse.services.staleness import Period, is_current_period, is_stale, utcnow
from mgnrega_pulse.utils import average, to_number

logger = logging.getLogger(__name__)

TREND_WINDOW = 6
TREND_THRESHOLD = 5
PERFORMANCE_THRESHOLD = 10
COMPARISON_RECENT = 6
COMPARISON_SIBLINGS = 100


@dataclass
class FetchResult:
    success: bool
    source: str
    data: Any = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": self.success, "source": self.source, "data": self.data}
        if self.message:
            body["message"] = self.message
        return body


def _households(record: Mapping[str, Any]) -> float:
    return to_number((record.get("indicators") or {}).get(HOUSEHOLDS_FIELD))


def ensure_period(result: UpstreamResult, district_code: str, period: Period) -> UpstreamResult:
    """Reject an upstream record that belongs to a different period than the one asked for."""
    if not result.success or result.data["period"] == period:
        return result
    returned = result.data["period"].label
    logger.warning("API returned %s for district %s when %s was requested", returned, district_code, period.label)
    return UpstreamResult(False, error=ValidationError(
        "API returned a record for a different period",
        {"district_code": district_code, "requested": period.label, "returned": returned},
    ))


def calculate_trends(records: List[Mapping[str, Any]]) -> Dict[str, Any]:
    """Compare the latest six points with the six before them.

    ``records`` must be in chronological order.
    """
    if len(records) < 2 * TREND_WINDOW:
        return {}

    recent = records[-TREND_WINDOW:]
    older = records[-2 * TREND_WINDOW:-TREND_WINDOW]
    recent_avg = average(_households(r) for r in recent)
    older_avg = average(_households(r) for r in older)
    change = 0 if older_avg == 0 else (recent_avg - older_avg) / older_avg * 100

    if change > TREND_THRESHOLD:
        trend = "increasing"
    elif change < -TREND_THRESHOLD:
        trend = "decreasing"
    else:
        trend = "stable"

    return {
        "recentAverage": round(recent_avg, 2),
        "olderAverage": round(older_avg, 2),
        "percentageChange": round(change, 2),
        "trend": trend,
    }


def calculate_performance(records: List[Mapping[str, Any]],
                          parent_average: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not records or not parent_average:
        return {}

    district_avg = average(_households(r) for r in records)
    state_avg = parent_average["avgHouseholds"]
    index = 0 if state_avg == 0 else (district_avg - state_avg) / state_avg * 100

    if index > PERFORMANCE_THRESHOLD:
        status = "Above Average"
    elif index < -PERFORMANCE_THRESHOLD:
        status = "Below Average"
    else:
        status = "Average"

    return {
        "districtAverage": round(district_avg, 2),
        "stateAverage": round(state_avg, 2),
        "performanceIndex": round(index, 2),
        "status": status,
    }


class FetchOrchestrator:
    def __init__(self, cache: TierCache, store, gateway, settings,
                 ttl: Optional[CacheTTL] = None, clock: Optional[Callable] = None):
        self.cache = cache
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self.ttl = ttl or CacheTTL.from_settings(settings)
        self.clock = clock or utcnow
        self._inflight: Dict[str, asyncio.Task] = {}

    async def _db(self, fn: Callable, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    def _ttl_for(self, period: Period) -> int:
        return self.ttl.HOT if is_current_period(period, self.clock()) else self.ttl.HISTORICAL

    async def _single_flight(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Concurrent misses on one key share a single refresh."""
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda _: self._inflight.pop(key, None))
        else:
            logger.debug("Joining in-flight refresh for %s", key)
        return await asyncio.shield(task)

    # ---------- DISTRICT DATA ----------

    async def get_entity_data(self, district_code: str, period: Period) -> FetchResult:
        key = keys.district_data(district_code, period)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache HIT: %s", key)
            return FetchResult(True, "cache", cached)

        logger.debug("Cache MISS: %s", key)
        record = await self._db(self.store.find_one, district_code, period)
        if record is not None and not is_stale(record, self.settings.DATA_REFRESH_DAYS, self.clock()):
            data = present_record(record)
            self.cache.set(key, data, self._ttl_for(period))
            return FetchResult(True, "database", data)

        return await self._single_flight(key, lambda: self._refresh(key, district_code, period, record))

    async def _refresh(self, key: str, district_code: str, period: Period,
                       known: Optional[Mapping[str, Any]]) -> FetchResult:
        entity = await self._db(self.store.get_entity, district_code)
        state_name = (entity or known or {}).get("state_name")

        result = await self.gateway.fetch_by_entity_and_period(district_code, period, state_name)
        result = ensure_period(result, district_code, period)
        if result.success:
            fresh = result.data
            stored = await self._db(self.store.upsert, district_code, period, fresh, "api")
            await self.save_entity(entity, district_code, fresh["district_name"],
                                   fresh["state_code"], fresh["state_name"])
            data = present_record(stored)
            self.cache.set(key, data, self._ttl_for(period))
            logger.info("Refreshed data for %s (%s) from API", district_code, period.label)
            return FetchResult(True, "api", data)

        if known is not None:
            logger.warning("Refresh of %s (%s) failed (%s); serving stale database record",
                           district_code, period.label, result.message)
            return FetchResult(True, "database_fallback", present_record(known), message="stale")

        if isinstance(result.error, (ValidationError, NotFoundError)):
            raise result.error
        raise ServiceUnavailableError(details={"reason": result.message})

    async def save_entity(self, existing: Optional[Mapping[str, Any]], district_code: str,
                          district_name: str, state_code: str, state_name: str) -> Dict[str, Any]:
        """Upsert a district; a first sighting also drops the cached listings it belongs to."""
        entity = await self._db(self.store.upsert_entity, district_code, district_name, state_code, state_name)
        if existing is None:
            self.cache.delete(keys.state_districts(entity["state_code"]))
            self.cache.delete(keys.states_list())
        return entity

    async def register_entity(self, district_code: str, district_name: str, state_code: str,
                              state_name: str) -> Dict[str, Any]:
        entity = await self._db(self.store.register_entity, district_code, district_name, state_code, state_name)
        self.cache.delete(keys.state_districts(entity["state_code"]))
        self.cache.delete(keys.states_list())
        logger.info("Registered district %s (%s) in state %s", district_code, district_name, state_code)
        return entity

    async def get_latest(self, district_code: str) -> FetchResult:
        """Most recent stored period for a district, straight from the database."""
        record = await self._db(self.store.find_latest, district_code)
        if record is None:
            raise NotFoundError("No data stored for district", {"district_code": district_code})
        return FetchResult(True, "database", present_record(record))

    # ---------- HISTORY & COMPARISON ----------

    async def get_history(self, district_code: str, start: Period, end: Period) -> FetchResult:
        if start > end:
            raise ValidationError("Invalid date range: start must not be after end",
                                  {"start": start.label, "end": end.label})

        key = keys.district_history(district_code, start, end)
        cached = self.cache.get(key)
        if cached is not None:
            return FetchResult(True, "cache", cached)

        history = await self._db(self.store.find_range, district_code, start, end)
        response = {
            "district_code": district_code,
            "period": {"start": start.label, "end": end.label},
            "dataPoints": len(history),
            "data": [present_record(r) for r in history],
            "trends": calculate_trends(history),
        }
        self.cache.set(key, response, self.ttl.HISTORICAL)
        return FetchResult(True, "database", response)

    async def get_comparison(self, district_code: str) -> FetchResult:
        key = keys.district_comparison(district_code)
        cached = self.cache.get(key)
        if cached is not None:
            return FetchResult(True, "cache", cached)

        district = await self._db(self.store.get_entity, district_code)
        if district is None:
            raise NotFoundError("District not found", {"district_code": district_code})

        recent = await self._db(self.store.find_recent, district_code, COMPARISON_RECENT)
        state_average = await self._db(self.store.parent_average, district["state_code"], COMPARISON_SIBLINGS)

        comparison = {
            "district": {
                "code": district_code,
                "name": district["district_name"],
                "recentData": [present_record(r) for r in recent],
            },
            "stateAverage": state_average or {},
            "performance": calculate_performance(recent, state_average),
        }
        self.cache.set(key, comparison, self.ttl.COMPARISON)
        return FetchResult(True, "database", comparison)

    # ---------- STATES & DISTRICT LISTS ----------

    async def list_parents(self) -> FetchResult:
        key = keys.states_list()
        cached = self.cache.get(key)
        if cached is not None:
            return FetchResult(True, "cache", cached)

        states = await self._db(self.store.list_parents)
        if states:
            self.cache.set(key, states, self.ttl.ENTITY_LIST)
            return FetchResult(True, "database", states)

        result = await self.gateway.fetch_all_parents()
        if not result.success:
            raise ServiceUnavailableError("Failed to fetch states from government API",
                                          {"reason": result.message})
        self.cache.set(key, result.data, self.ttl.ENTITY_LIST)
        return FetchResult(True, "api", result.data)

    async def list_children(self, state_code: str) -> FetchResult:
        key = keys.state_districts(state_code)
        cached = self.cache.get(key)
        if cached is not None:
            return FetchResult(True, "cache", cached)

        districts = await self._db(self.store.list_entities, state_code)
        if districts:
            self.cache.set(key, districts, self.ttl.ENTITY_LIST)
            return FetchResult(True, "database", districts)

        states = (await self.list_parents()).data
        state_name = next((s["state_name"] for s in states if s["state_code"] == state_code), None)
        if state_name is None:
            raise NotFoundError("State not found", {"state_code": state_code})

        result = await self.gateway.fetch_children(state_code, state_name)
        if not result.success:
            raise ServiceUnavailableError("Failed to fetch districts", {"reason": result.message})

        for d in result.data:
            await self._db(self.store.upsert_entity, d["district_code"], d["district_name"],
                           d["state_code"], d["state_name"])
        logger.info("Fetched %d districts for %s from API", len(result.data), state_code)
        self.cache.set(key, result.data, self.ttl.ENTITY_LIST)
        return FetchResult(True, "api", result.data)

    # ---------- CACHE ADMIN ----------

    def invalidate(self, pattern: Optional[str] = None) -> Optional[int]:
        """Drop keys matching ``pattern``, or everything when no pattern is given."""
        if pattern:
            return self.cache.delete_matching(pattern)
        self.cache.flush()
        return None

    def invalidate_entity(self, district_code: str) -> int:
        return self.cache.delete_matching(keys.entity_pattern(district_code))

    def invalidate_written(self, district_codes) -> int:
        """Drop keys made stale by stored records.

        Every cached comparison embeds its state average, so a write to any
        district invalidates all of them.
        """
        if not district_codes:
            return 0
        cleared = sum(self.invalidate_entity(code) for code in sorted(district_codes))
        return cleared + self.cache.delete_matching(keys.comparison_pattern())

    async def warm_cache(self) -> Dict[str, Any]:
        stats = self.cache.stats()
        hit_rate = float(stats["hitRate"])
        logger.debug("Cache stats - Keys: %s, Hit rate: %s%%", stats["keyCount"], stats["hitRate"])

        if hit_rate >= self.settings.WARM_HIT_RATE_THRESHOLD or stats["keyCount"] >= self.settings.WARM_KEY_THRESHOLD:
            return {"skipped": True, "warmed": 0, "failed": 0}

        codes = await self._db(self.store.most_recently_active, self.settings.WARM_TOP_N)
        period = Period.current(self.clock())
        logger.info("Cache hit rate low, warming cache for %d districts", len(codes))

        warmed = failed = 0
        for code in codes:
            try:
                await self.get_entity_data(code, period)
                warmed += 1
            except Exception:
                logger.exception("Cache warming failed for %s", code)
                failed += 1

        logger.info("Cache warming completed: %d warmed, %d failed", warmed, failed)
        return {"skipped": False, "warmed": warmed, "failed": failed}

    async def stats(self) -> Dict[str, Any]:
        latest = await self._db(self.store.find_latest_global)
        return {
            "cache": self.cache.stats(),
            "database": await self._db(self.store.counts),
            "latestRecord": {
                "districtCode": latest["district_code"],
                "period": latest["period"].label,
                "lastUpdated": latest["updated_at"].isoformat() if latest["updated_at"] else None,
            } if latest else None,
        }
