# backend/mgnrega_pulse/services/etl_worker.py
import asyncio
import json
import logging
import time

from mgnrega_pulse.core.errors import NotFoundError, PulseError, ServiceUnavailableError, ValidationError
from mgnrega_pulse.services import keys
from mgnrega_pulse.services.normalizer import normalize_record, normalize_upload
from mgnrega_pulse.services.orchestrator import ensure_period
from mgnrega_pulse.services.staleness import Period

logger = logging.getLogger("etl")

MAX_AUDIT_ERRORS = 50


def _elapsed_ms(start):
    return int((time.monotonic() - start) * 1000)


class EtlWorker:
    """Write paths: manual uploads, scheduled syncs, state bulk syncs and cleanup.

    Every successful write invalidates the cache keys of the districts it
    touched.
    """

    def __init__(self, orchestrator, sleep=None):
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.gateway = orchestrator.gateway
        self.settings = orchestrator.settings
        self.sleep = sleep or asyncio.sleep
        self.is_running = False
        self.last_run = None
        self.last_result = None

    async def _db(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    def _invalidate(self, district_codes):
        self.orchestrator.invalidate_written(district_codes)

    async def _finish_audit(self, audit_id, results, start, aborted=False):
        errors = results["errors"]
        await self._db(
            self.store.finish_audit,
            audit_id,
            not aborted and results["failed"] == 0,
            json.dumps(errors[:MAX_AUDIT_ERRORS]) if errors else None,
            _elapsed_ms(start),
        )

    # ---------- MANUAL UPLOAD ----------

    async def manual_upsert(self, records, source="manual_upload"):
        if not isinstance(records, list):
            raise ValidationError("Data must be an array of records")

        start = time.monotonic()
        results = {"success": 0, "failed": 0, "errors": []}
        audit_id = await self._db(self.store.start_audit, source, {"records": records}, len(records))

        touched = set()
        completed = False
        try:
            for record in records:
                try:
                    code = await self._upsert_upload(record)
                    touched.add(code)
                    results["success"] += 1
                except PulseError as e:
                    results["failed"] += 1
                    results["errors"].append({
                        "record": record.get("district_code") if isinstance(record, dict) else None,
                        "error": e.message,
                    })
            completed = True
        finally:
            await self._finish_audit(audit_id, results, start, aborted=not completed)
            self._invalidate(touched)
        logger.info("✅ Upload complete: %d stored, %d failed", results["success"], results["failed"])
        return {"success": True, "message": "Data upload completed", "results": results,
                "processingTime": _elapsed_ms(start)}

    async def _upsert_upload(self, record):
        normalized = normalize_upload(record, source="manual")
        code = normalized["district_code"]

        entity = await self._db(self.store.get_entity, code)
        if entity is None:
            if not (normalized["district_name"] and normalized["state_code"] and normalized["state_name"]):
                raise ValidationError("New district requires district_name, state_code and state_name")
            entity = await self.orchestrator.save_entity(None, code, normalized["district_name"],
                                                         normalized["state_code"], normalized["state_name"])

        for field in ("district_name", "state_code", "state_name"):
            normalized[field] = normalized[field] or entity[field]

        await self._db(self.store.upsert, code, normalized["period"], normalized, "manual")
        return code

    # ---------- SCHEDULED SYNC ----------

    async def trigger_sync(self):
        """Refresh the current period for recently active districts."""
        if self.is_running:
            logger.info("Data sync already running, skipping...")
            return {"success": False, "skipped": True, "message": "Data sync already running"}

        self.is_running = True
        start = time.monotonic()
        try:
            logger.info("🚀 Starting data sync")
            result = await self._sync_active()
        except PulseError as e:
            logger.exception("Data sync error")
            result = {"success": False, "error": e.message}
        finally:
            self.is_running = False

        self.last_run = self.orchestrator.clock()
        self.last_result = result
        logger.info("Data sync finished in %dms", _elapsed_ms(start))
        return result

    async def _sync_active(self):
        start = time.monotonic()
        codes = await self._db(self.store.most_recently_active,
                               self.settings.SYNC_ACTIVE_LIMIT, self.settings.SYNC_ACTIVE_DAYS)
        period = Period.current(self.orchestrator.clock())
        logger.info("Found %d active districts to refresh for %s", len(codes), period.label)

        audit_id = await self._db(self.store.start_audit, "scheduled_sync",
                                  {"districts": codes, "period": period.label}, len(codes))
        results = {"success": 0, "failed": 0, "errors": []}
        touched = set()

        for i, code in enumerate(codes):
            if i:
                # advisory rate limit between upstream requests
                await self.sleep(self.settings.SYNC_REQUEST_DELAY_MS / 1000.0)
            try:
                entity = await self._db(self.store.get_entity, code)
                fetched = await self.gateway.fetch_by_entity_and_period(
                    code, period, entity["state_name"] if entity else None)
                fetched = ensure_period(fetched, code, period)
                if not fetched.success:
                    results["failed"] += 1
                    results["errors"].append({"district_code": code, "error": fetched.message})
                    continue

                data = fetched.data
                await self._db(self.store.upsert, code, period, data, "etl")
                await self.orchestrator.save_entity(entity, code, data["district_name"],
                                                    data["state_code"], data["state_name"])
                touched.add(code)
                results["success"] += 1
            except PulseError as e:
                logger.error("Failed to refresh %s: %s", code, e.message)
                results["failed"] += 1
                results["errors"].append({"district_code": code, "error": e.message})

        await self._finish_audit(audit_id, results, start)
        self._invalidate(touched)
        logger.info("✅ Sync completed: %d successful, %d failed", results["success"], results["failed"])
        if results["errors"]:
            logger.warning("Errors during sync: %s", results["errors"][:5])
        return {"success": True, "duration": _elapsed_ms(start), "results": results}

    def sync_status(self):
        return {
            "isRunning": self.is_running,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "lastResult": self.last_result,
        }

    # ---------- STATE BULK SYNC ----------

    async def sync_parent(self, state_code, fin_year):
        """Pull one state's financial year from the API and store every record."""
        Period.from_fiscal(fin_year, "Apr")

        states = (await self.orchestrator.list_parents()).data
        state_name = next((s["state_name"] for s in states if s["state_code"] == state_code), None)
        if state_name is None:
            raise NotFoundError("State not found. Please fetch states first.", {"state_code": state_code})

        fetched = await self.gateway.fetch_by_parent_and_year(state_name, fin_year)
        if not fetched.success or not fetched.data:
            raise ServiceUnavailableError("Failed to fetch data from government API",
                                          {"reason": fetched.message})

        start = time.monotonic()
        records = fetched.data
        audit_id = await self._db(self.store.start_audit, "data_gov_api", {"records": records}, len(records))
        results = {"inserted": 0, "updated": 0, "failed": 0, "errors": []}

        touched = set()
        for raw in records:
            try:
                parsed = normalize_record(raw, source="etl")
                code, period = parsed["district_code"], parsed["period"]
                existing = await self._db(self.store.find_one, code, period)
                await self._db(self.store.upsert, code, period, parsed, "etl")
                await self._db(self.store.upsert_entity, code, parsed["district_name"],
                               parsed["state_code"], parsed["state_name"])
                results["updated" if existing else "inserted"] += 1
                touched.add(code)
            except PulseError as e:
                logger.error("Failed to process record: %s", e.message)
                results["failed"] += 1
                results["errors"].append({"record": raw.get("district_code") if isinstance(raw, dict) else None,
                                          "error": e.message})

        await self._finish_audit(audit_id, results, start)
        self._invalidate(touched)
        self.orchestrator.invalidate(keys.state_districts(state_code))
        self.orchestrator.invalidate(keys.states_list())
        logger.info("Synced %d records for %s", len(records), state_name)
        return {
            "state": state_name,
            "finYear": fin_year,
            "total": len(records),
            "inserted": results["inserted"],
            "updated": results["updated"],
            "failed": results["failed"],
        }

    # ---------- CLEANUP ----------

    async def cleanup(self, days=None):
        days = self.settings.CLEANUP_DAYS if days is None else days
        logger.info("Starting cleanup of records older than %s days", days)
        deleted = await self._db(self.store.delete_older_than, days)
        self.orchestrator.invalidate()
        logger.info("Cleanup completed. Deleted %d old records", deleted)
        return {"deleted": deleted, "days": days}


def run_etl_once():
    from mgnrega_pulse.core.config import get_settings
    from mgnrega_pulse.core.logging import configure_logging
    from mgnrega_pulse.services.container import build_services

    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    services = build_services(settings)
    return asyncio.run(services.etl.trigger_sync())


if __name__ == "__main__":
    run_etl_once()
