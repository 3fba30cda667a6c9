import pytest

from mgnrega_pulse.core.errors import NotFoundError, ServiceUnavailableError, UpstreamFailureError, ValidationError
from mgnrega_pulse.services import keys
from mgnrega_pulse.services.data_fetcher import UpstreamResult
from mgnrega_pulse.services.etl_worker import EtlWorker
from mgnrega_pulse.services.normalizer import normalize_record
from mgnrega_pulse.services.staleness import Period


class RecordingSleep:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def worker(orchestrator, sleep):
    return EtlWorker(orchestrator, sleep=sleep)


@pytest.fixture
def put(store, raw_record):
    def put(**kwargs):
        normalized = normalize_record(raw_record(**kwargs))
        store.upsert(normalized["district_code"], normalized["period"], normalized, "api")
        store.upsert_entity(normalized["district_code"], normalized["district_name"],
                            normalized["state_code"], normalized["state_name"])
        return normalized

    return put


class TestManualUpsert:

    @pytest.mark.asyncio
    async def test_accepts_both_period_forms(self, worker, store):
        result = await worker.manual_upsert([
            {
                "district_code": "1601",
                "district_name": "AHMEDNAGAR",
                "state_code": "16",
                "state_name": "MAHARASHTRA",
                "year": 2025,
                "month": 1,
                "indicators": {"Total_Households_Worked": "10"},
            },
            {
                "district_code": "1601",
                "fin_year": "2024-2025",
                "month": "Feb",
                "Total_Households_Worked": "20",
            },
        ])

        assert result["success"] is True
        assert result["results"] == {"success": 2, "failed": 0, "errors": []}
        jan = store.find_one("1601", Period(2025, 1))
        feb = store.find_one("1601", Period(2025, 2))
        assert jan["fetched_from"] == "manual"
        assert feb["district_name"] == "AHMEDNAGAR"
        assert feb["total_households_worked"] == 20.0

    @pytest.mark.asyncio
    async def test_new_district_needs_names(self, worker, store):
        result = await worker.manual_upsert([{"district_code": "1601", "year": 2025, "month": 1}])

        assert result["results"]["failed"] == 1
        assert result["results"]["errors"][0]["record"] == "1601"
        assert store.find_one("1601", Period(2025, 1)) is None

    @pytest.mark.asyncio
    async def test_bad_records_do_not_stop_the_batch(self, worker):
        result = await worker.manual_upsert([
            "not a record",
            {"district_code": "1601", "year": 2025},
            {"district_code": "1601", "district_name": "AHMEDNAGAR", "state_code": "16",
             "state_name": "MAHARASHTRA", "year": 2025, "month": 1},
        ])

        assert result["results"]["success"] == 1
        assert result["results"]["failed"] == 2

    @pytest.mark.asyncio
    async def test_rejects_non_list(self, worker):
        with pytest.raises(ValidationError):
            await worker.manual_upsert({"district_code": "1601"})

    @pytest.mark.asyncio
    async def test_invalidates_touched_districts_and_audits(self, worker, cache, store):
        cache.set(keys.district_data("1601", Period(2025, 1)), {"stale": True})
        cache.set(keys.district_data("1602", Period(2025, 1)), {"other": True})

        await worker.manual_upsert([
            {"district_code": "1601", "district_name": "AHMEDNAGAR", "state_code": "16",
             "state_name": "MAHARASHTRA", "year": 2025, "month": 1},
        ])

        assert cache.list_keys() == [keys.district_data("1602", Period(2025, 1))]
        items, total = store.list_audits()
        assert total == 1
        assert items[0]["source"] == "manual_upload"
        assert items[0]["success"] is True

    @pytest.mark.asyncio
    async def test_non_object_indicators_fail_only_that_record(self, worker, cache, store):
        good = {"district_code": "1601", "district_name": "AHMEDNAGAR", "state_code": "16",
                "state_name": "MAHARASHTRA", "year": 2025, "month": 1,
                "indicators": {"Total_Households_Worked": "10"}}
        cache.set(keys.district_data("1601", Period(2025, 1)), {"stale": True})

        result = await worker.manual_upsert([good, dict(good, district_code="1602", indicators=["oops"])])

        assert result["results"]["success"] == 1
        assert result["results"]["failed"] == 1
        assert result["results"]["errors"] == [{"record": "1602", "error": "indicators must be an object"}]
        assert cache.list_keys() == []
        items, _ = store.list_audits()
        assert items[0]["success"] is False

    @pytest.mark.asyncio
    async def test_unexpected_error_still_finalizes_audit_and_cache(self, worker, cache, store, mocker):
        calls = []

        async def upsert_upload(record):
            calls.append(record)
            if len(calls) == 2:
                raise RuntimeError("disk on fire")
            return record["district_code"]

        mocker.patch.object(worker, "_upsert_upload", side_effect=upsert_upload)
        cache.set(keys.district_data("1601", Period(2025, 1)), {"stale": True})

        with pytest.raises(RuntimeError):
            await worker.manual_upsert([{"district_code": "1601"}, {"district_code": "1602"}])

        assert cache.list_keys() == []
        items, total = store.list_audits()
        assert total == 1
        assert items[0]["success"] is False
        assert items[0]["processing_time_ms"] is not None

    @pytest.mark.asyncio
    async def test_write_drops_sibling_comparisons(self, worker, orchestrator, put):
        put(district_code="1602", district_name="AKOLA", households="100")
        cached = await orchestrator.get_comparison("1602")
        assert cached.data["stateAverage"]["avgHouseholds"] == 100.0

        await worker.manual_upsert([
            {"district_code": "1601", "district_name": "AHMEDNAGAR", "state_code": "16",
             "state_name": "MAHARASHTRA", "year": 2025, "month": 1,
             "indicators": {"Total_Households_Worked": "900"}},
        ])
        result = await orchestrator.get_comparison("1602")

        assert result.source == "database"
        assert result.data["stateAverage"]["avgHouseholds"] == 500.0

    @pytest.mark.asyncio
    async def test_new_district_appears_in_cached_listings(self, worker, orchestrator, cache, put):
        put()
        before = await orchestrator.list_children("16")
        assert [d["district_code"] for d in before.data] == ["1601"]
        await orchestrator.list_parents()

        await worker.manual_upsert([
            {"district_code": "1699", "district_name": "NEW DISTRICT", "state_code": "16",
             "state_name": "MAHARASHTRA", "year": 2025, "month": 1},
        ])
        after = await orchestrator.list_children("16")

        assert after.source == "database"
        assert sorted(d["district_code"] for d in after.data) == ["1601", "1699"]
        assert keys.states_list() not in cache.list_keys()

    @pytest.mark.asyncio
    async def test_known_district_keeps_cached_listings(self, worker, orchestrator, cache, put):
        put()
        await orchestrator.list_children("16")

        await worker.manual_upsert([{"district_code": "1601", "year": 2025, "month": 2}])

        assert keys.state_districts("16") in cache.list_keys()


class TestScheduledSync:

    @pytest.mark.asyncio
    async def test_skips_while_running(self, worker, gateway):
        worker.is_running = True

        result = await worker.trigger_sync()

        assert result["skipped"] is True
        gateway.fetch_by_entity_and_period.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refreshes_current_period_for_active_districts(self, worker, gateway, store, clock, sleep,
                                                                 put, raw_record):
        put()
        put(district_code="1602", district_name="AKOLA")
        current = Period.current(clock())
        fin_year, month = current.to_fiscal()

        async def fetch(code, period, state_name):
            if code == "1602":
                return UpstreamResult(False, error=UpstreamFailureError("down"))
            return UpstreamResult(True, data=normalize_record(raw_record(fin_year=fin_year, month=month)))

        gateway.fetch_by_entity_and_period.side_effect = fetch

        result = await worker.trigger_sync()

        assert result["success"] is True
        assert result["results"]["success"] == 1
        assert result["results"]["failed"] == 1
        assert store.find_one("1601", current)["fetched_from"] == "etl"
        assert len(sleep.waits) == 1
        status = worker.sync_status()
        assert status["isRunning"] is False
        assert status["lastRun"] == clock().isoformat()
        assert status["lastResult"] is result

    @pytest.mark.asyncio
    async def test_record_for_another_period_is_not_stored(self, worker, gateway, store, put, raw_record):
        put()
        gateway.fetch_by_entity_and_period.return_value = UpstreamResult(
            True, data=normalize_record(raw_record(fin_year="2023-2024", month="Jan")))

        result = await worker.trigger_sync()

        assert result["results"]["failed"] == 1
        assert "different period" in result["results"]["errors"][0]["error"]
        assert store.find_one("1601", Period(2024, 1)) is None


class TestSyncParent:

    @pytest.mark.asyncio
    async def test_stores_every_record_of_the_year(self, worker, gateway, store, cache, put, raw_record):
        put()
        cache.set(keys.states_list(), [{"state_code": "16", "state_name": "MAHARASHTRA"}])
        gateway.fetch_by_parent_and_year.return_value = UpstreamResult(True, data=[
            raw_record(month="Jan", households="5"),
            raw_record(district_code="1602", district_name="AKOLA", month="Feb"),
            raw_record(district_name=""),
        ])

        result = await worker.sync_parent("16", "2024-2025")

        assert result == {
            "state": "MAHARASHTRA",
            "finYear": "2024-2025",
            "total": 3,
            "inserted": 1,
            "updated": 1,
            "failed": 1,
        }
        gateway.fetch_by_parent_and_year.assert_awaited_once_with("MAHARASHTRA", "2024-2025")
        assert store.find_one("1601", Period(2025, 1))["fetched_from"] == "etl"
        assert store.get_entity("1602")["district_name"] == "AKOLA"
        assert keys.states_list() not in cache.list_keys()

    @pytest.mark.asyncio
    async def test_unknown_state(self, worker, put):
        put()
        with pytest.raises(NotFoundError):
            await worker.sync_parent("99", "2024-2025")

    @pytest.mark.asyncio
    async def test_upstream_failure(self, worker, gateway, put):
        put()
        gateway.fetch_by_parent_and_year.return_value = UpstreamResult(False, error=UpstreamFailureError("down"))

        with pytest.raises(ServiceUnavailableError):
            await worker.sync_parent("16", "2024-2025")

    @pytest.mark.asyncio
    async def test_rejects_bad_financial_year(self, worker):
        with pytest.raises(ValidationError):
            await worker.sync_parent("16", "2024-2026")


@pytest.mark.asyncio
async def test_cleanup_deletes_old_records_and_flushes_cache(worker, store, cache, clock, put):
    put(month="Jan")
    clock.advance(days=400)
    put(month="Feb")
    cache.set("anything", 1)

    result = await worker.cleanup(days=365)

    assert result == {"deleted": 1, "days": 365}
    assert store.counts()["records"] == 1
    assert cache.list_keys() == []
