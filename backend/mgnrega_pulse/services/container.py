from dataclasses import dataclass

from mgnrega_pulse.db.database import get_engine, init_db, make_session_factory
from mgnrega_pulse.services.cache import CacheTTL, TierCache
from mgnrega_pulse.services.data_fetcher import DataGovGateway
from mgnrega_pulse.services.etl_worker import EtlWorker
from mgnrega_pulse.services.orchestrator import FetchOrchestrator
from mgnrega_pulse.services.record_store import RecordStore
from mgnrega_pulse.services.retry import RetryExecutor


@dataclass
class Services:
    settings: object
    cache: TierCache
    store: RecordStore
    gateway: DataGovGateway
    orchestrator: FetchOrchestrator
    etl: EtlWorker


def build_services(settings, session_factory=None, http_session=None, create_tables=True):
    """Wire one isolated set of collaborators around a single TierCache."""
    if session_factory is None:
        engine = get_engine()
        if create_tables:
            init_db(engine)
        session_factory = make_session_factory(engine)

    cache = TierCache(default_ttl=settings.CACHE_TTL)
    store = RecordStore(session_factory)

    def state_name_lookup(district_code):
        entity = store.get_entity(district_code)
        return entity["state_name"] if entity else None

    gateway = DataGovGateway(settings, cache, retry=RetryExecutor(), session=http_session,
                             state_name_lookup=state_name_lookup)
    orchestrator = FetchOrchestrator(cache, store, gateway, settings, ttl=CacheTTL.from_settings(settings))
    return Services(settings, cache, store, gateway, orchestrator, EtlWorker(orchestrator))
