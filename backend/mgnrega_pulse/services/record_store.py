"""
Durable storage for districts, period records and the ingestion audit.

Plain passthroughs to the database; caching and freshness decisions live in
the orchestrator. Methods are synchronous and open one session per call.
"""

import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from mgnrega_pulse.core.errors import ConflictError, StorageError, ValidationError
from mgnrega_pulse.models.dataset import District, IngestionAudit, PeriodRecord
from mgnrega_pulse.services.normalizer import EXPENDITURE_FIELD, HOUSEHOLDS_FIELD
from mgnrega_pulse.services.staleness import Period, utcnow
from mgnrega_pulse.utils import to_number

logger = logging.getLogger(__name__)


def record_to_dict(row: PeriodRecord) -> Dict[str, Any]:
    return {
        "district_code": row.district_code,
        "district_name": row.district_name,
        "state_code": row.state_code,
        "state_name": row.state_name,
        "period": Period(row.period_year, row.period_month),
        "fin_year": row.fin_year,
        "month": row.month,
        "indicators": dict(row.indicators or {}),
        "total_households_worked": row.total_households_worked,
        "total_expenditure": row.total_expenditure,
        "fetched_from": row.fetched_from,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


def district_to_dict(row: District) -> Dict[str, Any]:
    return {
        "district_code": row.district_code,
        "district_name": row.district_name,
        "state_code": row.state_code,
        "state_name": row.state_name,
    }


class RecordStore:
    def __init__(self, session_factory, clock: Optional[Callable] = None):
        self.session_factory = session_factory
        self.clock = clock or utcnow

    @contextmanager
    def _session(self, action: str):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            raise ConflictError(f"Duplicate entry during {action}", {"action": action}) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.exception("DB error during %s", action)
            raise StorageError(f"Storage unavailable during {action}", {"action": action}) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ---------- PERIOD RECORDS ----------

    def upsert(self, district_code: str, period: Period, record: Mapping[str, Any],
               source: Optional[str] = None) -> Dict[str, Any]:
        """Replace the full record for ``(district_code, period)``."""
        for field in ("district_name", "state_code", "state_name"):
            if not record.get(field):
                raise ValidationError(f"Missing required field: {field}")

        indicators = dict(record.get("indicators") or {})
        values = {
            "district_name": record["district_name"],
            "state_code": str(record["state_code"]),
            "state_name": record["state_name"],
            "period_year": period.year,
            "period_month": period.month,
            "fin_year": period.fin_year,
            "month": period.month_label,
            "indicators": indicators,
            "total_households_worked": to_number(indicators.get(HOUSEHOLDS_FIELD)),
            "total_expenditure": to_number(indicators.get(EXPENDITURE_FIELD)),
            "fetched_from": source or record.get("fetched_from") or "api",
        }

        try:
            return self._write_record(district_code, period, values)
        except ConflictError:
            # lost an insert race; the row exists now so this becomes an update
            return self._write_record(district_code, period, values)

    def _write_record(self, district_code, period, values) -> Dict[str, Any]:
        now = self.clock()
        with self._session("upsert") as session:
            row = session.execute(
                select(PeriodRecord).filter_by(district_code=district_code, period_key=period.key)
            ).scalar_one_or_none()
            if row is None:
                row = PeriodRecord(district_code=district_code, period_key=period.key, created_at=now)
                session.add(row)
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = now
            session.flush()
            return record_to_dict(row)

    def find_one(self, district_code: str, period: Period) -> Optional[Dict[str, Any]]:
        with self._session("find_one") as session:
            row = session.execute(
                select(PeriodRecord).filter_by(district_code=district_code, period_key=period.key)
            ).scalar_one_or_none()
            return record_to_dict(row) if row else None

    def find_range(self, district_code: str, start: Period, end: Period) -> List[Dict[str, Any]]:
        with self._session("find_range") as session:
            rows = session.execute(
                select(PeriodRecord)
                .where(PeriodRecord.district_code == district_code)
                .where(PeriodRecord.period_key.between(start.key, end.key))
                .order_by(PeriodRecord.period_key.asc())
            ).scalars().all()
            return [record_to_dict(r) for r in rows]

    def find_latest(self, district_code: str) -> Optional[Dict[str, Any]]:
        with self._session("find_latest") as session:
            row = session.execute(
                select(PeriodRecord)
                .where(PeriodRecord.district_code == district_code)
                .order_by(PeriodRecord.period_key.desc())
                .limit(1)
            ).scalar_one_or_none()
            return record_to_dict(row) if row else None

    def find_latest_global(self) -> Optional[Dict[str, Any]]:
        with self._session("find_latest_global") as session:
            row = session.execute(
                select(PeriodRecord)
                .order_by(PeriodRecord.period_key.desc(), PeriodRecord.updated_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return record_to_dict(row) if row else None

    def find_recent(self, district_code: str, limit: int = 6) -> List[Dict[str, Any]]:
        """Most recently updated records first."""
        with self._session("find_recent") as session:
            rows = session.execute(
                select(PeriodRecord)
                .where(PeriodRecord.district_code == district_code)
                .order_by(PeriodRecord.updated_at.desc(), PeriodRecord.period_key.desc())
                .limit(limit)
            ).scalars().all()
            return [record_to_dict(r) for r in rows]

    def parent_average(self, state_code: str, limit: int = 100) -> Optional[Dict[str, Any]]:
        """Average households/expenditure over the state's most recently updated records."""
        with self._session("parent_average") as session:
            recent = (
                select(
                    PeriodRecord.total_households_worked.label("households"),
                    PeriodRecord.total_expenditure.label("expenditure"),
                )
                .where(PeriodRecord.state_code == state_code)
                .order_by(PeriodRecord.updated_at.desc())
                .limit(limit)
                .subquery()
            )
            households, expenditure, count = session.execute(
                select(func.avg(recent.c.households), func.avg(recent.c.expenditure), func.count())
                .select_from(recent)
            ).one()
            if not count:
                return None
            return {
                "avgHouseholds": float(households or 0),
                "avgExpenditure": float(expenditure or 0),
                "sampleSize": count,
            }

    def most_recently_active(self, limit: int = 20, since_days: Optional[float] = None) -> List[str]:
        """District codes ranked by their latest update, newest first."""
        last_update = func.max(PeriodRecord.updated_at).label("last_update")
        query = select(PeriodRecord.district_code, last_update).group_by(PeriodRecord.district_code)
        if since_days is not None:
            query = query.where(PeriodRecord.updated_at >= self.clock() - timedelta(days=since_days))
        query = query.order_by(last_update.desc()).limit(limit)
        with self._session("most_recently_active") as session:
            return [code for code, _ in session.execute(query).all()]

    def delete_older_than(self, days: float) -> int:
        cutoff = self.clock() - timedelta(days=days)
        with self._session("delete_older_than") as session:
            result = session.execute(delete(PeriodRecord).where(PeriodRecord.created_at < cutoff))
            deleted = result.rowcount or 0
        logger.info("Deleted %d period records created before %s", deleted, cutoff.isoformat())
        return deleted

    # ---------- DISTRICTS ----------

    def get_entity(self, district_code: str) -> Optional[Dict[str, Any]]:
        with self._session("get_entity") as session:
            row = session.execute(
                select(District).filter_by(district_code=district_code)
            ).scalar_one_or_none()
            return district_to_dict(row) if row else None

    def upsert_entity(self, district_code: str, district_name: str, state_code: str,
                      state_name: str) -> Dict[str, Any]:
        """Create on first sight, otherwise refresh the display names."""
        now = self.clock()
        with self._session("upsert_entity") as session:
            row = session.execute(
                select(District).filter_by(district_code=district_code)
            ).scalar_one_or_none()
            if row is None:
                row = District(district_code=district_code, created_at=now)
                session.add(row)
            row.district_name = district_name
            row.state_code = str(state_code)
            row.state_name = state_name
            row.updated_at = now
            session.flush()
            return district_to_dict(row)

    def register_entity(self, district_code: str, district_name: str, state_code: str,
                        state_name: str) -> Dict[str, Any]:
        """Strict insert. Raises ConflictError if the district already exists."""
        now = self.clock()
        with self._session("register_entity") as session:
            row = District(district_code=district_code, district_name=district_name,
                           state_code=str(state_code), state_name=state_name,
                           created_at=now, updated_at=now)
            session.add(row)
            session.flush()
            return district_to_dict(row)

    def list_entities(self, state_code: str) -> List[Dict[str, Any]]:
        with self._session("list_entities") as session:
            rows = session.execute(
                select(District).filter_by(state_code=state_code).order_by(District.district_name)
            ).scalars().all()
            return [district_to_dict(r) for r in rows]

    def list_parents(self) -> List[Dict[str, Any]]:
        with self._session("list_parents") as session:
            rows = session.execute(
                select(District.state_code, District.state_name)
                .distinct()
                .order_by(District.state_name)
            ).all()
            return [{"state_code": code, "state_name": name} for code, name in rows]

    # ---------- INGESTION AUDIT ----------

    def start_audit(self, source: str, payload: Any, record_count: int = 0) -> int:
        with self._session("start_audit") as session:
            row = IngestionAudit(source=source, payload=payload, record_count=record_count,
                                 fetched_at=self.clock())
            session.add(row)
            session.flush()
            return row.id

    def finish_audit(self, audit_id: int, success: bool, error_message: Optional[str] = None,
                     processing_time_ms: int = 0) -> None:
        with self._session("finish_audit") as session:
            row = session.get(IngestionAudit, audit_id)
            if row is None:
                logger.warning("Audit row %s vanished before it was finalized", audit_id)
                return
            row.success = success
            row.error_message = error_message
            row.processing_time_ms = processing_time_ms

    def list_audits(self, page: int = 1, limit: int = 20) -> Tuple[List[Dict[str, Any]], int]:
        with self._session("list_audits") as session:
            total = session.execute(select(func.count()).select_from(IngestionAudit)).scalar_one()
            rows = session.execute(
                select(IngestionAudit)
                .order_by(IngestionAudit.fetched_at.desc(), IngestionAudit.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()
            items = [
                {
                    "id": r.id,
                    "source": r.source,
                    "fetched_at": r.fetched_at.isoformat() if r.fetched_at else None,
                    "record_count": r.record_count,
                    "success": r.success,
                    "error_message": r.error_message,
                    "processing_time_ms": r.processing_time_ms,
                }
                for r in rows
            ]
            return items, total

    def counts(self) -> Dict[str, Any]:
        with self._session("counts") as session:
            by_source = session.execute(
                select(PeriodRecord.fetched_from, func.count()).group_by(PeriodRecord.fetched_from)
            ).all()
            return {
                "districts": session.execute(select(func.count()).select_from(District)).scalar_one(),
                "records": session.execute(select(func.count()).select_from(PeriodRecord)).scalar_one(),
                "snapshots": session.execute(select(func.count()).select_from(IngestionAudit)).scalar_one(),
                "recordsBySource": {source: count for source, count in by_source},
            }

    def ping(self) -> bool:
        with self._session("ping") as session:
            session.execute(select(1))
        return True
