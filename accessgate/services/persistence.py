"""SQLAlchemy-backed persistence for sessions and the rate table.

Every method opens its own database session, commits or rolls back, and
converts SQLAlchemy failures into ``PersistenceError`` so the session
manager can refuse to touch memory when storage did not accept a write.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from accessgate.errors import PersistenceError
from accessgate.models import Rate, SessionRecord
from accessgate.services.runtime import AccessSession

logger = logging.getLogger(__name__)

SESSION_FIELDS = (
    "mac_address",
    "ip_address",
    "start_time",
    "end_time",
    "pesos",
    "minutes",
    "active",
    "paused",
    "paused_at",
    "paused_duration",
)


@dataclass
class RateCard:
    """Peso-to-minutes pricing: exact matches first, then a flat rate."""

    time_per_peso: int
    rates: List[Tuple[int, int]] = field(default_factory=list)

    def minutes_for(self, pesos: int) -> int:
        for rate_pesos, minutes in self.rates:
            if rate_pesos == pesos:
                return minutes
        return pesos * self.time_per_peso


@dataclass
class SessionTotals:
    total_sessions: int
    total_revenue: int
    average_session_minutes: float


def _to_session(record: SessionRecord) -> AccessSession:
    return AccessSession(**{name: getattr(record, name) for name in SESSION_FIELDS})


class SessionStore:
    """Durable session records, queryable by MAC address."""

    def __init__(self, session_factory, time_per_peso: int = 30):
        self._session_factory = session_factory
        self.time_per_peso = time_per_peso

    def _latest_active(self, db, mac_address: str) -> Optional[SessionRecord]:
        return db.execute(
            select(SessionRecord)
            .where(SessionRecord.mac_address == mac_address, SessionRecord.active.is_(True))
            .order_by(SessionRecord.start_time.desc(), SessionRecord.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def add_session(self, session: AccessSession) -> None:
        with self._session_factory() as db:
            try:
                db.add(SessionRecord(**{name: getattr(session, name) for name in SESSION_FIELDS}))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"Cannot store session for {session.mac_address}: {e}")

    def update_session(self, mac_address: str, **fields) -> bool:
        """Apply ``fields`` to the latest active record of a MAC.

        Returns False when there is no active record; inactive records are
        never modified.
        """
        unknown = set(fields) - set(SESSION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        with self._session_factory() as db:
            try:
                record = self._latest_active(db, mac_address)
                if record is None:
                    return False
                for name, value in fields.items():
                    setattr(record, name, value)
                db.commit()
                return True
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"Cannot update session for {mac_address}: {e}")

    def get_active_session(self, mac_address: str) -> Optional[AccessSession]:
        with self._session_factory() as db:
            try:
                record = self._latest_active(db, mac_address)
                return _to_session(record) if record else None
            except SQLAlchemyError as e:
                raise PersistenceError(f"Cannot read session for {mac_address}: {e}")

    def get_active_sessions(self) -> List[AccessSession]:
        """All active records, one per MAC (the most recent wins)."""
        with self._session_factory() as db:
            try:
                records = db.execute(
                    select(SessionRecord)
                    .where(SessionRecord.active.is_(True))
                    .order_by(SessionRecord.start_time, SessionRecord.id)
                ).scalars().all()
            except SQLAlchemyError as e:
                raise PersistenceError(f"Cannot read active sessions: {e}")
            latest = {}
            for record in records:
                latest[record.mac_address] = _to_session(record)
            return list(latest.values())

    def _expired_records(self, db, now: datetime, macs: Optional[Iterable[str]] = None):
        query = select(SessionRecord).where(
            SessionRecord.active.is_(True),
            SessionRecord.paused.is_(False),
            SessionRecord.end_time <= now,
        )
        if macs is not None:
            query = query.where(SessionRecord.mac_address.in_(list(macs)))
        return db.execute(query).scalars().all()

    def expired_session_macs(self, now: datetime, exclude: Iterable[str] = ()) -> List[str]:
        """MACs holding un-paused active records past their end time."""
        skip = set(exclude)
        with self._session_factory() as db:
            try:
                records = self._expired_records(db, now)
            except SQLAlchemyError as e:
                raise PersistenceError(f"Cannot read expired sessions: {e}")
            return sorted({r.mac_address for r in records} - skip)

    def cleanup_expired_sessions(
        self,
        now: datetime,
        exclude: Iterable[str] = (),
        macs: Optional[Iterable[str]] = None,
    ) -> List[str]:
        """Mark un-paused active records past their end time as ended.

        Devices in ``exclude`` are left alone; their expiry is driven by the
        runtime table. ``macs`` restricts the cleanup to those devices.
        """
        skip = set(exclude)
        with self._session_factory() as db:
            try:
                records = self._expired_records(db, now, macs)
                records = [r for r in records if r.mac_address not in skip]
                for record in records:
                    record.active = False
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise PersistenceError(f"Cannot clean up expired sessions: {e}")
            ended = sorted({r.mac_address for r in records})
            if ended:
                logger.info("Marked %d expired session records inactive", len(records))
            return ended

    def get_rates(self) -> RateCard:
        with self._session_factory() as db:
            try:
                rows = db.execute(select(Rate.pesos, Rate.minutes).order_by(Rate.pesos)).all()
            except SQLAlchemyError as e:
                raise PersistenceError(f"Cannot read rate table: {e}")
        return RateCard(self.time_per_peso, [(r.pesos, r.minutes) for r in rows])

    def get_totals(self) -> SessionTotals:
        """Session count, revenue and the average length of ended sessions."""
        with self._session_factory() as db:
            try:
                count, revenue = db.execute(
                    select(func.count(SessionRecord.id), func.coalesce(func.sum(SessionRecord.pesos), 0))
                ).one()
                ended = db.execute(
                    select(SessionRecord.start_time, SessionRecord.end_time).where(
                        SessionRecord.active.is_(False)
                    )
                ).all()
            except SQLAlchemyError as e:
                raise PersistenceError(f"Cannot read session totals: {e}")
        average = 0.0
        if ended:
            total = sum((row.end_time - row.start_time).total_seconds() for row in ended)
            average = round(total / len(ended) / 60, 1)
        return SessionTotals(int(count), int(revenue), average)

    def revenue_for_date(self, day: date) -> int:
        start = datetime(day.year, day.month, day.day)
        with self._session_factory() as db:
            try:
                value = db.execute(
                    select(func.coalesce(func.sum(SessionRecord.pesos), 0)).where(
                        SessionRecord.start_time >= start,
                        SessionRecord.start_time < start + timedelta(days=1),
                    )
                ).scalar()
            except SQLAlchemyError as e:
                raise PersistenceError(f"Cannot read revenue for {day}: {e}")
        return int(value or 0)
