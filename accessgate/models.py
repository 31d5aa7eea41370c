"""SQLAlchemy ORM models for the access control engine."""

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String

from accessgate.database import Base


class SessionRecord(Base):
    """Persisted access session for one device.

    Attributes:
        id: Auto-incremented primary key.
        mac_address: Canonical lower-case colon-separated MAC address.
        ip_address: Last IP address seen for the device, if any.
        start_time: When the session was started (naive UTC).
        end_time: When the purchased allowance runs out (naive UTC).
        pesos: Value spent on the session.
        minutes: Minutes granted in total, including extensions.
        active: False once the session has ended; inactive rows are
                historical records and never modified again.
        paused: Whether the countdown is currently frozen.
        paused_at: When the current pause began.
        paused_duration: Seconds spent paused over the session's life.
    """

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    mac_address = Column(String(17), nullable=False)
    ip_address = Column(String(45), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    pesos = Column(Integer, nullable=False, default=0)
    minutes = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    paused = Column(Boolean, nullable=False, default=False)
    paused_at = Column(DateTime, nullable=True)
    paused_duration = Column(Float, nullable=False, default=0.0)

    __table_args__ = (
        Index("idx_sessions_mac", "mac_address"),
        Index("idx_sessions_active", "active"),
        Index("idx_sessions_mac_start", "mac_address", "start_time"),
    )

    def __repr__(self):
        return (
            f"<SessionRecord(mac_address={self.mac_address!r}, "
            f"end_time={self.end_time}, active={self.active}, paused={self.paused})>"
        )


class Rate(Base):
    """A rate-table entry mapping an exact peso amount to minutes."""

    __tablename__ = "rates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pesos = Column(Integer, nullable=False, unique=True)
    minutes = Column(Integer, nullable=False)

    def __repr__(self):
        return f"<Rate(pesos={self.pesos}, minutes={self.minutes})>"
