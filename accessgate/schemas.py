"""Pydantic schemas for API request validation and response serialization."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from accessgate.services.runtime import AccessSession


class StartSessionRequest(BaseModel):
    """Start a paid session for a device."""

    mac_address: str = Field(..., description="Device MAC address (':' or '-' separated)")
    pesos: int = Field(..., gt=0, description="Amount paid; converted to minutes via the rate table")
    ip_address: Optional[str] = Field(None, description="Current IPv4/IPv6 address of the device")


class TimedSessionRequest(BaseModel):
    """Start a session for a fixed duration, e.g. a voucher."""

    mac_address: str = Field(..., description="Device MAC address")
    minutes: int = Field(..., gt=0, description="Session length in minutes")
    ip_address: Optional[str] = Field(None, description="Current IP address of the device")


class CreditRequest(BaseModel):
    """A coin insertion: extends an active session or starts a new one."""

    mac_address: str = Field(..., description="Device MAC address")
    pesos: int = Field(..., gt=0, description="Amount inserted")
    ip_address: Optional[str] = Field(None, description="Current IP address of the device")


class ExtendRequest(BaseModel):
    """Add time to an active session."""

    minutes: int = Field(..., gt=0, description="Minutes to add")
    pesos: int = Field(0, ge=0, description="Amount paid for the extension")


class IpMappingRequest(BaseModel):
    """Record a device's new IP address."""

    ip_address: str = Field(..., description="Current IP address of the device")


class SessionResponse(BaseModel):
    """Current state of one device session."""

    mac_address: str = Field(..., description="Normalized MAC address")
    ip_address: Optional[str] = Field(None, description="Last known IP address")
    start_time: datetime = Field(..., description="Session start (UTC)")
    end_time: datetime = Field(..., description="Scheduled session end (UTC)")
    pesos: int = Field(..., description="Total amount paid")
    minutes: int = Field(..., description="Total minutes purchased")
    active: bool = Field(..., description="Whether the session is active")
    paused: bool = Field(..., description="Whether the countdown is paused")
    paused_at: Optional[datetime] = Field(None, description="When the current pause began (UTC)")
    paused_duration: float = Field(..., description="Accumulated paused seconds")
    time_remaining: int = Field(..., description="Seconds of access left")

    @classmethod
    def from_session(cls, session: AccessSession, now: datetime) -> "SessionResponse":
        return cls(
            mac_address=session.mac_address,
            ip_address=session.ip_address,
            start_time=session.start_time,
            end_time=session.end_time,
            pesos=session.pesos,
            minutes=session.minutes,
            active=session.active,
            paused=session.paused,
            paused_at=session.paused_at,
            paused_duration=session.paused_duration,
            time_remaining=session.time_remaining(now),
        )


class CreditResponse(BaseModel):
    """Outcome of a credit event."""

    action: str = Field(..., description="'started' or 'extended'")
    session: SessionResponse = Field(..., description="Resulting session")


class SessionListResponse(BaseModel):
    """All sessions currently held in memory."""

    count: int = Field(..., description="Number of active sessions")
    data: List[SessionResponse] = Field(..., description="Active sessions ordered by MAC")


class SessionStatusResponse(BaseModel):
    """Remaining time for a device, zero when it has no session."""

    mac_address: str = Field(..., description="Normalized MAC address")
    active: bool = Field(..., description="Whether the device has an active session")
    paused: bool = Field(..., description="Whether the session is paused")
    time_remaining: int = Field(..., description="Seconds of access left")


class FirewallStatusResponse(BaseModel):
    """Live packet-filter state for one device."""

    mac_address: str = Field(..., description="Normalized MAC address")
    is_allowed: bool = Field(..., description="Allow rules present and no deny rules")
    allow_rule_count: int = Field(..., description="Allow rules tagged for this device")
    block_rule_count: int = Field(..., description="Deny rules tagged for this device")


class StatsResponse(BaseModel):
    """Aggregate session figures."""

    total_sessions: int = Field(..., description="Sessions ever recorded")
    active_sessions: int = Field(..., description="Sessions currently in memory")
    paused_sessions: int = Field(..., description="Active sessions that are paused")
    total_revenue: int = Field(..., description="Sum of all payments")
    average_session_minutes: float = Field(..., description="Mean length of ended sessions")
    today_revenue: int = Field(..., description="Payments for sessions started today (UTC)")


class ReconcileResponse(BaseModel):
    """Changes made by one reconciliation pass."""

    expired: List[str] = Field(..., description="Sessions ended by the expiry sweep")
    restored: List[str] = Field(..., description="Sessions restored from storage")
    ghosts_ended: List[str] = Field(..., description="Memory sessions without a stored record")
    firewall_corrections: List[str] = Field(..., description="Devices whose rules were re-applied")
    orphans_blocked: List[str] = Field(..., description="Allowed devices without a session")
    errors: List[str] = Field(..., description="Per-device failures")


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(..., description="Error message")
