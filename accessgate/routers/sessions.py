"""Session API endpoints.

Exposes the session operations to the portal front end and to the coin
acceptor bridge:
- Starting sessions from payments, vouchers or credit events
- Extending, pausing, resuming and ending sessions
- Session, remaining-time and live firewall queries
- Aggregate statistics and an on-demand reconciliation pass
"""

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from accessgate.engine import AccessEngine
from accessgate.errors import (
    DriverError,
    DriverTimeout,
    DriverUnavailable,
    DuplicateSession,
    EnforcementFailed,
    InvalidSessionState,
    PersistenceError,
    SessionNotFound,
)
from accessgate.schemas import (
    CreditRequest,
    CreditResponse,
    ErrorResponse,
    ExtendRequest,
    FirewallStatusResponse,
    IpMappingRequest,
    ReconcileResponse,
    SessionListResponse,
    SessionResponse,
    SessionStatusResponse,
    StartSessionRequest,
    StatsResponse,
    TimedSessionRequest,
)
from accessgate.services.addressing import normalize_mac

router = APIRouter(prefix="/api/v1/sessions", tags=["Sessions"])

_ERRORS = {
    400: {"model": ErrorResponse, "description": "Malformed address or amount"},
    404: {"model": ErrorResponse, "description": "No active session for the device"},
    409: {"model": ErrorResponse, "description": "Transition not valid in the current state"},
    502: {"model": ErrorResponse, "description": "Firewall effect could not be confirmed"},
}


def get_engine(request: Request) -> AccessEngine:
    """Dependency that provides the engine built at startup."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Access control engine is not running")
    return engine


def _http_error(error: Exception) -> HTTPException:
    if isinstance(error, SessionNotFound):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (DuplicateSession, InvalidSessionState)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, DriverTimeout):
        return HTTPException(status_code=504, detail=str(error))
    if isinstance(error, DriverUnavailable):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, (EnforcementFailed, DriverError)):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, PersistenceError):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _call(operation, *args, **kwargs):
    try:
        return operation(*args, **kwargs)
    except (ValueError, SessionNotFound, DuplicateSession, InvalidSessionState,
            EnforcementFailed, DriverError, PersistenceError) as e:
        raise _http_error(e)


def _respond(engine: AccessEngine, session) -> SessionResponse:
    return SessionResponse.from_session(session, engine.manager.clock())


@router.post(
    "",
    response_model=SessionResponse,
    status_code=201,
    summary="Start a paid session",
    responses=_ERRORS,
)
def start_session(body: StartSessionRequest, engine: AccessEngine = Depends(get_engine)):
    """Create a session, persist it, schedule its expiry and allow the device."""
    session = _call(engine.manager.start, body.mac_address, body.pesos, body.ip_address)
    return _respond(engine, session)


@router.post(
    "/timed",
    response_model=SessionResponse,
    status_code=201,
    summary="Start a session for a fixed duration",
    responses=_ERRORS,
)
def start_timed_session(body: TimedSessionRequest, engine: AccessEngine = Depends(get_engine)):
    session = _call(engine.manager.start_timed, body.mac_address, body.minutes, body.ip_address)
    return _respond(engine, session)


@router.post(
    "/credit",
    response_model=CreditResponse,
    summary="Apply a coin credit",
    description="Extends the device's active session, or starts one if it has none.",
    responses=_ERRORS,
)
def apply_credit(body: CreditRequest, engine: AccessEngine = Depends(get_engine)):
    session, action = _call(engine.manager.apply_credit, body.mac_address, body.pesos, body.ip_address)
    return CreditResponse(action=action, session=_respond(engine, session))


@router.get("", response_model=SessionListResponse, summary="List active sessions")
def list_sessions(engine: AccessEngine = Depends(get_engine)):
    sessions = engine.manager.list_active()
    return SessionListResponse(
        count=len(sessions), data=[_respond(engine, s) for s in sessions]
    )


@router.get("/stats", response_model=StatsResponse, summary="Session statistics")
def session_stats(engine: AccessEngine = Depends(get_engine)):
    """Aggregate counts and revenue, including payments started today."""
    stats = _call(engine.manager.get_stats)
    today = _call(engine.manager.store.revenue_for_date, engine.manager.clock().date())
    return StatsResponse(
        total_sessions=stats.total_sessions,
        active_sessions=stats.active_sessions,
        paused_sessions=stats.paused_sessions,
        total_revenue=stats.total_revenue,
        average_session_minutes=stats.average_session_minutes,
        today_revenue=today,
    )


@router.get(
    "/revenue/{day}",
    summary="Revenue for one day",
    responses={400: {"model": ErrorResponse, "description": "Invalid date"}},
)
def revenue_for_day(day: date, engine: AccessEngine = Depends(get_engine)):
    return {"date": day.isoformat(), "revenue": _call(engine.manager.store.revenue_for_date, day)}


@router.post("/reconcile", response_model=ReconcileResponse, summary="Run a reconciliation pass")
def reconcile(engine: AccessEngine = Depends(get_engine)):
    """Sweep expired sessions, then repair storage/memory/firewall drift."""
    expired = _call(engine.manager.sweep_expired)
    report = engine.reconciler.run_once()
    return ReconcileResponse(
        expired=expired,
        restored=report.restored,
        ghosts_ended=report.ghosts_ended,
        firewall_corrections=report.firewall_corrections,
        orphans_blocked=report.orphans_blocked,
        errors=report.errors,
    )


@router.get(
    "/by-ip/{ip_address}",
    response_model=SessionResponse,
    summary="Find the session holding an IP address",
    responses=_ERRORS,
)
def session_by_ip(ip_address: str, engine: AccessEngine = Depends(get_engine)):
    session = _call(engine.manager.get_session_by_ip, ip_address)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No session for IP {ip_address}")
    return _respond(engine, session)


@router.get(
    "/{mac_address}",
    response_model=SessionResponse,
    summary="Get a device's session",
    responses=_ERRORS,
)
def get_session(mac_address: str, engine: AccessEngine = Depends(get_engine)):
    session = _call(engine.manager.get_session, mac_address)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session not found for {mac_address}")
    return _respond(engine, session)


@router.get(
    "/{mac_address}/remaining",
    response_model=SessionStatusResponse,
    summary="Remaining time for a device",
    description="Returns zero seconds for devices without a session.",
    responses={400: _ERRORS[400]},
)
def time_remaining(mac_address: str, engine: AccessEngine = Depends(get_engine)):
    mac = _call(normalize_mac, mac_address)
    session = engine.manager.get_session(mac)
    return SessionStatusResponse(
        mac_address=mac,
        active=bool(session and session.active),
        paused=bool(session and session.paused),
        time_remaining=engine.manager.get_time_remaining(mac),
    )


@router.post(
    "/{mac_address}/extend",
    response_model=SessionResponse,
    summary="Add time to a session",
    responses=_ERRORS,
)
def extend_session(mac_address: str, body: ExtendRequest, engine: AccessEngine = Depends(get_engine)):
    session = _call(engine.manager.extend, mac_address, body.minutes, pesos=body.pesos)
    return _respond(engine, session)


@router.post(
    "/{mac_address}/pause",
    response_model=SessionResponse,
    summary="Pause a session",
    description="Freezes the countdown and blocks the device until resumed.",
    responses=_ERRORS,
)
def pause_session(mac_address: str, engine: AccessEngine = Depends(get_engine)):
    return _respond(engine, _call(engine.manager.pause, mac_address))


@router.post(
    "/{mac_address}/resume",
    response_model=SessionResponse,
    summary="Resume a paused session",
    description="Credits the paused time back and allows the device again.",
    responses=_ERRORS,
)
def resume_session(mac_address: str, engine: AccessEngine = Depends(get_engine)):
    return _respond(engine, _call(engine.manager.resume, mac_address))


@router.put(
    "/{mac_address}/ip",
    response_model=SessionResponse,
    summary="Update a device's IP address",
    responses=_ERRORS,
)
def update_ip(mac_address: str, body: IpMappingRequest, engine: AccessEngine = Depends(get_engine)):
    session = _call(engine.manager.update_ip_mapping, mac_address, body.ip_address)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session not found for {mac_address}")
    return _respond(engine, session)


@router.delete(
    "/{mac_address}",
    status_code=204,
    summary="End a session",
    description="Idempotent: ending a device without a session still blocks it.",
    responses=_ERRORS,
)
def end_session(mac_address: str, engine: AccessEngine = Depends(get_engine)):
    _call(engine.manager.end, mac_address, reason="ended by request")
    return Response(status_code=204)


@router.get(
    "/{mac_address}/firewall",
    response_model=FirewallStatusResponse,
    summary="Live firewall state for a device",
    responses={400: _ERRORS[400], 502: _ERRORS[502]},
)
def firewall_status(mac_address: str, engine: AccessEngine = Depends(get_engine)):
    status = _call(engine.driver.status, mac_address)
    return FirewallStatusResponse(
        mac_address=status.mac_address,
        is_allowed=status.is_allowed,
        allow_rule_count=status.allow_rule_count,
        block_rule_count=status.block_rule_count,
    )
