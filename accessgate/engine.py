"""Assembly of the access control engine from configuration."""

import logging
from typing import Callable, List, Optional

from accessgate.errors import DriverError
from accessgate.services.captive import CaptivePortal
from accessgate.services.firewall import FirewallDriver
from accessgate.services.persistence import SessionStore
from accessgate.services.reconciler import Reconciler, ReconciliationWorker
from accessgate.services.rulestore import RuleBackend, build_backend
from accessgate.services.runtime import utcnow
from accessgate.services.session_manager import RecoveryReport, SessionManager

logger = logging.getLogger(__name__)


class AccessEngine:
    """Owns the long-lived components and their background threads."""

    def __init__(self, config, backend: RuleBackend, manager: SessionManager,
                 captive: CaptivePortal, reconciler: Reconciler,
                 worker: ReconciliationWorker):
        self.config = config
        self.backend = backend
        self.manager = manager
        self.captive = captive
        self.reconciler = reconciler
        self.worker = worker
        self.started = False

    @property
    def driver(self) -> FirewallDriver:
        return self.manager.driver

    @property
    def simulated(self) -> bool:
        return self.backend.simulated

    def start(self, background: bool = True) -> RecoveryReport:
        """Install the captive baseline, recover sessions, start the threads.

        A failing baseline install is logged and left to the next operator
        ``enable``; recovery still runs so stored sessions are honoured.
        """
        if self.config.MANAGE_CAPTIVE_RULES:
            try:
                self.captive.enable()
            except DriverError as e:
                logger.error("Captive portal baseline could not be installed: %s", e)
        report = self.manager.initialize()
        if background:
            self.manager.scheduler.start()
            self.worker.start()
        self.started = True
        logger.info("Access control engine started (simulated=%s)", self.simulated)
        return report

    def stop(self) -> None:
        self.worker.stop()
        self.manager.shutdown()
        self.started = False
        logger.info("Access control engine stopped")

    def disable_portal(self) -> List[str]:
        return self.captive.disable()


def build_engine(
    config,
    session_factory,
    backend: Optional[RuleBackend] = None,
    clock: Callable = utcnow,
) -> AccessEngine:
    backend = backend or build_backend(config)
    driver = FirewallDriver(backend, config.LAN_INTERFACE, delete_limit=config.RULE_DELETE_LIMIT)
    store = SessionStore(session_factory, time_per_peso=config.TIME_PER_PESO)
    manager = SessionManager(store, driver, clock=clock)
    reconciler = Reconciler(manager)
    worker = ReconciliationWorker(manager, reconciler, config.RECONCILE_INTERVAL_SECONDS)
    return AccessEngine(
        config=config,
        backend=backend,
        manager=manager,
        captive=CaptivePortal(backend, config),
        reconciler=reconciler,
        worker=worker,
    )
