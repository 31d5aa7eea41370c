"""Operator CLI for the captive portal rules and session state.

Usage:
    python scripts/portalctl.py enable
    python scripts/portalctl.py disable
    python scripts/portalctl.py status [--mac AA:BB:CC:DD:EE:FF]
    python scripts/portalctl.py reconcile
    python scripts/portalctl.py end --mac AA:BB:CC:DD:EE:FF

Global options (before the subcommand):
    --database-url URL   Database to use (default: DATABASE_URL setting)
    --simulate           Use the in-memory rule table instead of iptables
"""

import argparse
import logging
import sys
from pathlib import Path

# Ensure project root is in the Python path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from accessgate.config import settings
from accessgate.database import init_db
from accessgate.engine import build_engine
from accessgate.errors import AccessControlError, DriverError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage the captive portal firewall and WiFi sessions"
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Database URL (default: uses DATABASE_URL env var or sqlite:///./accessgate.db)",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Do not touch kernel rules; use the in-memory rule table",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("enable", help="Install the captive portal baseline rules")
    commands.add_parser("disable", help="Remove all rules and reset policies to ACCEPT")
    status = commands.add_parser("status", help="Show portal or device state")
    status.add_argument("--mac", type=str, default=None, help="Device MAC address")
    commands.add_parser("reconcile", help="Run one expiry sweep and reconciliation pass")
    end = commands.add_parser("end", help="End a device's session and block it")
    end.add_argument("--mac", type=str, required=True, help="Device MAC address")
    return parser


def main(args=None, backend=None):
    """Main entry point for the portal control CLI.

    Args:
        args: Command-line arguments (defaults to sys.argv if None).
        backend: Rule backend to use instead of the configured one.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    parsed_args = _build_parser().parse_args(args)

    config = settings
    if parsed_args.simulate:
        config = settings.model_copy(update={"SIMULATE_FIREWALL": True})
    database_url = parsed_args.database_url or config.DATABASE_URL

    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    db_engine = create_engine(database_url, connect_args=connect_args)
    Session = sessionmaker(bind=db_engine)
    init_db(db_engine, Session)
    access_engine = build_engine(config, Session, backend=backend)
    manager = access_engine.manager

    try:
        if parsed_args.command == "enable":
            access_engine.captive.enable()
            logger.info("Captive portal enabled")
        elif parsed_args.command == "disable":
            failed = access_engine.disable_portal()
            if failed:
                logger.error("Teardown incomplete, failed steps: %s", ", ".join(failed))
                return 1
        elif parsed_args.command == "status":
            if parsed_args.mac:
                status = access_engine.driver.status(parsed_args.mac)
                session = manager.store.get_active_session(status.mac_address)
                print(
                    f"{status.mac_address}: allowed={status.is_allowed} "
                    f"allow_rules={status.allow_rule_count} "
                    f"block_rules={status.block_rule_count}"
                )
                if session is None:
                    print("session: none")
                else:
                    print(
                        f"session: paused={session.paused} "
                        f"remaining={session.time_remaining(manager.clock())}s "
                        f"ends={session.end_time.isoformat()}"
                    )
            else:
                print(f"portal active: {access_engine.captive.is_active()}")
                print(f"active sessions: {len(manager.store.get_active_sessions())}")
                print(f"enforcement: {'simulated' if access_engine.simulated else 'iptables'}")
        elif parsed_args.command == "reconcile":
            manager.initialize()
            expired = manager.sweep_expired()
            report = access_engine.reconciler.run_once()
            logger.info(
                "Expired %d, restored %d, ghosts %d, corrected %d, orphans %d",
                len(expired), len(report.restored), len(report.ghosts_ended),
                len(report.firewall_corrections), len(report.orphans_blocked),
            )
            if report.errors:
                logger.error("Reconciliation errors: %s", "; ".join(report.errors))
                return 1
        elif parsed_args.command == "end":
            manager.end(parsed_args.mac, reason="ended by operator")
        return 0

    except ValueError as e:
        logger.error("Invalid input: %s", e)
        return 1
    except DriverError as e:
        logger.error("Firewall error: %s", e)
        return 1
    except AccessControlError as e:
        logger.error("Operation failed: %s", e)
        return 1
    finally:
        manager.shutdown()
        db_engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
