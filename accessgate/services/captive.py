"""Captive-portal baseline rules.

Installs the fixed rule set into which the firewall driver inserts per-MAC
rules: unconditional accepts for infrastructure traffic, the HTTP redirect
to the portal for everyone not yet allowed, masquerading towards the WAN
and a catch-all drop that must stay the last rule of the forward chain.
"""

import logging
import os
from typing import List

from accessgate.errors import DriverError
from accessgate.services.rulestore import Rule, RuleBackend

logger = logging.getLogger(__name__)

BASELINE_TAG = "accessgate:baseline"
CATCH_ALL_TAG = "accessgate:default-deny"

INFRASTRUCTURE_PORTS = (
    ("udp", "53"),      # DNS
    ("tcp", "53"),
    ("udp", "67:68"),   # DHCP
    ("udp", "123"),     # NTP
)


def _baseline(table: str, chain: str, *args: str, tag: str = BASELINE_TAG) -> Rule:
    return Rule(table, chain, tuple(args) + ("-m", "comment", "--comment", tag))


class CaptivePortal:
    """Install, verify and tear down the baseline rule set."""

    def __init__(self, backend: RuleBackend, config):
        self.backend = backend
        self.config = config

    def verify_lan_interface(self) -> bool:
        """Check the LAN adapter exists, unless verification is disabled."""
        if self.config.SKIP_AP_VERIFY or self.backend.simulated:
            return True
        present = os.path.exists(os.path.join("/sys/class/net", self.config.LAN_INTERFACE))
        if not present:
            logger.warning(
                "LAN interface %s not found; captive rules may not match any traffic",
                self.config.LAN_INTERFACE,
            )
        return present

    def _established_rule(self) -> Rule:
        return _baseline("filter", "FORWARD", "-m", "conntrack", "--ctstate",
                         "RELATED,ESTABLISHED", "-j", "ACCEPT")

    def _established_fallback(self) -> Rule:
        return _baseline("filter", "FORWARD", "-m", "state", "--state",
                         "RELATED,ESTABLISHED", "-j", "ACCEPT")

    def catch_all_rule(self) -> Rule:
        return _baseline("filter", "FORWARD", "-j", "DROP", tag=CATCH_ALL_TAG)

    def enable(self) -> None:
        """Flush the owned chains and install the baseline, catch-all last.

        Raises:
            DriverError: A rule could not be installed, or the catch-all drop
                did not end up as the final forward rule.
        """
        cfg = self.config
        self.verify_lan_interface()

        self.backend.flush("filter", "FORWARD")
        self.backend.flush("nat", "PREROUTING")
        self.backend.flush("nat", "POSTROUTING")

        for proto, port in INFRASTRUCTURE_PORTS:
            self.backend.append(
                _baseline("filter", "FORWARD", "-p", proto, "--dport", port, "-j", "ACCEPT")
            )
        self.backend.append(_baseline("filter", "FORWARD", "-d", cfg.PORTAL_IP, "-j", "ACCEPT"))
        self.backend.append(_baseline("filter", "FORWARD", "-s", cfg.PORTAL_IP, "-j", "ACCEPT"))

        try:
            self.backend.append(self._established_rule())
        except DriverError as e:
            logger.warning("conntrack match unavailable (%s); using state match", e)
            self.backend.append(self._established_fallback())

        self.backend.append(
            _baseline("nat", "PREROUTING", "-i", cfg.LAN_INTERFACE, "-p", "tcp",
                      "--dport", "80", "-j", "DNAT",
                      "--to-destination", f"{cfg.PORTAL_IP}:{cfg.PORTAL_PORT}")
        )
        start, end = cfg.dhcp_bounds
        self.backend.append(
            _baseline("nat", "POSTROUTING", "-o", cfg.WAN_INTERFACE, "-m", "iprange",
                      "--src-range", f"{start}-{end}", "-j", "MASQUERADE")
        )

        self.backend.append(self.catch_all_rule())
        if not self.catch_all_is_last():
            raise DriverError("catch-all drop is not the last forward rule")
        logger.info(
            "Captive portal enabled on %s -> %s (portal %s:%s)",
            cfg.LAN_INTERFACE, cfg.WAN_INTERFACE, cfg.PORTAL_IP, cfg.PORTAL_PORT,
        )

    def disable(self) -> List[str]:
        """Reset policies to ACCEPT and flush everything, step by step.

        Each step runs even if an earlier one failed, so this is safe after
        a partial ``enable``. Returns the descriptions of failed steps.
        """
        steps = [
            ("policy INPUT", lambda: self.backend.set_policy("INPUT", "ACCEPT")),
            ("policy FORWARD", lambda: self.backend.set_policy("FORWARD", "ACCEPT")),
            ("policy OUTPUT", lambda: self.backend.set_policy("OUTPUT", "ACCEPT")),
            ("flush filter", lambda: self.backend.flush("filter")),
            ("flush nat", lambda: self.backend.flush("nat")),
            ("delete filter chains", lambda: self.backend.delete_chains("filter")),
            ("delete nat chains", lambda: self.backend.delete_chains("nat")),
        ]
        failed = []
        for name, step in steps:
            try:
                step()
            except DriverError as e:
                logger.error("Captive teardown step '%s' failed: %s", name, e)
                failed.append(name)
        logger.info("Captive portal disabled (%d failed steps)", len(failed))
        return failed

    def catch_all_is_last(self) -> bool:
        rules = self.backend.list_rules("filter", "FORWARD")
        return bool(rules) and rules[-1].comment == CATCH_ALL_TAG

    def is_active(self) -> bool:
        """True when the portal redirect and the final catch-all are in place."""
        try:
            redirect = any(
                r.comment == BASELINE_TAG and r.target == "DNAT"
                for r in self.backend.list_rules("nat", "PREROUTING")
            )
            return redirect and self.catch_all_is_last()
        except DriverError as e:
            logger.error("Cannot read captive portal state: %s", e)
            return False
