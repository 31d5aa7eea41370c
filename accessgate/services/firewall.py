"""Per-MAC firewall rule driver.

Translates "allow this device" and "block this device" into packet-filter
rules and reads the live rule state back. Every rule the driver owns is
tagged with a comment of the form ``accessgate:<kind>:<mac>`` so that it
can find and remove all of a device's rules, including ones inserted by an
earlier run or for a previous IP address.

The rule store has no set-membership primitive and tolerates duplicates,
so both ``allow`` and ``block`` remove every matching rule first, insert a
fresh set, and then verify the result by reading the chains back.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from accessgate.errors import DriverError, VerificationFailed
from accessgate.services.addressing import normalize_ip, normalize_mac
from accessgate.services.rulestore import Rule, RuleBackend

logger = logging.getLogger(__name__)

TAG_PREFIX = "accessgate"
ALLOW = "allow"
BLOCK = "block"

FILTER_CHAIN = ("filter", "FORWARD")
NAT_CHAIN = ("nat", "PREROUTING")
OWNED_CHAINS = (FILTER_CHAIN, NAT_CHAIN)

# (protocol, port) pairs denied explicitly on block, besides the general drop
BLOCKED_SERVICES = (("udp", "53"), ("tcp", "53"), ("tcp", "80"), ("tcp", "443"))


@dataclass(frozen=True)
class FirewallStatus:
    """Live rule state for one MAC address."""

    mac_address: str
    is_allowed: bool
    allow_rule_count: int
    block_rule_count: int


def make_tag(kind: str, mac_address: str) -> str:
    return f"{TAG_PREFIX}:{kind}:{mac_address}"


def parse_tag(comment: Optional[str]):
    """Split a rule comment into ``(kind, mac)``, or None if not ours."""
    if not comment:
        return None
    parts = comment.split(":", 2)
    if len(parts) != 3 or parts[0] != TAG_PREFIX or parts[1] not in (ALLOW, BLOCK):
        return None
    return parts[1], parts[2]


class FirewallDriver:
    """Idempotent allow/block operations keyed by MAC address."""

    def __init__(self, backend: RuleBackend, lan_interface: str, delete_limit: int = 32):
        self.backend = backend
        self.lan_interface = lan_interface
        self.delete_limit = delete_limit

    # -- rule construction ---------------------------------------------------

    def _tagged(self, table_chain, kind, mac, *args) -> Rule:
        table, chain = table_chain
        return Rule(
            table,
            chain,
            tuple(args) + ("-m", "comment", "--comment", make_tag(kind, mac),
                           "-j", "ACCEPT" if kind == ALLOW else "DROP"),
        )

    def _allow_rules(self, mac: str, ip: Optional[str]) -> List[Rule]:
        by_mac = ("-m", "mac", "--mac-source", mac)
        rules = [
            # skip the captive-portal HTTP redirect
            self._tagged(NAT_CHAIN, ALLOW, mac, "-i", self.lan_interface, *by_mac,
                         "-p", "tcp", "--dport", "80"),
            self._tagged(FILTER_CHAIN, ALLOW, mac, *by_mac),
        ]
        if ip:
            rules += [
                self._tagged(NAT_CHAIN, ALLOW, mac, "-i", self.lan_interface, "-s", ip,
                             "-p", "tcp", "--dport", "80"),
                self._tagged(FILTER_CHAIN, ALLOW, mac, "-s", ip),
            ]
        return rules

    def _block_rules(self, mac: str, ip: Optional[str]) -> List[Rule]:
        by_mac = ("-m", "mac", "--mac-source", mac)
        rules = [self._tagged(FILTER_CHAIN, BLOCK, mac, *by_mac)]
        rules += [
            self._tagged(FILTER_CHAIN, BLOCK, mac, *by_mac, "-p", proto, "--dport", port)
            for proto, port in BLOCKED_SERVICES
        ]
        if ip:
            # traffic towards the device, so open connections stop delivering data
            rules.append(self._tagged(FILTER_CHAIN, BLOCK, mac, "-d", ip))
            rules += [
                self._tagged(FILTER_CHAIN, BLOCK, mac, "-d", ip, "-p", proto, "--sport", port)
                for proto, port in BLOCKED_SERVICES
            ]
        return rules

    # -- rule removal --------------------------------------------------------

    def _delete_all(self, rule: Rule) -> int:
        """Delete ``rule`` until the backend reports no match, up to the limit."""
        removed = 0
        while removed < self.delete_limit:
            if not self.backend.delete(rule):
                return removed
            removed += 1
        logger.warning(
            "Stopped deleting %s after %d copies; more may remain", rule, removed
        )
        return removed

    def _purge(self, mac: str, kinds: Iterable[str] = (ALLOW, BLOCK)) -> int:
        kinds = set(kinds)
        removed = 0
        for table, chain in OWNED_CHAINS:
            seen = set()
            for rule in self.backend.list_rules(table, chain):
                tag = parse_tag(rule.comment)
                if tag is None or tag[1] != mac or tag[0] not in kinds:
                    continue
                if rule.args in seen:
                    continue
                seen.add(rule.args)
                removed += self._delete_all(rule)
        return removed

    # -- public operations ---------------------------------------------------

    def allow(self, mac_address: str, ip_address: Optional[str] = None) -> FirewallStatus:
        """Grant forwarding to a device, replacing any earlier rules for it.

        Raises:
            DriverError: The enforcement tool failed, is missing or timed out.
            VerificationFailed: The chains do not show the device as allowed.
        """
        mac = normalize_mac(mac_address)
        ip = normalize_ip(ip_address)
        removed = self._purge(mac)
        for rule in self._allow_rules(mac, ip):
            self.backend.insert(rule, 1)
        status = self.status(mac)
        if not status.is_allowed:
            raise VerificationFailed(mac, "allowed", status)
        logger.info(
            "Allowed %s (ip=%s, replaced %d old rules)", mac, ip or "-", removed
        )
        return status

    def block(self, mac_address: str, ip_address: Optional[str] = None) -> FirewallStatus:
        """Remove a device's allow rules and deny its traffic in both directions.

        Raises:
            DriverError: The enforcement tool failed, is missing or timed out.
            VerificationFailed: The device still shows as allowed.
        """
        mac = normalize_mac(mac_address)
        ip = normalize_ip(ip_address)
        removed = self._purge(mac)
        for rule in self._block_rules(mac, ip):
            self.backend.insert(rule, 1)
        status = self.status(mac)
        if status.is_allowed or status.block_rule_count == 0:
            raise VerificationFailed(mac, "blocked", status)
        logger.info(
            "Blocked %s (ip=%s, replaced %d old rules)", mac, ip or "-", removed
        )
        return status

    def forget(self, mac_address: str) -> int:
        """Remove every rule owned by a device without inserting new ones."""
        return self._purge(normalize_mac(mac_address))

    def status(self, mac_address: str) -> FirewallStatus:
        mac = normalize_mac(mac_address)
        allow_count = block_count = 0
        for rule in self.backend.list_rules(*FILTER_CHAIN):
            tag = parse_tag(rule.comment)
            if tag is None or tag[1] != mac:
                continue
            if tag[0] == ALLOW:
                allow_count += 1
            else:
                block_count += 1
        return FirewallStatus(
            mac_address=mac,
            # any deny rule wins: a device is only allowed when nothing blocks it
            is_allowed=allow_count > 0 and block_count == 0,
            allow_rule_count=allow_count,
            block_rule_count=block_count,
        )

    def is_allowed(self, mac_address: str) -> bool:
        """Query the live chains; an unreadable state counts as not allowed."""
        try:
            return self.status(mac_address).is_allowed
        except DriverError as e:
            logger.error("Cannot read firewall state for %s: %s", mac_address, e)
            return False

    def allowed_macs(self) -> Set[str]:
        """Every MAC that currently holds an allow rule in the forward chain."""
        macs = set()
        for rule in self.backend.list_rules(*FILTER_CHAIN):
            tag = parse_tag(rule.comment)
            if tag is not None and tag[0] == ALLOW:
                macs.add(tag[1])
        return macs
