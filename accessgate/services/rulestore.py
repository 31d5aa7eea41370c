"""Packet-filter rule backends.

A backend is the only code that talks to the enforcement tool. It exposes
a small typed interface (insert, append, delete, list, flush, policy) over
``Rule`` values so that the firewall driver and the captive rule set never
build command lines themselves. ``IptablesBackend`` runs the real tool;
``MemoryBackend`` keeps an in-process rule table and is used both for
simulated enforcement on unsupported platforms and in tests.
"""

import logging
import os
import shlex
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from accessgate.errors import DriverError, DriverTimeout, DriverUnavailable

logger = logging.getLogger(__name__)

IPTABLES_CANDIDATES = (
    "iptables",
    "/usr/sbin/iptables",
    "/sbin/iptables",
    "/usr/bin/iptables",
    "/usr/sbin/iptables-nft",
    "/usr/sbin/iptables-legacy",
)

BUILTIN_CHAINS = {
    "filter": ("INPUT", "FORWARD", "OUTPUT"),
    "nat": ("PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"),
}

# stderr fragments meaning "nothing matched", as opposed to a real failure
_NO_MATCH_MARKERS = (
    "does a matching rule exist",
    "Bad rule",
    "No chain/target/match by that name",
)

# iptables exit status for a resource problem (e.g. xtables lock contention)
_EXIT_RESOURCE_PROBLEM = 4


@dataclass(frozen=True)
class Rule:
    """One packet-filter rule: a table, a chain and its match/target arguments."""

    table: str
    chain: str
    args: Tuple[str, ...]

    @property
    def target(self) -> Optional[str]:
        return _value_after(self.args, "-j")

    @property
    def comment(self) -> Optional[str]:
        return _value_after(self.args, "--comment")

    def __str__(self) -> str:
        return f"-t {self.table} {self.chain} {' '.join(self.args)}"


def _value_after(args: Sequence[str], flag: str) -> Optional[str]:
    try:
        return args[list(args).index(flag) + 1]
    except (ValueError, IndexError):
        return None


class RuleBackend:
    """Interface implemented by every enforcement-tool adapter."""

    simulated = False

    def insert(self, rule: Rule, position: int = 1) -> None:
        raise NotImplementedError

    def append(self, rule: Rule) -> None:
        raise NotImplementedError

    def delete(self, rule: Rule) -> bool:
        """Delete one occurrence of ``rule``.

        Returns False when no matching rule exists, which callers use as the
        stop condition of their deletion loops.
        """
        raise NotImplementedError

    def list_rules(self, table: str, chain: str) -> List[Rule]:
        raise NotImplementedError

    def flush(self, table: str, chain: Optional[str] = None) -> None:
        raise NotImplementedError

    def set_policy(self, chain: str, policy: str) -> None:
        raise NotImplementedError

    def delete_chains(self, table: str) -> None:
        """Remove every user-defined chain in ``table``."""
        raise NotImplementedError


class IptablesBackend(RuleBackend):
    """Runs ``iptables`` as a subprocess with a bounded timeout and retries."""

    def __init__(self, binary: Optional[str], timeout: float = 5.0, retries: int = 2):
        self.binary = binary
        self.timeout = timeout
        self.retries = max(0, retries)

    def _invoke(self, args: Sequence[str]) -> subprocess.CompletedProcess:
        if self.binary is None:
            raise DriverUnavailable(
                "iptables was not found; looked for " + ", ".join(IPTABLES_CANDIDATES)
            )
        cmd = [self.binary, "-w", *args]
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                result = subprocess.run(
                    cmd, capture_output=True, text=True, timeout=self.timeout
                )
            except subprocess.TimeoutExpired:
                logger.warning(
                    "iptables timed out after %.1fs (attempt %d/%d): %s",
                    self.timeout, attempt, attempts, " ".join(args),
                )
                continue
            except OSError as e:
                raise DriverUnavailable(f"Cannot execute {self.binary}: {e}")
            if result.returncode == _EXIT_RESOURCE_PROBLEM and attempt < attempts:
                logger.warning(
                    "iptables resource problem (attempt %d/%d): %s",
                    attempt, attempts, result.stderr.strip(),
                )
                continue
            return result
        raise DriverTimeout(
            f"iptables did not finish within {self.timeout}s after {attempts} attempts: "
            + " ".join(args)
        )

    def _run(self, args: Sequence[str]) -> str:
        result = self._invoke(args)
        if result.returncode != 0:
            raise DriverError(
                f"iptables {' '.join(args)} failed with status {result.returncode}: "
                f"{result.stderr.strip()}"
            )
        return result.stdout

    def insert(self, rule: Rule, position: int = 1) -> None:
        self._run(["-t", rule.table, "-I", rule.chain, str(position), *rule.args])

    def append(self, rule: Rule) -> None:
        self._run(["-t", rule.table, "-A", rule.chain, *rule.args])

    def delete(self, rule: Rule) -> bool:
        result = self._invoke(["-t", rule.table, "-D", rule.chain, *rule.args])
        if result.returncode == 0:
            return True
        if any(marker in result.stderr for marker in _NO_MATCH_MARKERS):
            return False
        raise DriverError(
            f"iptables -D {rule} failed with status {result.returncode}: "
            f"{result.stderr.strip()}"
        )

    def list_rules(self, table: str, chain: str) -> List[Rule]:
        output = self._run(["-t", table, "-S", chain])
        return parse_rule_listing(table, chain, output)

    def flush(self, table: str, chain: Optional[str] = None) -> None:
        args = ["-t", table, "-F"]
        if chain:
            args.append(chain)
        self._run(args)

    def set_policy(self, chain: str, policy: str) -> None:
        self._run(["-t", "filter", "-P", chain, policy])

    def delete_chains(self, table: str) -> None:
        self._run(["-t", table, "-X"])


def parse_rule_listing(table: str, chain: str, output: str) -> List[Rule]:
    """Parse ``iptables -S CHAIN`` output into rules, skipping policy lines."""
    prefix = f"-A {chain} "
    rules = []
    for line in output.splitlines():
        line = line.strip()
        if line.startswith(prefix):
            rules.append(Rule(table, chain, tuple(shlex.split(line[len(prefix):]))))
    return rules


class MemoryBackend(RuleBackend):
    """In-process rule table with iptables ordering semantics.

    ``unsupported_matches`` names match extensions to reject, emulating a
    kernel that lacks them.
    """

    simulated = True

    def __init__(self, unsupported_matches: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._chains: Dict[Tuple[str, str], List[Tuple[str, ...]]] = {}
        self.policies: Dict[str, str] = {c: "ACCEPT" for c in BUILTIN_CHAINS["filter"]}
        self.unsupported_matches = frozenset(unsupported_matches)
        for table, chains in BUILTIN_CHAINS.items():
            for chain in chains:
                self._chains[(table, chain)] = []

    def _check_matches(self, rule: Rule) -> None:
        args = list(rule.args)
        for i, arg in enumerate(args[:-1]):
            if arg == "-m" and args[i + 1] in self.unsupported_matches:
                raise DriverError(f"Couldn't load match `{args[i + 1]}'")

    def insert(self, rule: Rule, position: int = 1) -> None:
        self._check_matches(rule)
        with self._lock:
            rules = self._chains.setdefault((rule.table, rule.chain), [])
            if position < 1 or position > len(rules) + 1:
                raise DriverError(f"Index of insertion too big: {position}")
            rules.insert(position - 1, rule.args)

    def append(self, rule: Rule) -> None:
        self._check_matches(rule)
        with self._lock:
            self._chains.setdefault((rule.table, rule.chain), []).append(rule.args)

    def delete(self, rule: Rule) -> bool:
        with self._lock:
            rules = self._chains.get((rule.table, rule.chain), [])
            try:
                rules.remove(rule.args)
            except ValueError:
                return False
            return True

    def list_rules(self, table: str, chain: str) -> List[Rule]:
        with self._lock:
            return [Rule(table, chain, args) for args in self._chains.get((table, chain), [])]

    def flush(self, table: str, chain: Optional[str] = None) -> None:
        with self._lock:
            for (t, c), rules in self._chains.items():
                if t == table and (chain is None or c == chain):
                    rules.clear()

    def set_policy(self, chain: str, policy: str) -> None:
        with self._lock:
            self.policies[chain] = policy

    def delete_chains(self, table: str) -> None:
        with self._lock:
            builtin = BUILTIN_CHAINS.get(table, ())
            for key in [k for k in self._chains if k[0] == table and k[1] not in builtin]:
                del self._chains[key]


def resolve_iptables(override: Optional[str] = None) -> Optional[str]:
    """Return the first usable iptables executable, preferring ``override``."""
    candidates = ((override,) if override else ()) + IPTABLES_CANDIDATES
    for candidate in candidates:
        if os.sep in candidate:
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                return candidate
        else:
            found = shutil.which(candidate)
            if found:
                return found
    return None


def build_backend(config) -> RuleBackend:
    """Pick the real or simulated backend for the running platform."""
    binary = resolve_iptables(config.IPTABLES_PATH)
    simulate = config.SIMULATE_FIREWALL
    if simulate is None:
        simulate = not sys.platform.startswith("linux") or binary is None
    if simulate:
        logger.warning(
            "Firewall enforcement is simulated (platform=%s, iptables=%s); "
            "no kernel rules will be changed",
            sys.platform, binary,
        )
        return MemoryBackend()
    logger.info("Using iptables at %s", binary)
    return IptablesBackend(
        binary,
        timeout=config.FIREWALL_TIMEOUT_SECONDS,
        retries=config.FIREWALL_RETRIES,
    )
