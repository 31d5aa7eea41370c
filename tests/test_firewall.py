"""Tests for the per-MAC firewall driver on the in-memory backend."""

import pytest

from accessgate.errors import DriverError, VerificationFailed
from accessgate.services.firewall import FirewallDriver, make_tag, parse_tag
from accessgate.services.rulestore import MemoryBackend, Rule

MAC = "aa:bb:cc:dd:ee:ff"
OTHER_MAC = "11:22:33:44:55:66"


def _tagged(backend, table, chain, mac):
    return [r for r in backend.list_rules(table, chain) if r.comment and r.comment.endswith(mac)]


class TestTags:
    """Tests for rule comment tags."""

    def test_round_trip(self):
        """parse_tag should recover the kind and MAC from make_tag."""
        assert parse_tag(make_tag("allow", MAC)) == ("allow", MAC)

    def test_foreign_comments_ignored(self):
        """Comments not written by the driver should parse to None."""
        assert parse_tag(None) is None
        assert parse_tag("accessgate:baseline") is None
        assert parse_tag("other:allow:" + MAC) is None


class TestAllow:
    """Tests for FirewallDriver.allow."""

    def test_allow_grants_access(self, driver):
        """allow should leave the MAC allowed with one forward rule."""
        status = driver.allow(MAC)
        assert status.is_allowed is True
        assert status.allow_rule_count == 1
        assert status.block_rule_count == 0
        assert driver.is_allowed(MAC) is True

    def test_allow_bypasses_portal_redirect(self, driver, backend):
        """allow should add a NAT rule so the device skips the portal redirect."""
        driver.allow(MAC)
        nat = _tagged(backend, "nat", "PREROUTING", MAC)
        assert len(nat) == 1
        assert nat[0].target == "ACCEPT"
        assert "--dport" in nat[0].args

    def test_allow_is_idempotent(self, driver, backend):
        """Allowing twice should leave the same rules as allowing once."""
        driver.allow(MAC, "10.0.0.20")
        once = backend.list_rules("filter", "FORWARD") + backend.list_rules("nat", "PREROUTING")
        driver.allow(MAC, "10.0.0.20")
        twice = backend.list_rules("filter", "FORWARD") + backend.list_rules("nat", "PREROUTING")
        assert sorted(r.args for r in once) == sorted(r.args for r in twice)

    def test_allow_removes_duplicates(self, driver, backend):
        """Accidental duplicate rules from earlier runs should be collapsed."""
        driver.allow(MAC)
        for rule in _tagged(backend, "filter", "FORWARD", MAC):
            backend.append(rule)
            backend.append(rule)
        assert driver.status(MAC).allow_rule_count == 3
        assert driver.allow(MAC).allow_rule_count == 1

    def test_allow_replaces_block(self, driver):
        """allow should drop earlier deny rules for the device."""
        driver.block(MAC, "10.0.0.20")
        status = driver.allow(MAC, "10.0.0.20")
        assert status.block_rule_count == 0
        assert status.is_allowed is True

    def test_allow_with_new_ip_drops_old_ip_rules(self, driver, backend):
        """Rules for a previous IP address should not survive a re-allow."""
        driver.allow(MAC, "10.0.0.20")
        driver.allow(MAC, "10.0.0.21")
        args = [r.args for r in _tagged(backend, "filter", "FORWARD", MAC)]
        assert not any("10.0.0.20" in a for a in args)
        assert any("10.0.0.21" in a for a in args)

    def test_allow_normalizes_mac(self, driver):
        """The rules should be keyed by the canonical MAC form."""
        driver.allow("AA-BB-CC-DD-EE-FF")
        assert driver.is_allowed(MAC) is True

    def test_other_devices_untouched(self, driver):
        """Operating on one MAC must not disturb another MAC's rules."""
        driver.allow(OTHER_MAC)
        driver.allow(MAC)
        driver.block(MAC)
        assert driver.is_allowed(OTHER_MAC) is True

    def test_backend_failure_propagates(self, driver, backend):
        """A failing enforcement tool should surface as DriverError."""
        backend.failing = True
        with pytest.raises(DriverError):
            driver.allow(MAC)

    def test_verification_failure(self):
        """If the allow rules do not show up, VerificationFailed is raised."""

        class SwallowingBackend(MemoryBackend):
            def insert(self, rule, position=1):
                pass

        driver = FirewallDriver(SwallowingBackend(), "wlan0")
        with pytest.raises(VerificationFailed, match="expected allowed"):
            driver.allow(MAC)


class TestBlock:
    """Tests for FirewallDriver.block."""

    def test_block_denies_access(self, driver):
        """block should remove allow rules and add deny rules."""
        driver.allow(MAC)
        status = driver.block(MAC)
        assert status.is_allowed is False
        assert status.allow_rule_count == 0
        assert status.block_rule_count == 5

    def test_block_removes_portal_bypass(self, driver, backend):
        """A blocked device should be redirected to the portal again."""
        driver.allow(MAC)
        driver.block(MAC)
        assert _tagged(backend, "nat", "PREROUTING", MAC) == []

    def test_block_is_bidirectional(self, driver, backend):
        """With an IP, traffic towards the device should be dropped too."""
        driver.block(MAC, "10.0.0.20")
        rules = _tagged(backend, "filter", "FORWARD", MAC)
        assert any("--mac-source" in r.args for r in rules)
        assert any("-d" in r.args and "10.0.0.20" in r.args for r in rules)
        sports = {r.args[r.args.index("--sport") + 1] for r in rules if "--sport" in r.args}
        assert sports == {"53", "80", "443"}

    def test_block_covers_services(self, driver, backend):
        """DNS, HTTP and HTTPS should be denied explicitly."""
        driver.block(MAC)
        dports = {
            r.args[r.args.index("--dport") + 1]
            for r in _tagged(backend, "filter", "FORWARD", MAC)
            if "--dport" in r.args
        }
        assert dports == {"53", "80", "443"}

    def test_block_is_idempotent(self, driver):
        """Blocking twice should leave the same rule count as blocking once."""
        first = driver.block(MAC, "10.0.0.20")
        second = driver.block(MAC, "10.0.0.20")
        assert first == second

    def test_block_of_unknown_mac(self, driver):
        """Blocking a device that was never allowed should still succeed."""
        assert driver.block(MAC).is_allowed is False


class TestQueries:
    """Tests for status, is_allowed, forget and allowed_macs."""

    def test_is_allowed_fails_closed(self, driver, backend):
        """An unreadable rule state must count as not allowed."""
        driver.allow(MAC)

        def broken(table, chain):
            raise DriverError("cannot list")

        backend.list_rules = broken
        assert driver.is_allowed(MAC) is False

    def test_deny_rule_wins(self, driver, backend):
        """A device with both allow and deny rules is not allowed."""
        driver.allow(MAC)
        deny = Rule("filter", "FORWARD", ("-m", "comment", "--comment", make_tag("block", MAC), "-j", "DROP"))
        backend.insert(deny, 1)
        status = driver.status(MAC)
        assert status.allow_rule_count == 1
        assert status.is_allowed is False

    def test_forget_removes_everything(self, driver):
        """forget should remove both allow and deny rules."""
        driver.block(MAC)
        assert driver.forget(MAC) == 5
        status = driver.status(MAC)
        assert status.allow_rule_count == status.block_rule_count == 0

    def test_allowed_macs(self, driver):
        """allowed_macs should list devices holding allow rules."""
        driver.allow(MAC)
        driver.allow(OTHER_MAC)
        driver.block(OTHER_MAC)
        assert driver.allowed_macs() == {MAC}

    def test_delete_loop_is_bounded(self, backend):
        """The deletion loop should stop at the configured limit."""
        driver = FirewallDriver(backend, "wlan0", delete_limit=2)
        driver.allow(MAC)
        rule = _tagged(backend, "filter", "FORWARD", MAC)[0]
        for _ in range(4):
            backend.append(rule)
        assert driver.forget(MAC) == 3
