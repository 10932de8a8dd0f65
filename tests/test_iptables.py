import subprocess
from unittest import mock

import pytest

from osdn.iptables import (
    APPEND,
    PREPEND,
    Chain,
    IPTablesError,
    IPTablesRunner,
    NodeIPTables,
    exec_with_retry,
)


class FakeIPTables:
    """In-memory stand-in for IPTablesRunner."""

    def __init__(self):
        self.tables = {
            "filter": {"INPUT": [], "FORWARD": [], "OUTPUT": []},
            "nat": {"PREROUTING": [], "POSTROUTING": [], "OUTPUT": []},
        }
        self.extra_save = {"filter": [], "nat": []}
        self.deleted = []
        self.save_error = None

    def ensure_chain(self, table, chain):
        chains = self.tables[table]
        if chain in chains:
            return True
        chains[chain] = []
        return False

    def ensure_rule(self, position, table, chain, *args):
        rules = self.tables[table][chain]
        rule = tuple(args)
        if rule in rules:
            return True
        if position == PREPEND:
            rules.insert(0, rule)
        else:
            rules.append(rule)
        return False

    def flush_chain(self, table, chain):
        self.tables[table][chain] = []

    def delete_rule(self, table, chain, *args):
        self.deleted.append((table, chain, tuple(args)))
        rules = self.tables[table].get(chain, [])
        if tuple(args) in rules:
            rules.remove(tuple(args))

    def save(self, table):
        if self.save_error is not None:
            raise self.save_error
        lines = []
        for chain, rules in self.tables[table].items():
            lines.extend(f"-A {chain} " + " ".join(r) for r in rules)
        lines.extend(self.extra_save[table])
        return "\n".join(lines)


def make_node(fake, masquerade_services=True, cidrs=("10.128.0.0/14",)):
    return NodeIPTables(fake, list(cidrs), masquerade_services, 4789, 0)


def snapshot(fake):
    return {t: {c: list(r) for c, r in chains.items()} for t, chains in fake.tables.items()}


def test_chains_masquerade_services():
    node = make_node(FakeIPTables())
    chains = node.chains()
    names = [c.name for c in chains]
    assert "OPENSHIFT-MASQUERADE-2" not in names
    assert names[0] == "OPENSHIFT-FIREWALL-ALLOW"
    masq = next(c for c in chains if c.name == "OPENSHIFT-MASQUERADE")
    assert masq.rules[0] == ["-m", "mark", "--mark", "0x1/0x1", "-j", "RETURN"]
    assert masq.rules[1][-1] == "MASQUERADE"
    assert masq.rules[2][-1] == "OPENSHIFT-MASQUERADE-EGRESS"
    assert all(isinstance(c, Chain) for c in chains)


def test_chains_without_masquerade_services():
    node = make_node(FakeIPTables(), masquerade_services=False,
                     cidrs=["10.128.0.0/14", "10.132.0.0/14"])
    chains = {c.name: c for c in node.chains()}
    masq2 = chains["OPENSHIFT-MASQUERADE-2"]
    assert masq2.rules[-1] == ["-j", "MASQUERADE"]
    assert len(masq2.rules) == 3
    assert len(chains["OPENSHIFT-FIREWALL-FORWARD"].rules) == 6
    vxlan_rule = chains["OPENSHIFT-FIREWALL-ALLOW"].rules[0]
    assert "4789" in vxlan_rule


def test_setup_creates_chains_and_jumps_in_order():
    fake = FakeIPTables()
    node = make_node(fake)
    node.setup()
    chains = node.chains()
    for chain in chains:
        assert chain.name in fake.tables[chain.table]
        if chain.src_chain:
            jump = tuple(chain.src_rule + ["-j", chain.name])
            assert jump in fake.tables[chain.table][chain.src_chain]
        for rule in chain.rules:
            assert tuple(rule) in fake.tables[chain.table][chain.name]

    forward_targets = [r[-1] for r in fake.tables["filter"]["FORWARD"]]
    expected = [c.name for c in chains if c.src_chain == "FORWARD"]
    assert forward_targets == expected


def test_egress_chain_has_no_jump():
    fake = FakeIPTables()
    make_node(fake).setup()
    all_nat_rules = [r for rules in fake.tables["nat"].values() for r in rules]
    jumps_from_postrouting = [r[-1] for r in fake.tables["nat"]["POSTROUTING"]]
    assert jumps_from_postrouting == ["OPENSHIFT-MASQUERADE"]
    assert any(r[-1] == "OPENSHIFT-MASQUERADE-EGRESS" for r in all_nat_rules)


def test_setup_is_idempotent():
    fake = FakeIPTables()
    node = make_node(fake)
    node.setup()
    before = snapshot(fake)
    node.setup()
    assert snapshot(fake) == before


def test_setup_flushes_stale_rules():
    fake = FakeIPTables()
    stale = ("-d", "10.0.0.0/8", "-j", "ACCEPT")
    fake.tables["filter"]["OPENSHIFT-FIREWALL-FORWARD"] = [stale]
    node = make_node(fake)
    node.setup()
    rules = fake.tables["filter"]["OPENSHIFT-FIREWALL-FORWARD"]
    assert stale not in rules
    expected = next(c for c in node.chains() if c.name == "OPENSHIFT-FIREWALL-FORWARD")
    assert rules == [tuple(r) for r in expected.rules]


def test_add_and_delete_egress_ip_rules():
    fake = FakeIPTables()
    node = make_node(fake)
    node.setup()
    node.add_egress_ip_rules("172.17.0.100", "0x0000002a")
    snat = ("-m", "mark", "--mark", "0x0000002a", "-j", "SNAT", "--to-source", "172.17.0.100")
    reject = ("-d", "172.17.0.100", "-m", "conntrack", "--ctstate", "NEW", "-j", "REJECT")
    assert snat in fake.tables["nat"]["OPENSHIFT-MASQUERADE-EGRESS"]
    assert reject in fake.tables["filter"]["OPENSHIFT-FIREWALL-ALLOW"]
    assert node.egress_ips == {"172.17.0.100": "0x0000002a"}

    node.delete_egress_ip_rules("172.17.0.100", "0x0000002a")
    assert snat not in fake.tables["nat"]["OPENSHIFT-MASQUERADE-EGRESS"]
    assert reject not in fake.tables["filter"]["OPENSHIFT-FIREWALL-ALLOW"]
    assert node.egress_ips == {}


def test_sync_egress_ip_rules_tolerates_save_failure():
    fake = FakeIPTables()
    fake.save_error = IPTablesError("boom", exit_status=2)
    node = make_node(fake)
    node.sync_egress_ip_rules()
    assert fake.deleted == []


def test_exec_with_retry_returns_value():
    assert exec_with_retry(lambda: 42) == 42


def test_exec_with_retry_retries_resource_errors():
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise IPTablesError("locked", exit_status=4)
        return "done"

    with mock.patch("osdn.iptables.time.sleep") as sleep:
        assert exec_with_retry(flaky) == "done"
    assert len(attempts) == 3
    assert sleep.call_count == 2
    assert sleep.call_args_list[0].args[0] == 0.5


def test_exec_with_retry_gives_up():
    attempts = []

    def always_locked():
        attempts.append(1)
        raise IPTablesError("locked", exit_status=4)

    with mock.patch("osdn.iptables.time.sleep"):
        with pytest.raises(IPTablesError, match="timed out"):
            exec_with_retry(always_locked)
    assert len(attempts) == 10


def test_exec_with_retry_raises_other_errors_immediately():
    attempts = []

    def broken():
        attempts.append(1)
        raise IPTablesError("bad rule", exit_status=2)

    with pytest.raises(IPTablesError, match="bad rule") as info:
        exec_with_retry(broken)
    assert info.value.exit_status == 2
    assert len(attempts) == 1


class RecordingRun:
    def __init__(self, codes, stdout=""):
        self.codes = list(codes)
        self.stdout = stdout
        self.calls = []

    def __call__(self, argv):
        self.calls.append(list(argv))
        code = self.codes.pop(0) if self.codes else 0
        return subprocess.CompletedProcess(argv, code, self.stdout, "err")


def test_runner_ensure_chain_status_codes():
    assert IPTablesRunner(run=RecordingRun([0])).ensure_chain("nat", "X") is False
    assert IPTablesRunner(run=RecordingRun([1])).ensure_chain("nat", "X") is True
    with pytest.raises(IPTablesError) as info:
        IPTablesRunner(run=RecordingRun([2])).ensure_chain("nat", "X")
    assert info.value.exit_status == 2


def test_runner_ensure_rule_checks_then_adds():
    run = RecordingRun([1, 0])
    runner = IPTablesRunner(run=run)
    assert runner.ensure_rule(APPEND, "filter", "INPUT", "-j", "ACCEPT") is False
    assert run.calls == [
        ["iptables", "-w", "-t", "filter", "-C", "INPUT", "-j", "ACCEPT"],
        ["iptables", "-w", "-t", "filter", "-A", "INPUT", "-j", "ACCEPT"],
    ]
    existing = RecordingRun([0])
    assert IPTablesRunner(run=existing).ensure_rule(PREPEND, "filter", "INPUT", "-j", "ACCEPT")
    assert len(existing.calls) == 1


def test_runner_delete_rule_skips_missing():
    run = RecordingRun([1])
    IPTablesRunner(run=run).delete_rule("nat", "X", "-j", "RETURN")
    assert [c[4] for c in run.calls] == ["-C"]
    run = RecordingRun([0, 0])
    IPTablesRunner(run=run).delete_rule("nat", "X", "-j", "RETURN")
    assert [c[4] for c in run.calls] == ["-C", "-D"]


def test_runner_save_and_flush():
    run = RecordingRun([0, 0], stdout="*nat\nCOMMIT\n")
    runner = IPTablesRunner(run=run)
    assert runner.save("nat") == "*nat\nCOMMIT\n"
    runner.flush_chain("nat", "X")
    assert run.calls == [
        ["iptables-save", "-t", "nat"],
        ["iptables", "-w", "-t", "nat", "-F", "X"],
    ]


def test_runner_invalid_position():
    with pytest.raises(ValueError):
        IPTablesRunner(run=RecordingRun([])).ensure_rule("-X", "nat", "C", "-j", "RETURN")