"""Node iptables rules for cluster traffic, masquerading and egress IPs."""

from __future__ import annotations

import logging
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TABLE_FILTER = "filter"
TABLE_NAT = "nat"

APPEND = "-A"
PREPEND = "-I"

TUN0 = "tun0"

MASQUERADE_EGRESS_CHAIN = "OPENSHIFT-MASQUERADE-EGRESS"
FIREWALL_ALLOW_CHAIN = "OPENSHIFT-FIREWALL-ALLOW"

# iptables exits with this status when it hit a "resource problem", for
# instance when it timed out waiting for the xtables lock.
IPTABLES_STATUS_RESOURCE_PROBLEM = 4

# Retry 10 times over roughly 13 seconds.
BACKOFF_INITIAL = 0.5
BACKOFF_FACTOR = 1.25
BACKOFF_STEPS = 10

_MASQ_RULE_RE = re.compile(r"-A OPENSHIFT-MASQUERADE-EGRESS .* --to-source ([^ ]*)")
_FILTER_RULE_RE = re.compile(r"-A OPENSHIFT-FIREWALL-ALLOW -d ([^ ]*)/32 .* -j REJECT")


class IPTablesError(Exception):
    """Raised when an iptables command fails."""

    def __init__(self, message: str, exit_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_status = exit_status

    @property
    def is_resource_error(self) -> bool:
        """Whether iptables could not attempt the request, e.g. lock timeout."""
        return self.exit_status == IPTABLES_STATUS_RESOURCE_PROBLEM


@dataclass
class Chain:
    """A chain of rules, optionally jumped to from a parent chain."""

    table: str
    name: str
    src_chain: str = ""
    src_rule: list[str] = field(default_factory=list)
    rules: list[list[str]] = field(default_factory=list)


RunFunc = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]


def _run_command(argv: Sequence[str]) -> "subprocess.CompletedProcess[str]":
    try:
        return subprocess.run(
            list(argv), capture_output=True, text=True, check=False
        )
    except OSError as exc:
        raise IPTablesError(f"could not run {argv[0]}: {exc}") from exc


class IPTablesRunner:
    """Runs iptables commands through the iptables binaries."""

    def __init__(
        self,
        executable: str = "iptables",
        save_executable: str = "iptables-save",
        run: Optional[RunFunc] = None,
    ) -> None:
        self.executable = executable
        self.save_executable = save_executable
        self._run = run or _run_command

    def _iptables(self, table: str, *args: str) -> "subprocess.CompletedProcess[str]":
        return self._run([self.executable, "-w", "-t", table, *args])

    @staticmethod
    def _fail(result: "subprocess.CompletedProcess[str]", what: str) -> IPTablesError:
        output = (result.stderr or result.stdout or "").strip()
        return IPTablesError(
            f"error {what}: exit status {result.returncode}: {output}",
            exit_status=result.returncode,
        )

    def ensure_chain(self, table: str, chain: str) -> bool:
        """Create ``chain`` if needed; return whether it already existed."""
        result = self._iptables(table, "-N", chain)
        if result.returncode == 0:
            return False
        if result.returncode == 1:
            return True
        raise self._fail(result, f"creating chain {chain!r}")

    def _rule_exists(self, table: str, chain: str, args: Sequence[str]) -> bool:
        result = self._iptables(table, "-C", chain, *args)
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise self._fail(result, f"checking rule in {chain!r}")

    def ensure_rule(self, position: str, table: str, chain: str, *args: str) -> bool:
        """Add the rule at ``position`` unless present; return whether it was."""
        if position not in (APPEND, PREPEND):
            raise ValueError(f"invalid rule position {position!r}")
        if self._rule_exists(table, chain, args):
            return True
        result = self._iptables(table, position, chain, *args)
        if result.returncode != 0:
            raise self._fail(result, f"appending rule to {chain!r}")
        return False

    def flush_chain(self, table: str, chain: str) -> None:
        """Remove every rule from ``chain``."""
        result = self._iptables(table, "-F", chain)
        if result.returncode != 0:
            raise self._fail(result, f"flushing chain {chain!r}")

    def delete_rule(self, table: str, chain: str, *args: str) -> None:
        """Delete the rule if it exists; a missing rule is not an error."""
        if not self._rule_exists(table, chain, args):
            return
        result = self._iptables(table, "-D", chain, *args)
        if result.returncode != 0:
            raise self._fail(result, f"deleting rule from {chain!r}")

    def save(self, table: str) -> str:
        """Return the ``iptables-save`` dump of ``table``."""
        result = self._run([self.save_executable, "-t", table])
        if result.returncode != 0:
            raise self._fail(result, f"saving table {table!r}")
        return result.stdout or ""


def exec_with_retry(func: Callable[[], T]) -> T:
    """Call ``func``, retrying with backoff while iptables reports a resource problem."""
    delay = BACKOFF_INITIAL
    for step in range(BACKOFF_STEPS):
        try:
            return func()
        except IPTablesError as exc:
            if not exc.is_resource_error:
                raise
            logger.debug("Call to iptables failed with transient failure: %s", exc)
        if step == BACKOFF_STEPS - 1:
            break
        time.sleep(delay)
        delay *= BACKOFF_FACTOR
    raise IPTablesError("timed out waiting for the condition")


class NodeIPTables:
    """Keeps the node's SDN iptables chains and egress IP rules in place."""

    def __init__(
        self,
        ipt: IPTablesRunner,
        cluster_network_cidr: Sequence[str],
        masquerade_services: bool,
        vxlan_port: int,
        masquerade_bit: int,
    ) -> None:
        self.ipt = ipt
        self.cluster_network_cidr = list(cluster_network_cidr)
        self.masquerade_services = masquerade_services
        self.vxlan_port = vxlan_port
        self.masquerade_bit_hex = hex(1 << masquerade_bit)
        self.egress_ips: dict[str, str] = {}
        self._lock = threading.Lock()

    def setup(self) -> None:
        """Create all chains and rules."""
        self._sync_rules()

    def _add_chain_rules(self, chain: Chain) -> bool:
        all_existed = True
        for rule in chain.rules:
            try:
                existed = exec_with_retry(
                    lambda rule=rule: self.ipt.ensure_rule(
                        APPEND, chain.table, chain.name, *rule
                    )
                )
            except IPTablesError as exc:
                raise IPTablesError(
                    f"failed to ensure rule {rule} exists: {exc}", exc.exit_status
                ) from exc
            if not existed:
                all_existed = False
        return all_existed

    def _sync_rules(self) -> None:
        with self._lock:
            start = time.monotonic()
            logger.debug("Syncing openshift iptables rules")
            try:
                # Chains are processed in reverse while prepending jump rules,
                # so chains sharing a parent run in the order chains() lists them.
                for chain in reversed(self.chains()):
                    try:
                        chain_existed = exec_with_retry(
                            lambda: self.ipt.ensure_chain(chain.table, chain.name)
                        )
                    except IPTablesError as exc:
                        raise IPTablesError(
                            f"failed to ensure chain {chain.name} exists: {exc}",
                            exc.exit_status,
                        ) from exc

                    if chain.src_chain:
                        jump = [*chain.src_rule, "-j", chain.name]
                        try:
                            exec_with_retry(
                                lambda: self.ipt.ensure_rule(
                                    PREPEND, chain.table, chain.src_chain, *jump
                                )
                            )
                        except IPTablesError as exc:
                            raise IPTablesError(
                                f"failed to ensure rule from {chain.src_chain} "
                                f"to {chain.name} exists: {exc}",
                                exc.exit_status,
                            ) from exc

                    rules_existed = self._add_chain_rules(chain)
                    if chain_existed and not rules_existed:
                        # The chain holds rules for a different configuration;
                        # flush them and start over.
                        try:
                            exec_with_retry(
                                lambda: self.ipt.flush_chain(chain.table, chain.name)
                            )
                        except IPTablesError as exc:
                            raise IPTablesError(
                                f"failed to flush chain {chain.name}: {exc}",
                                exc.exit_status,
                            ) from exc
                        self._add_chain_rules(chain)

                for egress_ip, mark in self.egress_ips.items():
                    self._ensure_egress_ip_rules(egress_ip, mark)
            finally:
                logger.debug("syncIPTableRules took %.3fs", time.monotonic() - start)

    def chains(self) -> list[Chain]:
        """Return the chains the node needs, in evaluation order."""
        chains = [
            Chain(
                table=TABLE_FILTER,
                name="OPENSHIFT-FIREWALL-ALLOW",
                src_chain="INPUT",
                src_rule=["-m", "comment", "--comment", "firewall overrides"],
                rules=[
                    ["-p", "udp", "--dport", str(self.vxlan_port), "-m", "comment",
                     "--comment", "VXLAN incoming", "-j", "ACCEPT"],
                    ["-i", TUN0, "-m", "comment", "--comment",
                     "from SDN to localhost", "-j", "ACCEPT"],
                    ["-i", "docker0", "-m", "comment", "--comment",
                     "from docker to localhost", "-j", "ACCEPT"],
                ],
            ),
            Chain(
                table=TABLE_FILTER,
                name="OPENSHIFT-ADMIN-OUTPUT-RULES",
                src_chain="FORWARD",
                src_rule=["-i", TUN0, "!", "-o", TUN0, "-m", "comment",
                          "--comment", "administrator overrides"],
            ),
        ]

        bit = self.masquerade_bit_hex
        # Skip traffic already marked by kube-proxy for masquerading.
        masq_rules = [["-m", "mark", "--mark", f"{bit}/{bit}", "-j", "RETURN"]]
        masq2_rules: list[list[str]] = []
        masq_egress_rules: list[list[str]] = []
        filter_rules: list[list[str]] = []
        for cidr in self.cluster_network_cidr:
            if self.masquerade_services:
                masq_rules.append(
                    ["-s", cidr, "-m", "comment", "--comment",
                     "masquerade pod-to-service and pod-to-external traffic",
                     "-j", "MASQUERADE"]
                )
            else:
                masq_rules.append(
                    ["-s", cidr, "-m", "comment", "--comment",
                     "masquerade pod-to-external traffic", "-j", "OPENSHIFT-MASQUERADE-2"]
                )
                masq2_rules.append(
                    ["-d", cidr, "-m", "comment", "--comment",
                     "masquerade pod-to-external traffic", "-j", "RETURN"]
                )
            masq_rules.append(
                ["-s", cidr, "-m", "comment", "--comment",
                 "egress S-NAT pod-to-external traffic", "-j", MASQUERADE_EGRESS_CHAIN]
            )
            masq_egress_rules.append(
                ["-d", cidr, "-m", "comment", "--comment",
                 "no egress S-NAT for traffic to pod", "-j", "RETURN"]
            )
            filter_rules.extend([
                ["-s", cidr, "-m", "comment", "--comment",
                 "attempted resend after connection close", "-m", "conntrack",
                 "--ctstate", "INVALID", "-j", "DROP"],
                ["-d", cidr, "-m", "comment", "--comment",
                 "forward traffic from SDN", "-j", "ACCEPT"],
                ["-s", cidr, "-m", "comment", "--comment",
                 "forward traffic to SDN", "-j", "ACCEPT"],
            ])

        chains.extend([
            Chain(
                table=TABLE_NAT,
                name="OPENSHIFT-MASQUERADE",
                src_chain="POSTROUTING",
                src_rule=["-m", "comment", "--comment",
                          "rules for masquerading OpenShift traffic"],
                rules=masq_rules,
            ),
            Chain(
                table=TABLE_NAT,
                name=MASQUERADE_EGRESS_CHAIN,
                src_rule=["-m", "comment", "--comment",
                          "rules for masquerading OpenShift traffic with EgressIP"],
                rules=masq_egress_rules,
            ),
            Chain(
                table=TABLE_FILTER,
                name="OPENSHIFT-FIREWALL-FORWARD",
                src_chain="FORWARD",
                src_rule=["-m", "comment", "--comment", "firewall overrides"],
                rules=filter_rules,
            ),
        ])
        if not self.masquerade_services:
            masq2_rules.append(["-j", "MASQUERADE"])
            chains.append(
                Chain(table=TABLE_NAT, name="OPENSHIFT-MASQUERADE-2", rules=masq2_rules)
            )

        # Block access to the machine config server; the chain is shared
        # between OUTPUT and FORWARD.
        chains.extend([
            Chain(
                table=TABLE_FILTER,
                name="OPENSHIFT-BLOCK-OUTPUT",
                src_chain="OUTPUT",
                src_rule=["-m", "comment", "--comment", "firewall overrides"],
                rules=[
                    ["-p", "tcp", "-m", "tcp", "--dport", "22623", "--syn", "-j", "REJECT"],
                    ["-p", "tcp", "-m", "tcp", "--dport", "22624", "--syn", "-j", "REJECT"],
                ],
            ),
            Chain(
                table=TABLE_FILTER,
                name="OPENSHIFT-BLOCK-OUTPUT",
                src_chain="FORWARD",
                src_rule=["-m", "comment", "--comment", "firewall overrides"],
            ),
        ])
        return chains

    @staticmethod
    def _snat_rule(egress_ip: str, mark: str) -> list[str]:
        return ["-m", "mark", "--mark", mark, "-j", "SNAT", "--to-source", egress_ip]

    @staticmethod
    def _reject_rule(egress_ip: str) -> list[str]:
        return ["-d", egress_ip, "-m", "conntrack", "--ctstate", "NEW", "-j", "REJECT"]

    def _ensure_egress_ip_rules(self, egress_ip: str, mark: str) -> None:
        snat = self._snat_rule(egress_ip, mark)
        reject = self._reject_rule(egress_ip)
        exec_with_retry(
            lambda: self.ipt.ensure_rule(APPEND, TABLE_NAT, MASQUERADE_EGRESS_CHAIN, *snat)
        )
        exec_with_retry(
            lambda: self.ipt.ensure_rule(APPEND, TABLE_FILTER, FIREWALL_ALLOW_CHAIN, *reject)
        )

    def add_egress_ip_rules(self, egress_ip: str, mark: str) -> None:
        """Add the SNAT and reject rules for ``egress_ip`` and remember them."""
        with self._lock:
            self._ensure_egress_ip_rules(egress_ip, mark)
            self.egress_ips[egress_ip] = mark

    def delete_egress_ip_rules(self, egress_ip: str, mark: str) -> None:
        """Forget ``egress_ip`` and delete its SNAT and reject rules."""
        with self._lock:
            self.egress_ips.pop(egress_ip, None)
            snat = self._snat_rule(egress_ip, mark)
            reject = self._reject_rule(egress_ip)
            exec_with_retry(
                lambda: self.ipt.delete_rule(TABLE_NAT, MASQUERADE_EGRESS_CHAIN, *snat)
            )
            exec_with_retry(
                lambda: self.ipt.delete_rule(TABLE_FILTER, FIREWALL_ALLOW_CHAIN, *reject)
            )

    def _find_stale_rules(self, table: str, pattern: re.Pattern[str]) -> dict[str, str]:
        dump = self.ipt.save(table)
        rules: dict[str, str] = {}
        for line in dump.split("\n"):
            match = pattern.search(line)
            if match:
                rules[match.group(1)] = match.group(0)
        with self._lock:
            current = set(self.egress_ips)
        return {ip: rule for ip, rule in rules.items() if ip not in current}

    def _stale_or_empty(self, table: str, pattern: re.Pattern[str]) -> dict[str, str]:
        try:
            return self._find_stale_rules(table, pattern)
        except IPTablesError as exc:
            logger.warning("Error looking for stale egress IP iptables rules: %s", exc)
            return {}

    def sync_egress_ip_rules(self) -> None:
        """Delete egress IP rules left behind for IPs no longer in use."""
        masq_rules = self._stale_or_empty(TABLE_NAT, _MASQ_RULE_RE)
        filter_rules = self._stale_or_empty(TABLE_FILTER, _FILTER_RULE_RE)

        for kind, table, chain, rules, expected_len in (
            ("masquerade", TABLE_NAT, MASQUERADE_EGRESS_CHAIN, masq_rules, 12),
            ("filter", TABLE_FILTER, FIREWALL_ALLOW_CHAIN, filter_rules, 10),
        ):
            for ip, rule in rules.items():
                logger.debug("Deleting iptables %s rule for stale egress IP %s", kind, ip)
                args = rule.split(" ")
                if len(args) != expected_len:
                    logger.warning(
                        "Error deleting iptables %s rule for stale egress IP %s: "
                        "unexpected rule format %r", kind, ip, rule,
                    )
                    continue
                rule_args = args[2:]
                try:
                    exec_with_retry(
                        lambda: self.ipt.delete_rule(table, chain, *rule_args)
                    )
                except IPTablesError as exc:
                    logger.warning(
                        "Error deleting iptables %s rule for stale egress IP %s: %s",
                        kind, ip, exc,
                    )