"""Convergence tests for the firewall reconciler against a simulated ufw."""
from __future__ import annotations

import shlex
from pathlib import Path

import pytest
from conftest import FakeRunner

from shipctl.config import load_config
from shipctl.errors import ToolMissingError
from shipctl.reconcile import FirewallPolicy, Pipeline, PipelineState
from shipctl.reconcile.machine import desired_ports
from shipctl.runner import CommandResult


class FakeUfw:
    """Minimal ufw: v4 rules are listed before v6 rules and renumber on delete."""

    def __init__(
        self,
        *,
        active: bool = True,
        rules: list[tuple[str, bool]] | None = None,
    ) -> None:
        self.active = active
        self.rules: list[tuple[str, bool]] = list(rules or [])

    def ordered(self) -> list[tuple[str, bool]]:
        return [rule for rule in self.rules if not rule[1]] + [
            rule for rule in self.rules if rule[1]
        ]

    def listing(self) -> str:
        if not self.active:
            return "Status: inactive\n"
        lines = [
            "Status: active",
            "",
            "     To                         Action      From",
            "     --                         ------      ----",
        ]
        for number, (to, v6) in enumerate(self.ordered(), start=1):
            target = f"{to} (v6)" if v6 else to
            source = "Anywhere (v6)" if v6 else "Anywhere"
            lines.append(f"[{number:2d}] {target:<27}ALLOW IN    {source}")
        return "\n".join(lines) + "\n"

    def __call__(self, argv: list[str]) -> CommandResult | None:
        command = shlex.join(argv)
        if argv[:2] == ["sh", "-c"]:
            return CommandResult(command, 0, "/usr/sbin/ufw\n")
        if argv[0] != "ufw":
            return None
        args = argv[1:]
        if args == ["status"]:
            state = "active" if self.active else "inactive"
            return CommandResult(command, 0, f"Status: {state}\n")
        if args == ["status", "numbered"]:
            return CommandResult(command, 0, self.listing())
        if args == ["--force", "enable"]:
            self.active = True
        elif args[0] == "allow":
            for v6 in (False, True):
                if (args[1], v6) not in self.rules:
                    self.rules.append((args[1], v6))
        elif args[:2] == ["--force", "delete"]:
            doomed = self.ordered()[int(args[2]) - 1]
            self.rules.remove(doomed)
        return CommandResult(command, 0, "")


def _converge(ufw: FakeUfw, ports: list[int]) -> tuple[FakeRunner, FirewallPolicy]:
    runner = FakeRunner()
    runner.respond(ufw)
    policy = FirewallPolicy(ports)
    run = Pipeline([policy]).run(runner)
    run.raise_for_error()
    assert run.state is PipelineState.CONVERGED
    return runner, policy


def _mutations(runner: FakeRunner) -> list[list[str]]:
    return [
        argv
        for argv in runner.commands
        if argv[:2] in (["ufw", "allow"], ["ufw", "--force"])
    ]


def test_inactive_firewall_allows_ports_before_enabling() -> None:
    """Every desired port is allowed before the default-deny policy is enabled."""
    ufw = FakeUfw(active=False)

    runner, _ = _converge(ufw, [22, 80, 443])

    commands = runner.commands
    enable = commands.index(["ufw", "--force", "enable"])
    allows = [index for index, argv in enumerate(commands) if argv[:2] == ["ufw", "allow"]]
    assert allows
    assert max(allows) < enable
    assert commands[allows[0]] == ["ufw", "allow", "22/tcp"]
    assert sorted(ufw.rules) == sorted(
        (f"{port}/tcp", v6) for port in (22, 80, 443) for v6 in (False, True)
    )
    assert commands[-1] == ["ufw", "status", "verbose"]


def test_converges_to_exact_port_set() -> None:
    """Unmanaged allows are removed and only the desired ports remain."""
    ufw = FakeUfw(
        rules=[
            ("22/tcp", False),
            ("OpenSSH", False),
            ("8080/tcp", False),
            ("22/tcp", True),
            ("8080/tcp", True),
        ]
    )

    _, policy = _converge(ufw, [22, 80, 443])

    assert policy.last_plan is not None
    assert policy.last_plan.delete == [5, 3, 2]
    assert policy.last_plan.add == [80, 443]
    assert sorted(ufw.rules) == sorted(
        (f"{port}/tcp", v6) for port in (22, 80, 443) for v6 in (False, True)
    )


def test_duplicates_are_removed_highest_number_first() -> None:
    """Duplicate keys at 3 and 7 are deleted as 7 then 3 so numbering holds."""
    ufw = FakeUfw(
        rules=[
            ("22/tcp", False),
            ("80/tcp", False),
            ("80/tcp", False),
            ("443/tcp", False),
            ("22/tcp", True),
            ("80/tcp", True),
            ("80/tcp", True),
            ("443/tcp", True),
        ]
    )

    runner, _ = _converge(ufw, [22, 80, 443])

    assert _mutations(runner) == [
        ["ufw", "--force", "delete", "7"],
        ["ufw", "--force", "delete", "3"],
    ]
    assert len(ufw.rules) == 6


def test_second_run_is_a_no_op() -> None:
    """Once converged, re-running issues no mutating commands."""
    ufw = FakeUfw(active=False)
    _converge(ufw, [22, 80, 443])

    runner, policy = _converge(ufw, [443, 22, 80])

    assert policy.last_plan is not None
    assert policy.last_plan.empty is True
    assert _mutations(runner) == []


def test_missing_ufw_fails_the_step() -> None:
    """A host without ufw fails with ToolMissingError before any change."""
    runner = FakeRunner()
    runner.on(["sh", "-c"], returncode=1)

    run = Pipeline([FirewallPolicy([22])]).run(runner)

    assert run.state is PipelineState.FAILED
    assert isinstance(run.error, ToolMissingError)
    assert all(argv[0] != "ufw" for argv in runner.commands)


def test_desired_ports_include_ssh_port(tmp_path: Path) -> None:
    """The port the operator connects on is never dropped from the policy."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={"ssh": {"port": 2222}, "firewall": {"allowed_tcp_ports": [80, 443]}},
    )

    assert desired_ports(config) == [80, 443, 2222]


@pytest.mark.parametrize("ports", [[22, 22, 80], [80, 22]])
def test_policy_normalises_ports(ports: list[int]) -> None:
    """Port order and duplicates do not matter."""
    assert FirewallPolicy(ports).allowed_tcp_ports == [22, 80]
