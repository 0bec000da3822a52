"""Parsing and planning for ``ufw`` rule listings.

``ufw`` has no structured output, so its text is the integration boundary.
This module keeps the grammar in one place and stays free of I/O:

* :func:`parse_status` reads the ``Status:`` line of ``ufw status``.
* :func:`parse_numbered` turns ``ufw status numbered`` into
  :class:`FirewallRule` records. Lines that are not rules are ignored.
* :func:`plan_changes` diffs those records against the desired TCP ports.

A numbered listing looks like::

    Status: active

         To                         Action      From
         --                         ------      ----
    [ 1] 22/tcp                     ALLOW IN    Anywhere
    [ 2] OpenSSH                    ALLOW IN    Anywhere
    [ 3] 80/tcp (v6)                ALLOW IN    Anywhere (v6)
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..errors import ParseError

ACTIONS = frozenset({"allow", "deny", "reject", "limit"})
DIRECTIONS = frozenset({"in", "out", "fwd"})
V6_MARKER = "(v6)"

_PORT_RE = re.compile(r"^(?P<port>\d+)(?:/(?P<proto>[A-Za-z]+))?$")
_RANGE_RE = re.compile(r"^\d+:\d+(?:/(?P<proto>[A-Za-z]+))?$")


@dataclass(frozen=True)
class FirewallRule:
    """One numbered rule from ``ufw status numbered``."""

    number: int
    to: str
    action: str
    direction: str = ""
    source: str = ""
    v6: bool = False
    port: int = 0
    protocol: str = ""
    is_range: bool = False
    service: str = ""

    @property
    def key(self) -> tuple[int, bool]:
        """Return the ``(port, v6)`` identity used for managed rules."""
        return (self.port, self.v6)


@dataclass
class FirewallPlan:
    """Deletions and additions that converge the rule set."""

    delete: list[int] = field(default_factory=list)
    add: list[int] = field(default_factory=list)
    kept: dict[tuple[int, bool], int] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        """Return ``True`` when nothing needs to change."""
        return not self.delete and not self.add


def parse_status(text: str) -> bool:
    """Return ``True`` if *text* reports an active firewall.

    Raises :class:`ParseError` when the status cannot be determined.
    """
    for raw in text.splitlines():
        line = raw.strip().lower()
        if not line.startswith("status:"):
            continue
        if "inactive" in line:
            return False
        if "active" in line:
            return True
        raise ParseError(f"Unexpected ufw status line: {raw.strip()!r}")
    raise ParseError(f"Could not determine ufw status from output: {text.strip()!r}")


def parse_numbered(text: str) -> list[FirewallRule]:
    """Parse ``ufw status numbered`` output into rules."""
    rules: list[FirewallRule] = []
    for raw in text.splitlines():
        rule = parse_rule_line(raw)
        if rule is not None:
            rules.append(rule)
    return rules


def parse_rule_line(raw: str) -> FirewallRule | None:
    """Parse a single listing line, returning ``None`` for non-rule lines."""
    line = raw.strip()
    if not line.startswith("["):
        return None
    close = line.find("]")
    if close == -1:
        return None
    try:
        number = int(line[1:close].strip())
    except ValueError:
        return None

    tokens = line[close + 1 :].split()
    action_index = next(
        (index for index, token in enumerate(tokens) if token.lower() in ACTIONS),
        None,
    )
    if not action_index:
        # No action column, or nothing before it to serve as the target.
        return None

    to_tokens = tokens[:action_index]
    action = tokens[action_index].lower()
    rest = tokens[action_index + 1 :]
    direction = ""
    if rest and rest[0].lower() in DIRECTIONS:
        direction = rest[0].lower()
        rest = rest[1:]
    source = " ".join(rest)

    v6 = V6_MARKER in to_tokens or V6_MARKER in source
    to = " ".join(token for token in to_tokens if token != V6_MARKER)

    port = 0
    protocol = ""
    is_range = False
    service = ""
    port_match = _PORT_RE.match(to)
    range_match = _RANGE_RE.match(to)
    if port_match:
        port = int(port_match.group("port"))
        protocol = (port_match.group("proto") or "").lower()
    elif range_match:
        is_range = True
        protocol = (range_match.group("proto") or "").lower()
    else:
        service = to

    return FirewallRule(
        number=number,
        to=to,
        action=action,
        direction=direction,
        source=source,
        v6=v6,
        port=port,
        protocol=protocol,
        is_range=is_range,
        service=service,
    )


def normalise_ports(ports: Iterable[int]) -> list[int]:
    """Return the positive, unique *ports* in ascending order."""
    return sorted({int(port) for port in ports if int(port) > 0})


def plan_changes(rules: Iterable[FirewallRule], desired_ports: Iterable[int]) -> FirewallPlan:
    """Compute the deletions and additions that converge *rules*.

    Only ``allow`` rules whose direction is ``in`` (or absent) are managed.
    Within that group, a plain TCP port rule whose ``(port, v6)`` key is
    desired is kept; the first rule number per key survives and later
    duplicates are deleted. Every other managed-group rule is deleted,
    including named services, ranges, other protocols and undesired ports.
    Deletions are returned highest number first so earlier deletions do not
    renumber pending ones.
    """
    ports = normalise_ports(desired_ports)
    wanted = {(port, v6) for port in ports for v6 in (False, True)}

    seen: dict[tuple[int, bool], list[int]] = {}
    delete: list[int] = []
    for rule in rules:
        if rule.action != "allow" or rule.direction not in ("", "in"):
            continue
        if (
            rule.protocol == "tcp"
            and not rule.is_range
            and not rule.service
            and rule.port > 0
            and rule.key in wanted
        ):
            seen.setdefault(rule.key, []).append(rule.number)
            continue
        delete.append(rule.number)

    kept: dict[tuple[int, bool], int] = {}
    for key, numbers in seen.items():
        kept[key] = numbers[0]
        delete.extend(numbers[1:])

    missing = wanted - set(seen)
    add = sorted({port for port, _ in missing})
    return FirewallPlan(delete=sorted(set(delete), reverse=True), add=add, kept=kept)


__all__ = [
    "FirewallPlan",
    "FirewallRule",
    "normalise_ports",
    "parse_numbered",
    "parse_rule_line",
    "parse_status",
    "plan_changes",
]
