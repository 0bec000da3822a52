"""Converge ``ufw`` to an exact set of allowed inbound TCP ports."""
from __future__ import annotations

import logging
from collections.abc import Iterable

from ..runner import require_tool
from .base import Reconciler, StepContext
from .ufw import FirewallPlan, normalise_ports, parse_numbered, parse_status, plan_changes

LOGGER = logging.getLogger(__name__)


class FirewallPolicy(Reconciler):
    """Allow exactly the desired TCP ports (v4 and v6) and nothing else inbound.

    When ufw is inactive every desired port is allowed *before* the firewall
    is enabled, so enabling its default-deny policy can never cut off the
    connection the operator is using.
    """

    name = "firewall"

    def __init__(self, allowed_tcp_ports: Iterable[int]) -> None:
        """Record the desired port set (deduplicated, order-independent)."""
        self.allowed_tcp_ports = normalise_ports(allowed_tcp_ports)
        self.last_plan: FirewallPlan | None = None

    def converge(self, ctx: StepContext) -> None:
        """Apply the bootstrap allows, deletions and additions."""
        require_tool(ctx.runner, "ufw")

        status = ctx.run(["ufw", "status"], capture=True)
        if not parse_status(status.stdout):
            for port in self.allowed_tcp_ports:
                ctx.run(["ufw", "allow", f"{port}/tcp"])
            ctx.run(["ufw", "--force", "enable"])

        listing = ctx.run(["ufw", "status", "numbered"], capture=True)
        plan = plan_changes(parse_numbered(listing.stdout), self.allowed_tcp_ports)
        self.last_plan = plan
        LOGGER.info(
            "Firewall plan: delete %s, add %s",
            plan.delete or "nothing",
            plan.add or "nothing",
        )

        for number in plan.delete:
            ctx.run(["ufw", "--force", "delete", str(number)])
        for port in plan.add:
            ctx.run(["ufw", "allow", f"{port}/tcp"])

        ctx.run(["ufw", "status", "verbose"])


__all__ = ["FirewallPolicy"]
