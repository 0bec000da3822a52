"""System package convergence through ``apt-get``."""
from __future__ import annotations

from collections.abc import Sequence

from .base import Reconciler, StepContext

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class PackageSet(Reconciler):
    """Ensure *packages* are installed, optionally upgrading and tidying up."""

    name = "packages"

    def __init__(
        self,
        packages: Sequence[str] = (),
        *,
        upgrade: bool = False,
        autoremove: bool = False,
        clean: bool = False,
    ) -> None:
        """Describe the desired package state."""
        self.packages = list(packages)
        self.upgrade = upgrade
        self.autoremove = autoremove
        self.clean = clean

    def commands(self) -> list[list[str]]:
        """Return the ``apt-get`` invocations in execution order."""
        commands = [["apt-get", "update"]]
        if self.upgrade:
            commands.append(["apt-get", "upgrade", "-y"])
            commands.append(["apt-get", "dist-upgrade", "-y"])
        if self.packages:
            commands.append(["apt-get", "install", "-y", *self.packages])
        if self.autoremove:
            commands.append(["apt-get", "autoremove", "-y"])
        if self.clean:
            commands.append(["apt-get", "clean"])
        return commands

    def converge(self, ctx: StepContext) -> None:
        """Run each ``apt-get`` command non-interactively."""
        for argv in self.commands():
            ctx.run(argv, env=APT_ENV)


__all__ = ["PackageSet"]
