"""Opaque, already-idempotent shell scripts run as one reconciliation step."""
from __future__ import annotations

from collections.abc import Mapping
from importlib import resources

from .base import Reconciler, StepContext

BUNDLED_SCRIPTS = (
    "setup_sshd_config.sh",
    "setup_fail2ban.sh",
    "setup_fzf.sh",
    "install_docker.sh",
    "reboot_if_required.sh",
)


def load_script(filename: str) -> str:
    """Return the text of a script shipped inside the package."""
    if filename not in BUNDLED_SCRIPTS:
        raise KeyError(f"Unknown bundled script: {filename}")
    resource = resources.files("shipctl.reconcile").joinpath("scripts", filename)
    return resource.read_text(encoding="utf-8")


class RawScript(Reconciler):
    """Run *script* with ``bash -euxo pipefail -c``."""

    def __init__(
        self,
        name: str,
        script: str,
        *,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Describe the script and any environment it expects."""
        self.name = name
        self.script = script
        self.env = dict(env or {})

    @classmethod
    def bundled(
        cls,
        name: str,
        filename: str,
        *,
        env: Mapping[str, str] | None = None,
    ) -> RawScript:
        """Build a step from one of the scripts shipped with shipctl."""
        return cls(name, load_script(filename), env=env)

    def converge(self, ctx: StepContext) -> None:
        """Execute the script; a non-zero exit fails the step."""
        ctx.run(["bash", "-euxo", "pipefail", "-c", self.script], env=self.env or None)


__all__ = ["BUNDLED_SCRIPTS", "RawScript", "load_script"]
