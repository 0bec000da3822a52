"""Node.js runtime installed through nvm for root and the deploy user."""
from __future__ import annotations

import shlex
from collections.abc import Sequence

from .base import Reconciler, StepContext

NVM_PRELUDE = 'export NVM_DIR="$HOME/.nvm"; source "$NVM_DIR/nvm.sh"; '


class RuntimeInstall(Reconciler):
    """Install the current Node LTS and global npm packages for two accounts."""

    name = "runtime"

    def __init__(
        self,
        global_packages: Sequence[str] = (),
        *,
        user: str = "deploy",
        nvm_version: str = "v0.40.3",
    ) -> None:
        """Describe the runtime to install."""
        self.global_packages = list(global_packages)
        self.user = user
        self.nvm_version = nvm_version

    def scripts(self) -> list[str]:
        """Return the login-shell snippets run for each account, in order."""
        installer = (
            "https://raw.githubusercontent.com/nvm-sh/nvm/"
            f"{self.nvm_version}/install.sh"
        )
        scripts = [
            f"curl -o- {installer} | bash",
            NVM_PRELUDE + "nvm install --lts",
            NVM_PRELUDE + "node -v && npm -v",
        ]
        if self.global_packages:
            packages = " ".join(shlex.quote(package) for package in self.global_packages)
            scripts.append(NVM_PRELUDE + f"npm install -g {packages}")
        return scripts

    def converge(self, ctx: StepContext) -> None:
        """Run every snippet as root and then as the deploy user."""
        for script in self.scripts():
            ctx.run(["bash", "-lc", script])
            ctx.run(["sudo", "-u", self.user, "-H", "bash", "-lc", script])


__all__ = ["RuntimeInstall"]
