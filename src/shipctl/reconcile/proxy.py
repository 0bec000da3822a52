"""Shared Caddy reverse proxy running as its own compose project."""
from __future__ import annotations

from pathlib import PurePosixPath

from ..config import ProxyConfig
from ..templates import TemplateEngine
from .base import Reconciler, StepContext

COMPOSE_TEMPLATE = "caddy/compose.yml.j2"
CADDYFILE_TEMPLATE = "caddy/Caddyfile.j2"


class ProxyInstall(Reconciler):
    """Lay out the proxy directory, render its files and start the container.

    The image tag comes from configuration; the proxy version is pinned
    rather than discovered at install time.
    """

    name = "proxy"

    def __init__(
        self,
        proxy: ProxyConfig,
        templates: TemplateEngine,
        *,
        file_mode: int = 0o644,
        site_owner: str | None = None,
    ) -> None:
        """Bind the reconciler to proxy settings and the template engine."""
        self.proxy = proxy
        self.templates = templates
        self.file_mode = file_mode
        self.site_owner = site_owner

    def context(self) -> dict[str, object]:
        """Return the variables passed to the proxy templates."""
        return {
            "service": self.proxy.service,
            "image": self.proxy.image,
            "version": self.proxy.version,
            "network": self.proxy.network,
            "config_path": self.proxy.config_path,
            "sites_path": str(PurePosixPath(self.proxy.config_path).parent / "sites-enabled"),
        }

    def converge(self, ctx: StepContext) -> None:
        """Render files, ensure the network and bring the proxy up."""
        root = self.proxy.root
        for directory in (root, self.proxy.sites_dir, root / "data", root / "config"):
            ctx.run(["mkdir", "-p", str(directory)])
        if self.site_owner:
            # Releases run as the deploy user and drop their site file here.
            ctx.run(["chown", f"{self.site_owner}:{self.site_owner}", str(self.proxy.sites_dir)])

        context = self.context()
        ctx.check_cancelled()
        caddyfile_changed = self.templates.render_to_path(
            CADDYFILE_TEMPLATE, root / "Caddyfile", context, mode=self.file_mode
        )
        self.templates.render_to_path(
            COMPOSE_TEMPLATE, root / "compose.yml", context, mode=self.file_mode
        )

        network = self.proxy.network
        inspect = ctx.run(["docker", "network", "inspect", network], check=False, capture=True)
        if not inspect.ok:
            ctx.run(["docker", "network", "create", network])

        ctx.run(["docker", "compose", "pull"], cwd=root)
        up = ["docker", "compose", "up", "-d"]
        if caddyfile_changed:
            # The Caddyfile is a single-file bind mount; a replaced file only
            # reaches the container when it is recreated.
            up.append("--force-recreate")
        ctx.run(up, cwd=root)
        ctx.run(
            ["docker", "compose", "exec", "-T", self.proxy.service, "caddy", "version"],
            cwd=root,
        )


__all__ = ["ProxyInstall"]
