"""Pipelines for ``machine up`` and ``machine maintain``."""
from __future__ import annotations

from ..config import AppConfig
from ..templates import TemplateEngine
from .base import Reconciler
from .firewall import FirewallPolicy
from .packages import PackageSet
from .pipeline import Pipeline
from .proxy import ProxyInstall
from .raw_script import RawScript
from .runtime import RuntimeInstall

DOCKER_PRUNE = "docker system prune -f --filter until=168h"


def desired_ports(config: AppConfig) -> list[int]:
    """Return configured firewall ports plus the SSH port in use."""
    return sorted({*config.firewall.allowed_tcp_ports, config.ssh.port})


def build_up_pipeline(config: AppConfig, templates: TemplateEngine) -> Pipeline:
    """Return the steps that bring a fresh machine to a known-good state."""
    script_env = {
        "SSH_PORT": str(config.ssh.port),
        "DEPLOY_USER": config.agent.deploy_user,
    }
    steps: list[Reconciler] = [
        PackageSet(config.packages.names, upgrade=config.packages.upgrade),
        FirewallPolicy(desired_ports(config)),
        RawScript.bundled("sshd", "setup_sshd_config.sh", env=script_env),
        RawScript.bundled("fail2ban", "setup_fail2ban.sh", env=script_env),
        RawScript.bundled("fzf", "setup_fzf.sh"),
        RawScript.bundled("docker", "install_docker.sh", env=script_env),
        ProxyInstall(
            config.proxy,
            templates,
            file_mode=config.permissions.site_file,
            site_owner=config.agent.deploy_user,
        ),
        RuntimeInstall(
            config.runtime.global_packages,
            user=config.runtime.user,
            nvm_version=config.runtime.nvm_version,
        ),
    ]
    return Pipeline(steps)


def build_maintain_pipeline(*, allow_reboot: bool = False) -> Pipeline:
    """Return the routine maintenance steps; rebooting is opt-in."""
    steps: list[Reconciler] = [
        PackageSet(upgrade=True, autoremove=True, clean=True),
        RawScript("docker-prune", DOCKER_PRUNE),
    ]
    if allow_reboot:
        steps.append(RawScript.bundled("reboot", "reboot_if_required.sh"))
    return Pipeline(steps)


__all__ = ["build_maintain_pipeline", "build_up_pipeline", "desired_ports"]
