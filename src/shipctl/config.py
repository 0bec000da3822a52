"""Configuration loader for shipctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/shipctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SHIPCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SHIPCTL_SSH__PORT=2222
    export SHIPCTL_PERMISSIONS__SECRETS_DIR=0700

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

Directory and file permission bits are deliberately configuration rather
than constants: see :class:`PermissionPolicy`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import ShipError
from .exit_codes import ExitCode

ENV_PREFIX = "SHIPCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(ShipError):
    """Raised when configuration parsing fails."""

    exit_code = ExitCode.VALIDATION


@dataclass(frozen=True)
class SSHConfig:
    """Connection settings for the target machine."""

    user: str = "deploy"
    port: int = 22
    key_file: Path | None = None
    connect_timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "port": self.port,
            "key_file": str(self.key_file) if self.key_file else None,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class AgentConfig:
    """Where and how the machine-side executor is installed."""

    version: str | None = None
    channel: str = "auto"
    deploy_user: str = "deploy"
    deploy_dir: Path = Path("/home/deploy/.shipctl")
    root_dir: Path = Path("/root/.shipctl")
    lock_dir: Path = Path("/tmp")
    install_lock_timeout: float = 5.0
    release_url: str = (
        "https://github.com/shipctl/shipctl/releases/download/"
        "v{version}/shipctl_agent_linux_amd64.tar.gz"
    )
    source_dir: Path | None = None
    interpreter: str = "/usr/bin/env python3"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "channel": self.channel,
            "deploy_user": self.deploy_user,
            "deploy_dir": str(self.deploy_dir),
            "root_dir": str(self.root_dir),
            "lock_dir": str(self.lock_dir),
            "install_lock_timeout": self.install_lock_timeout,
            "release_url": self.release_url,
            "source_dir": str(self.source_dir) if self.source_dir else None,
            "interpreter": self.interpreter,
        }


@dataclass(frozen=True)
class PermissionPolicy:
    """Permission bits applied to release and shared-state paths.

    Shared roots are create-if-absent: an existing directory with different
    bits is corrected, never recreated.
    """

    app_dir: int = 0o755
    volumes_dir: int = 0o755
    secrets_dir: int = 0o750
    secret_file: int = 0o640
    site_file: int = 0o644

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "app_dir": f"{self.app_dir:04o}",
            "volumes_dir": f"{self.volumes_dir:04o}",
            "secrets_dir": f"{self.secrets_dir:04o}",
            "secret_file": f"{self.secret_file:04o}",
            "site_file": f"{self.site_file:04o}",
        }


@dataclass(frozen=True)
class FirewallConfig:
    """Ports that must stay reachable once the firewall is enabled."""

    allowed_tcp_ports: tuple[int, ...] = (22, 80, 443)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"allowed_tcp_ports": list(self.allowed_tcp_ports)}


@dataclass(frozen=True)
class PackagesConfig:
    """System packages installed by ``machine up``."""

    names: tuple[str, ...] = (
        "ca-certificates",
        "curl",
        "fail2ban",
        "jq",
        "tree",
        "ufw",
        "unzip",
    )
    upgrade: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"names": list(self.names), "upgrade": self.upgrade}


@dataclass(frozen=True)
class ProxyConfig:
    """Shared reverse proxy (Caddy) running in its own compose project."""

    root: Path = Path("/opt/caddy")
    service: str = "caddy"
    config_path: str = "/etc/caddy/Caddyfile"
    image: str = "caddy"
    version: str = "2"
    network: str = "caddy"

    @property
    def sites_dir(self) -> Path:
        """Directory holding one site file per application."""
        return self.root / "sites-enabled"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "service": self.service,
            "config_path": self.config_path,
            "image": self.image,
            "version": self.version,
            "network": self.network,
        }


@dataclass(frozen=True)
class RuntimeConfig:
    """Language runtime installed for root and the deploy user."""

    user: str = "deploy"
    nvm_version: str = "v0.40.3"
    global_packages: tuple[str, ...] = ("npm@latest",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "nvm_version": self.nvm_version,
            "global_packages": list(self.global_packages),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for shipctl."""

    config_file: Path
    apps_root: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    ssh: SSHConfig
    agent: AgentConfig
    permissions: PermissionPolicy
    firewall: FirewallConfig
    packages: PackagesConfig
    proxy: ProxyConfig
    runtime: RuntimeConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "apps_root": str(self.apps_root),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "ssh": self.ssh.to_dict(),
            "agent": self.agent.to_dict(),
            "permissions": self.permissions.to_dict(),
            "firewall": self.firewall.to_dict(),
            "packages": self.packages.to_dict(),
            "proxy": self.proxy.to_dict(),
            "runtime": self.runtime.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/shipctl/config.yml",
    "apps_root": "/home/deploy/apps",
    "logs_dir": "~/.local/state/shipctl/logs",
    "runtime_dir": "/tmp/shipctl",
    "templates_dir": "/etc/shipctl/templates",
    "lock_timeout": 30.0,
    "ssh": {
        "user": "deploy",
        "port": 22,
        "key_file": None,
        "connect_timeout": 10.0,
    },
    "agent": {
        "version": None,
        "channel": "auto",
        "deploy_user": "deploy",
        "deploy_dir": "/home/deploy/.shipctl",
        "root_dir": "/root/.shipctl",
        "lock_dir": "/tmp",
        "install_lock_timeout": 5.0,
        "release_url": AgentConfig.release_url,
        "source_dir": None,
        "interpreter": "/usr/bin/env python3",
    },
    "permissions": {
        "app_dir": "0755",
        "volumes_dir": "0755",
        "secrets_dir": "0750",
        "secret_file": "0640",
        "site_file": "0644",
    },
    "firewall": {
        "allowed_tcp_ports": [22, 80, 443],
    },
    "packages": {
        "names": list(PackagesConfig.names),
        "upgrade": True,
    },
    "proxy": {
        "root": "/opt/caddy",
        "service": "caddy",
        "config_path": "/etc/caddy/Caddyfile",
        "image": "caddy",
        "version": "2",
        "network": "caddy",
    },
    "runtime": {
        "user": "deploy",
        "nvm_version": "v0.40.3",
        "global_packages": ["npm@latest"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}
ALLOWED_AGENT_CHANNELS = {"auto", "dev", "release"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    if isinstance(data.get("permissions"), Mapping):
        # Modes are octal whether or not they carry a leading zero, so keep the
        # scalars as written instead of PyYAML's decimal or YAML 1.1 octal ints.
        raw = yaml.load(text, Loader=yaml.BaseLoader) or {}
        data = {**data, "permissions": raw["permissions"]}
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    agent = _as_dict(raw.get("agent"), "agent")
    channel = agent.get("channel")
    if channel is not None and str(channel) not in ALLOWED_AGENT_CHANNELS:
        allowed_channels = ", ".join(sorted(ALLOWED_AGENT_CHANNELS))
        raise ConfigError(
            f"Unsupported agent channel '{channel}'. Allowed: {allowed_channels}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    ssh_map = _as_dict(raw.get("ssh"), "ssh")
    key_file_value = ssh_map.get("key_file")
    ssh = SSHConfig(
        user=_expect_nonempty_str(ssh_map.get("user"), "ssh.user", default="deploy"),
        port=_expect_port(ssh_map.get("port"), "ssh.port", default=22),
        key_file=_to_path(key_file_value) if key_file_value else None,
        connect_timeout=_expect_positive_float(
            ssh_map.get("connect_timeout"), "ssh.connect_timeout", default=10.0
        ),
    )

    agent_map = _as_dict(raw.get("agent"), "agent")
    source_dir_value = agent_map.get("source_dir")
    release_url = str(agent_map.get("release_url") or AgentConfig.release_url)
    if "{version}" not in release_url:
        raise ConfigError("agent.release_url must contain a '{version}' placeholder.")
    version_value = agent_map.get("version")
    agent = AgentConfig(
        version=str(version_value) if version_value is not None else None,
        channel=str(agent_map.get("channel", "auto")),
        deploy_user=_expect_nonempty_str(
            agent_map.get("deploy_user"), "agent.deploy_user", default="deploy"
        ),
        deploy_dir=_to_path(agent_map.get("deploy_dir")),
        root_dir=_to_path(agent_map.get("root_dir")),
        lock_dir=_to_path(agent_map.get("lock_dir")),
        install_lock_timeout=_expect_positive_float(
            agent_map.get("install_lock_timeout"), "agent.install_lock_timeout", default=5.0
        ),
        release_url=release_url,
        source_dir=_to_path(source_dir_value) if source_dir_value else None,
        interpreter=_expect_nonempty_str(
            agent_map.get("interpreter"), "agent.interpreter", default="/usr/bin/env python3"
        ),
    )

    perm_map = _as_dict(raw.get("permissions"), "permissions")
    defaults = PermissionPolicy()
    permissions = PermissionPolicy(
        app_dir=_parse_permission_mode(
            perm_map.get("app_dir", f"{defaults.app_dir:04o}"), "permissions.app_dir"
        ),
        volumes_dir=_parse_permission_mode(
            perm_map.get("volumes_dir", f"{defaults.volumes_dir:04o}"),
            "permissions.volumes_dir",
        ),
        secrets_dir=_parse_permission_mode(
            perm_map.get("secrets_dir", f"{defaults.secrets_dir:04o}"),
            "permissions.secrets_dir",
        ),
        secret_file=_parse_permission_mode(
            perm_map.get("secret_file", f"{defaults.secret_file:04o}"),
            "permissions.secret_file",
        ),
        site_file=_parse_permission_mode(
            perm_map.get("site_file", f"{defaults.site_file:04o}"), "permissions.site_file"
        ),
    )

    firewall_map = _as_dict(raw.get("firewall"), "firewall")
    ports_raw = firewall_map.get("allowed_tcp_ports")
    ports: list[int] = []
    if ports_raw is not None:
        for index, entry in enumerate(_as_sequence(ports_raw, "firewall.allowed_tcp_ports")):
            ports.append(
                _expect_port(entry, f"firewall.allowed_tcp_ports[{index}]", default=0)
            )
    firewall = FirewallConfig(allowed_tcp_ports=tuple(ports))

    packages_map = _as_dict(raw.get("packages"), "packages")
    names_raw = packages_map.get("names")
    names = (
        tuple(str(item) for item in _as_sequence(names_raw, "packages.names"))
        if names_raw is not None
        else PackagesConfig.names
    )
    packages = PackagesConfig(names=names, upgrade=bool(packages_map.get("upgrade", True)))

    proxy_map = _as_dict(raw.get("proxy"), "proxy")
    proxy = ProxyConfig(
        root=_to_path(proxy_map.get("root")),
        service=_expect_nonempty_str(proxy_map.get("service"), "proxy.service", default="caddy"),
        config_path=_expect_nonempty_str(
            proxy_map.get("config_path"), "proxy.config_path", default="/etc/caddy/Caddyfile"
        ),
        image=_expect_nonempty_str(proxy_map.get("image"), "proxy.image", default="caddy"),
        version=_expect_nonempty_str(proxy_map.get("version"), "proxy.version", default="2"),
        network=_expect_nonempty_str(proxy_map.get("network"), "proxy.network", default="caddy"),
    )

    runtime_map = _as_dict(raw.get("runtime"), "runtime")
    global_raw = runtime_map.get("global_packages")
    global_packages = (
        tuple(str(item) for item in _as_sequence(global_raw, "runtime.global_packages"))
        if global_raw is not None
        else RuntimeConfig.global_packages
    )
    runtime = RuntimeConfig(
        user=_expect_nonempty_str(runtime_map.get("user"), "runtime.user", default="deploy"),
        nvm_version=_expect_nonempty_str(
            runtime_map.get("nvm_version"), "runtime.nvm_version", default="v0.40.3"
        ),
        global_packages=global_packages,
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        apps_root=_to_path(raw.get("apps_root")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        ssh=ssh,
        agent=agent,
        permissions=permissions,
        firewall=firewall,
        packages=packages,
        proxy=proxy,
        runtime=runtime,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if path_segments[0] == "permissions":
            # Keep "0700" as text; parsed as octal by the permission validator.
            _assign_nested(overrides, path_segments, value.strip())
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return [value]
    if isinstance(value, str):
        # Environment overrides arrive as "22,80,443" or "22 80 443".
        return [part for part in value.replace(",", " ").split() if part]
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _parse_permission_mode(value: object, label: str) -> int:
    if value is None:
        raise ConfigError(f"{label} must be specified.")
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an octal integer string. Got boolean {value!r}.")
    if isinstance(value, int):
        # Programmatic overrides may pass modes as ints such as 0o750.
        if value < 0 or value > 0o777:
            raise ConfigError(
                f"{label} must be between 0000 and 0777 inclusive; quote octal strings."
            )
        return value
    if isinstance(value, str):
        text = value.strip().lower()
    else:
        raise ConfigError(f"{label} must be an octal integer or string.")
    if not text:
        raise ConfigError(f"{label} must be an octal integer string.")
    if text.startswith("0o"):
        text = text[2:]
    try:
        mode = int(text, 8)
    except ValueError as exc:
        raise ConfigError(f"{label} must be an octal integer string.") from exc
    if mode < 0 or mode > 0o777:
        raise ConfigError(f"{label} must be between 0000 and 0777 inclusive.")
    return mode


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if port < 1 or port > 65535:
        raise ConfigError(f"{label} must be a TCP port between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_nonempty_str(value: object | None, label: str, *, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AgentConfig",
    "AppConfig",
    "ConfigError",
    "FirewallConfig",
    "PackagesConfig",
    "PermissionPolicy",
    "ProxyConfig",
    "RuntimeConfig",
    "SSHConfig",
    "load_config",
]
