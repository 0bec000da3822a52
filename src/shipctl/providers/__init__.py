"""Provider interfaces for shipctl."""
from __future__ import annotations

from .agent_installer import (
    AgentInstaller,
    AgentInstallError,
    AgentInstallResult,
    build_agent_zipapp,
)

__all__ = [
    "AgentInstallError",
    "AgentInstallResult",
    "AgentInstaller",
    "build_agent_zipapp",
]
