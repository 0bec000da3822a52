"""Versioned releases: packaging, staging, cutover and shared state."""
from __future__ import annotations

from .archive import build_archive
from .identifiers import (
    IDENTIFIER_PATTERN,
    RESERVED_VERSIONS,
    ReleaseRequest,
    is_identifier,
    validate_identifier,
)
from .layout import AppLayout, ReleaseLayout
from .manager import DeployOutcome, ReleaseManager
from .secrets import SecretStore
from .stager import ReleaseStager, StageResult

__all__ = [
    "IDENTIFIER_PATTERN",
    "RESERVED_VERSIONS",
    "AppLayout",
    "DeployOutcome",
    "ReleaseLayout",
    "ReleaseManager",
    "ReleaseRequest",
    "ReleaseStager",
    "SecretStore",
    "StageResult",
    "build_archive",
    "is_identifier",
    "validate_identifier",
]
