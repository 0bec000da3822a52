"""Idempotent machine convergence steps and the pipeline that runs them."""
from __future__ import annotations

from .base import Reconciler, StepContext
from .firewall import FirewallPolicy
from .machine import build_maintain_pipeline, build_up_pipeline
from .packages import PackageSet
from .pipeline import Pipeline, PipelineRun, PipelineState
from .proxy import ProxyInstall
from .raw_script import RawScript
from .runtime import RuntimeInstall

__all__ = [
    "FirewallPolicy",
    "PackageSet",
    "Pipeline",
    "PipelineRun",
    "PipelineState",
    "ProxyInstall",
    "RawScript",
    "Reconciler",
    "RuntimeInstall",
    "StepContext",
    "build_maintain_pipeline",
    "build_up_pipeline",
]
