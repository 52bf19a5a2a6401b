"""
This package contains the core logic for building Salesforce applications
through the Dev, CI and Package lifecycle pipelines.
"""

from .models import (
    LifecycleMode,
    PipelineResult,
    PipelineState,
)
from .packaging.orchestrator import PipelineOrchestrator

__all__ = [
    "LifecycleMode",
    "PipelineOrchestrator",
    "PipelineResult",
    "PipelineState",
]
