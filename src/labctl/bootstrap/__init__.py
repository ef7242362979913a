"""Host bootstrap: the fixed step sequence, its runner and the instance user data."""

from __future__ import annotations

from .host import HostCommandError, HostShell
from .notes import next_steps, service_urls
from .runner import (
    BootstrapLog,
    BootstrapLogError,
    BootstrapReport,
    BootstrapRunner,
    StepResult,
)
from .sequence import lab_sequence
from .steps import BootstrapStep, FailurePolicy, StepStatus
from .userdata import render_user_data

__all__ = [
    "BootstrapLog",
    "BootstrapLogError",
    "BootstrapReport",
    "BootstrapRunner",
    "BootstrapStep",
    "FailurePolicy",
    "HostCommandError",
    "HostShell",
    "StepResult",
    "StepStatus",
    "lab_sequence",
    "next_steps",
    "render_user_data",
    "service_urls",
]
