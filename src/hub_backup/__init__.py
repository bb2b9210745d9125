"""Hub backup and restore control plane."""

from __future__ import annotations

from .config import load_config, OperatorConfig  # noqa: F401
from .controller import Controller  # noqa: F401
from .restore import RestoreOrchestrator  # noqa: F401
from .schedule import ScheduleOrchestrator  # noqa: F401

__version__ = "0.1.0"
