"""
Terminal dashboard for a Numerai-style tournament pipeline.

The dashboard renders live pipeline progress with Rich and blessed, accepts
single-key and ``/command`` input, chains Download -> Train -> Predict ->
Submit, and produces a recovery report when something goes wrong. All loops
share one :class:`DashboardState`, so the UI keeps running while stages fail.
"""

from .backend import PipelineBackend, SimulatedBackend
from .lifecycle import DashboardApp
from .models import DashboardSnapshot
from .settings import DashboardConfig
from .state import DashboardState

__all__ = [
    "DashboardApp",
    "DashboardConfig",
    "DashboardSnapshot",
    "DashboardState",
    "PipelineBackend",
    "SimulatedBackend",
]
