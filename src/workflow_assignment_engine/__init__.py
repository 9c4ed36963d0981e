"""Workflow Assignment Engine.

Stores versioned Stage -> Step -> Task templates, clones them into per-client
assignments, advances those assignments as work completes, fires on-complete
actions and re-instantiates templates on recurring schedules.
"""

__version__ = "0.1.0"

from workflow_assignment_engine.engine.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
