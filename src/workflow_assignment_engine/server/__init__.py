"""FastAPI server adapter for workflow-assignment-engine.

Design intent:
- Keep business logic in `workflow_assignment_engine.engine.*`
- Keep server-specific concerns (routing, CORS, the scheduler thread) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from workflow_assignment_engine.server.app import create_app
