"""Domain core: templates, assignments, progression, actions and scheduling.

Nothing in here knows about HTTP; `workflow_assignment_engine.server` is a thin
adapter over `engine.service.WorkflowService`.
"""
