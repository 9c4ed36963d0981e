"""Explicit workflow domain concepts.

This package holds:
- The node, assignment and followup state machines
- Completion evidence and transition events
- The progression engine that cascades completion up the tree
- On-complete actions and the collaborators they call

Control flow is deterministic: actions run only after a transition has been
committed and never feed back into it, except through agent replies that arrive
as new completion events.
"""

__all__: list[str] = []
