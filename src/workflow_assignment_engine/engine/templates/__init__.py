"""Authored templates: models, the condition grammar, publish-time validation and storage."""

__all__: list[str] = []
