"""Live assignment trees, their persistence and the template instantiator."""

__all__: list[str] = []
