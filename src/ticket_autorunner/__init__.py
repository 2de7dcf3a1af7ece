"""Ticket autorunner: tracker-driven autonomous agent pipeline."""

__all__: list[str] = []
