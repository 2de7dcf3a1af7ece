"""Isolated per-ticket workspaces."""
