"""Dockgate - vulnerability-gated Docker container updates."""
