"""Deployment state tracking and reconciliation for Fallout 76 mods."""

__version__ = "0.1.0"
