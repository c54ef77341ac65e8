"""Textual dashboard for taskwarden."""

from taskwarden.tui.app import TaskwardenApp, run_tui

__all__ = ["TaskwardenApp", "run_tui"]
