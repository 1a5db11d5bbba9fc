"""Orchestrate coding-agent CLIs and guard each project's feature list."""

__version__ = "0.1.0"
