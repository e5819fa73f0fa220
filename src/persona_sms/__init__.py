"""Persona-driven SMS chat backend with tiered per-user memory."""

__version__ = "0.1.0"
