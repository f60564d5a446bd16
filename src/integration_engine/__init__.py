"""Connector synchronization and event-processing engine.

Components live under `integration_engine.engine`; `build_engine()` wires them together.
"""

__version__ = "0.1.0"

__all__ = ["config", "engine", "models", "tasks"]
