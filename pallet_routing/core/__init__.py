"""
Core application utilities for settings, logging, errors and FastAPI dependencies.

This package provides:
- Application-level settings (separate from DB settings)
- Logging configuration with correlation id / station mode context
- The routing error taxonomy
- Dependency helpers (request session, coordinators per station mode, read models)
"""
