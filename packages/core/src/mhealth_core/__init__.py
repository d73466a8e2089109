"""Core domain & services for Modular Health.

Contains routine matching, auto-logging, reminder notifications, persistence
models, and configuration.
"""

from .config import Settings  # noqa: F401
