"""Production line status analytics and live synchronization."""

__version__ = "1.0.0"
