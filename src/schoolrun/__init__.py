"""Real-time school transport tracking and dispatch engine."""

__version__ = "0.1.0"
