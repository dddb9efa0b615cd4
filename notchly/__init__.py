"""Notchly: backend-readiness core for the Notchly chat front-end."""

__version__ = "0.1.0"
