"""HTTP API for submitting and tracking competitor analyses."""

from .main import API_PREFIX, create_app, run_web_server

__all__ = ["API_PREFIX", "create_app", "run_web_server"]
