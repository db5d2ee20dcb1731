"""Multi-account messaging session relay microservice."""

from .api import create_app
from .manager import SessionLifecycleManager

__all__ = ["create_app", "SessionLifecycleManager"]
