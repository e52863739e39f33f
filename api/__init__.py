from .app import create_app
from .state import AppState, build_state

__all__ = ["create_app", "AppState", "build_state"]
