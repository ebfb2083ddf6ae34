from .main import app, get_workflow

__all__ = ["app", "get_workflow"]
