from .router import create_app, create_router, error_status

__all__ = ["create_app", "create_router", "error_status"]
