from .search_api import create_app, router

__all__ = ["create_app", "router"]
