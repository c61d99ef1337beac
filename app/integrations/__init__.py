# app/integrations/__init__.py

from app.integrations import notifications

__all__ = ["notifications"]
