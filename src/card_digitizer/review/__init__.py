"""JSON review API over a BatchReconciler."""

from .app import create_app

__all__ = ["create_app"]
