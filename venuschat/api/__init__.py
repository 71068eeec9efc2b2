"""FastAPI application exposing the chat pipeline."""

from venuschat.api.app import create_app

__all__ = ["create_app"]
