"""Middleware configuration for the FastAPI application."""

from fastapi import FastAPI

from .logging import setup_logging_middleware


def setup_middleware(app: FastAPI, *, debug: bool = False) -> None:
    """Configure all middleware for the FastAPI application.

    Args:
        app: The FastAPI application instance
        debug: Enables request logging.
    """

    setup_logging_middleware(app, debug=debug)
