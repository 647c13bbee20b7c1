"""Middleware registration for the status API."""

from fastapi import FastAPI

from trophybot.middleware.error_handler import setup_error_handlers


def setup_middleware(app: FastAPI) -> None:
    setup_error_handlers(app)
