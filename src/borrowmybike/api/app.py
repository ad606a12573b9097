"""ASGI entry point: ``uvicorn borrowmybike.api.app:app``."""

from borrowmybike.api.factory import create_app

app = create_app()
