"""ASGI entrypoint: ``uvicorn stayza.api.app:app``."""

from stayza.api.factory import create_app

app = create_app()
