"""ASGI entrypoint for the supplement registry API."""

from supplement_registry.api.app import create_app
from supplement_registry.containers import build_container

app = create_app(build_container())
