"""WSGI entry point: ``gunicorn wsgi:app``."""

from app import create_app

# Configuration is validated here, once, when the worker imports the module
app = create_app()
