"""
Entry point for Vercel.

This module exposes the FastAPI application instance defined in the
`pagecast.main` module.  Vercel's Python runtime will import this file
and look for an object called `app`, which it uses to handle incoming
HTTP requests.  Locally the same object can be served with
``uvicorn main:app``.
"""

from pagecast.main import app as app  # noqa: F401  re-export FastAPI instance
