"""
Request dependencies.

The engine lives on app.state (set by create_app); routes receive it through
get_engine so tests can build an app around any PrinterEngine-like object.
"""

from fastapi import Request


def get_engine(request: Request):
    return request.app.state.engine
