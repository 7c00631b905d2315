from flask import current_app


def get_security():
    """Security components built for the running app (see security.components)."""
    return current_app.extensions["security"]
