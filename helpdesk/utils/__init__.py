"""Utilities package - helper functions."""
from helpdesk.utils.storage import is_remote, local_path, public_url
from helpdesk.utils.variables import build_variables, render

__all__ = [
    "is_remote",
    "local_path",
    "public_url",
    "build_variables",
    "render",
]
