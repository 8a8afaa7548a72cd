"""
API Module - REST Interface

FastAPI binding of the upload protocol.
"""

from .rest import create_app, run_api_server

__all__ = ['create_app', 'run_api_server']
