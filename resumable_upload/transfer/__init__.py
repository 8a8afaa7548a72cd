"""
Transfer Module - Client-side Upload

Schedules concurrent chunk sends over a pluggable transport.
"""

from .transport import UploadTransport, LocalTransport, HTTPTransport
from .scheduler import TransferScheduler, UploadProgress

__all__ = [
    'UploadTransport',
    'LocalTransport',
    'HTTPTransport',
    'TransferScheduler',
    'UploadProgress',
]
