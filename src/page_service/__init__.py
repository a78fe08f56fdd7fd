"""
Page Conversion Service package.

Turns uploaded PDF documents into cached page-image sets through a priority
job scheduler, exposed over HTTP and a WebSocket progress stream.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
