"""Wallet monitoring service library: wallet registry, transaction store, events and WSGI API."""

__version__ = "0.1.0"

__all__ = ["__version__"]