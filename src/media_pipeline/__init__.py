"""Asynchronous media variant pipeline: intake, queue, transform, store, notify."""

__version__ = "0.1.0"
