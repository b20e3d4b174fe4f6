"""
Shipping Evidence Recorder.

Photos of shipment slips are stored together with their tracking number and
ship date in a local SQLite store; photo uploads to object storage run in the
background and their state is tracked per record.
"""

__version__ = "0.1.0"

__all__ = [
    "config",
    "logging",
    "paths",
]
