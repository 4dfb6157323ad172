"""Resumable upload storage on S3-compatible object stores, with an in-memory object service and upload locker."""

__version__ = "0.1.0"