"""Lease-based job queue and worker for repository course generation."""

__version__ = "0.1.0"
