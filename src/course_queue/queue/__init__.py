"""Durable job queue backed by SQLite.

The store owns the tables and exposes conditional (compare-and-swap) updates;
the manager layers lease semantics, retry and cancellation on top of it. All
cross-worker coordination happens through those conditional updates, so any
number of worker processes can share one database file.
"""
