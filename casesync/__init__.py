"""
casesync
========

Offline-first sync and merge engine for a legal office's case data.

The local store holds one hierarchical document per owner; a sync pass
flattens it, merges it with the backend tables (last writer wins, tombstones,
cascading prune), pushes the differential set parents first, and swaps the
merged document back in atomically.
"""

__version__ = "1.0.0"
