"""
wfcache - artifact caching core for CI workflow runners.

Resolves cache entries by primary key and restore-key prefixes, and moves
archive blobs to and from the cache service, a managed blob store, or an
S3-compatible object store.
"""

__version__ = "0.1.0"
