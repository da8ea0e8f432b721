"""
Admission caching package.

Provides the per-instance TTL cache and the Redis-backed dedupe store that
lets instances share recent outcomes. Entries are whole outcome snapshots,
never partial updates.
"""
