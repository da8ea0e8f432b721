"""
Admission service package for the CRM admission layer.

The admission layer sits in front of guarded operations (record creation,
mailbox and calendar connection checks) and decides, per call, whether to
run the operation, serve a recent outcome, or reject:
- Rate limiting: per-identity and global hourly windows
- Loop detection: rapid repeated calls from one identity
- Sampling: probabilistic shedding of best-effort traffic
- Caching: a local TTL cache plus a Redis-backed cross-instance dedupe store

Structure:
- app.main: FastAPI app, routes, and endpoint registration.
- app.caching: Local TTL cache and the durable dedupe store.
- app.ratelimit: Hourly windows, loop guard and sampler.
- app.domain: Decisions, the admission gate, guarded endpoints and profiles.
"""
