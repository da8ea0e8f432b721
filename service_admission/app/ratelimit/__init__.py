"""
Rate limiting package for the admission layer.

Holds the per-instance hourly window limiter, the burst/loop guard and the
load-shedding sampler. All state here is private to one process; the
limits are approximate across a fleet by design.
"""
