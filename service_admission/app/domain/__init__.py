"""
Admission domain package.

Holds the decision types, the AdmissionGate that composes the caching and
rate-limiting primitives, guarded endpoints that run operations through a
gate, and the per-operation configuration profiles.
"""
