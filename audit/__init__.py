"""audit/ -- Append-only audit trail for privileged actions.

Layer rule: audit/ imports stdlib, third-party libraries and core/ only.
Callers hand it actor and request metadata as plain values.
"""
