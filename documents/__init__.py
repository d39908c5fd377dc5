"""documents/ -- Tech pack record store and share management.

Layer rule: documents/ imports stdlib, third-party libraries, core/, audit/
and auth/ (for the access engine and the identity store it validates share
targets against). It does NOT import from api/ or cache/.
"""
