"""auth/ -- Authentication and authorization package for TechPacker.

Layer rule: auth/ imports stdlib, third-party libraries, core/ and cache/.
The service modules (service.py, admin.py) also import audit/ for action
kinds and the AuditTrail type. auth/access.py is the one module that reads
documents/, for the document shape it authorizes against.
api/ imports from auth/, not the other way around.
"""
