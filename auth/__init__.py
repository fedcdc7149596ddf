"""auth/ -- Account trust package for CrowdControl.

Tokens, verification codes, credential checks, permissions, locks and role
capacity. Everything here is plain Python over TrustStore; the only FastAPI
code is auth/dependencies.py.

Layer rule: auth/ imports stdlib, third-party libraries and core/config.
It does NOT import from api/ or notify/.
api/ imports from auth/, not the other way around.
"""
