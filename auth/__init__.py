"""auth/ -- Gatekeeper auth core: credentials, revocation, roles, sessions,
external identity, and the permission gate.

Layer rule: auth/ imports stdlib, third-party libraries and core/config only.
It does NOT import from api/. api/ and the CLI import from auth/, not the
other way around.
"""
