"""auth/ -- Authentication core: directory adapter, identity store, reconciler,
authenticator and session issuer.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/, audit/ or core/.
api/ and core/ import from auth/, not the other way around.
"""
