"""auth/ -- Session and identity core for BizPilot.

Token codec, refresh-token store, role resolver, session issuer and access
verification. api/ imports from auth/, never the other way around.
"""
