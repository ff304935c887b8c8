"""auth/ -- Authentication core for SessionGuard.

Token signing and verification, refresh-token storage and rotation, login
rate limiting, and the service that orchestrates them.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/.
api/ imports from auth/, not the other way around.
"""
