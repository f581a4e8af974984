# Security package.
#
#   tokens     - issue / verify signed identity tokens (PyJWT)
#   passwords  - bcrypt hashing
#   identity   - the per-request caller identity
#   policy     - (route pattern, method) -> required roles
#   gate       - ASGI middleware resolving the caller before any handler
