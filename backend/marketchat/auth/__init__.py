"""Bearer credential verification.

Services:
    - TokenVerifier: decode + validate a JWT into a user id.
    - get_current_user: FastAPI dependency for the HTTP endpoints.
"""
