"""auth/ -- Credential validation and session-token engine for Keyturn.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/. api/ imports from auth/, not the other way
around -- with the single exception of auth/dependencies.py, which is the
FastAPI Depends() glue and imports fastapi directly.
"""
