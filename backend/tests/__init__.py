"""
Pytest suite for the order settlement backend.

Test categories:
- Unit tests: state machine, services and workers over in-memory SQLite
- API tests: full FastAPI app through httpx with the test DB session
"""
