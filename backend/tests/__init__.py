"""
Pytest test suite for the Storefront Payments backend.

Test categories:
- Unit tests: gateway client, ledger and reconciliation services with a fake gateway
- API tests: the FastAPI app over httpx.ASGITransport with in-memory SQLite
- Edge case tests: idempotency, duplicate/out-of-order delivery, concurrent races
"""
