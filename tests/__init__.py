"""
Booking Engine Tests

Unit tests run against a throwaway SQLite database (aiosqlite) with the
model, messaging provider and Redis replaced by mocks.

Running Tests:
    pip install -e ".[test]"
    pytest tests/unit -v

    # One module
    pytest tests/unit/test_booking_store.py -v
"""
