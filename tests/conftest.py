"""
Pytest configuration shared by all test modules.

The backend reads its settings when ``backend.app.core.config`` is first
imported, which happens during collection, so the environment it needs is
set here at import time rather than in a fixture.
"""

import os

os.environ.setdefault("JWT_SECRET", "test-only-signing-key-0123456789abcdef")
