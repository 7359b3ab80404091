"""
Pytest configuration for the CART driver test suite.

    python -m pytest                 # everything
    python -m pytest -m "not slow"   # skip image-flush and long self-tests
"""

import logging


def pytest_configure(config):
    """Register markers and quieten controller chatter."""
    config.addinivalue_line("markers",
        "slow: tests that write a full 64 MiB image or run long self-tests")
    logging.getLogger("controller").setLevel(logging.ERROR)
