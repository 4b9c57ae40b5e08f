"""Test mocks - FOR TESTING ONLY

This module contains mock implementations that should ONLY be used in tests.
Production code must NEVER import from this module.
"""

from tests.mocks.mock_backend import CountingTokenProvider, MockGenerationBackend


__all__ = ["CountingTokenProvider", "MockGenerationBackend"]
