"""Test fixtures for Purrplexed."""

from tests.fixtures.mocks import (
    GatedTransport,
    create_mock_for_stream,
    create_mock_with_error,
)

__all__ = [
    "GatedTransport",
    "create_mock_for_stream",
    "create_mock_with_error",
]
