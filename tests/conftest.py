"""Pytest configuration for all tests."""

from hypothesis import HealthCheck, settings

# Scenario tests build their own event loop per example
settings.register_profile(
    "civicflow",
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
settings.load_profile("civicflow")
