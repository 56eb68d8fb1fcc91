"""
Environment Configuration Utility

Provides environment detection for policies that differ between deployments.

ENVIRONMENT values:
- production: webhook signatures are mandatory, sweep scheduler runs
- development: unsigned webhooks are accepted with a warning
- test: as development, and the background scheduler is not started
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

# Validate environment value
if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    """Check if running in production environment."""
    return ENVIRONMENT == "production"


def is_test() -> bool:
    """Check if running in test environment."""
    return ENVIRONMENT == "test"
