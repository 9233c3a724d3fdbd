"""Pytest configuration for habits engine tests."""

import logging

# Configure logging for tests
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

# Transition logs are useful when a state machine test fails
logging.getLogger("habits_engine.presence").setLevel(logging.DEBUG)
