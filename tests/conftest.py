import os
import sys

import pytest
from hypothesis import HealthCheck, settings

# Regression profile: tokenizer/accumulator properties are cheap, explore widely
settings.register_profile(
    "ci",
    max_examples=300,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
    print_blob=True,
)

# Quick local runs while iterating on batching rules
settings.register_profile(
    "dev",
    max_examples=30,
    deadline=500,
    suppress_health_check=[HealthCheck.too_slow],
    derandomize=True,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


@pytest.fixture
def py_command():
    """A command prefix that prints its arguments, one batch per output line."""
    return [sys.executable, "-c", "import sys; print(' '.join(sys.argv[1:]))"]


@pytest.fixture
def exit_command():
    """Build a command prefix that exits with the given status."""

    def build(status: int) -> list[str]:
        return [sys.executable, "-c", f"import sys; sys.exit({status})"]

    return build
