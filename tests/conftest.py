"""Pytest configuration for all tests."""

import os

from hypothesis import settings

# Property tests drive async code through asyncio.run; per-example timing
# varies too much for the default deadline.
settings.register_profile("default", deadline=None)
settings.register_profile("ci", deadline=None, max_examples=200)
settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "default"))
