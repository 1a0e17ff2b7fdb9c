"""
Pytest configuration for the CHIP-8 test suite.

    python -m pytest                      # everything
    python -m pytest -m "not display"     # skip the pygame window tests
    python -m pytest -k TestKeys          # one class

Window tests run against SDL's dummy video driver, so no real display
or audio device is needed.
"""

import os


def pytest_configure(config):
    """Register markers and point SDL at its dummy drivers."""
    config.addinivalue_line("markers",
        "display: tests that open a pygame surface (SDL dummy driver)")

    # Must be set before pygame.init() runs anywhere in the session
    os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
    os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
