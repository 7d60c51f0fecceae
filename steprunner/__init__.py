"""steprunner — Run configured pipeline steps inside a running container.

Pipeline per run: Config → Resolve → Attach → Steps (stop on first failure) → After-steps.
"""

from steprunner.pipeline import main

__all__ = ["main"]
