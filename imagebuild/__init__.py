"""Image Build Orchestrator - incremental, crash-safe image builds.

This package decides whether a new image build is needed, drives the
external compose and image-generation tools, and commits each build to
an append-mostly history directory atomically.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
