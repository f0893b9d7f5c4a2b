"""Build orchestration module.

This module handles:
- Checksum-based change detection
- The build history store and its commit/recovery protocol
- Incremental build decisions and build id generation
- Driving external tools through a build transaction
- Retention of old builds
"""

from imagebuild.builds.models import ArtifactEntry, BuildRecord, ComposeResult

__all__ = ["ArtifactEntry", "BuildRecord", "ComposeResult"]

# Lazy imports for submodules to avoid circular imports
# Access via imagebuild.builds.history, etc.
