"""Run journal module.

Every coordinator invocation is journalled, including skips and
failures that never reach the build history.
"""

from imagebuild.runs.models import RunRecord

__all__ = ["RunRecord"]
