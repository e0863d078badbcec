"""Collaborators that talk to external tools: OpenTofu, tflint and GitHub."""

from actions.lint import LintValidator
from actions.review import GitHubReviewSource, ReviewSourceError
from actions.tofu import TofuRunner

__all__ = [
    'LintValidator',
    'GitHubReviewSource',
    'ReviewSourceError',
    'TofuRunner',
]
