"""
Exception types raised across the recon pipeline.
"""

from typing import Optional


class ReconError(Exception):
    """Base class for all netrecon errors."""


class ModelAPIError(ReconError):
    """The hosted model endpoint returned a non-success response."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ModelResponseError(ReconError):
    """The model's reply could not be parsed into the expected JSON object."""

    def __init__(self, message: str, excerpt: str = ""):
        super().__init__(f"{message}: {excerpt}" if excerpt else message)
        self.excerpt = excerpt


class InteractionUnavailable(ReconError):
    """The page-interaction collaborator did not answer a command."""


class NavigationError(ReconError):
    """The browser transport failed to navigate or report the tab URL."""
