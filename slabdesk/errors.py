"""
Error types shared by the certification cache and the snipe lifecycle
"""
from typing import Optional


class SlabDeskError(Exception):
    """Base class for SlabDesk errors"""


class NotFoundError(SlabDeskError):
    """Certificate, order or snipe does not exist"""


class UpstreamError(SlabDeskError):
    """PSA or eBay API call failed"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidStateError(SlabDeskError):
    """Operation attempted against a snipe in an incompatible status"""

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status
