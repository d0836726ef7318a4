"""Exceptions raised by the harvest pipeline"""


class HarvestError(Exception):
    """Base class for harvest failures"""


class FetchError(HarvestError):
    """Raised when a URL could not be retrieved within the retry budget"""
    def __init__(self, url: str, message: str, attempts: int = 1):
        self.url = url
        self.message = message
        self.attempts = attempts
        super().__init__(f"{message} ({url}, {attempts} attempt{'s' if attempts != 1 else ''})")


class HarvestAborted(HarvestError):
    """Run-wide failure: nothing further can be harvested"""


class MaskToolUnavailable(HarvestAborted):
    """The raster toolchain needed to vectorize masks is missing"""


class MaskResolutionError(HarvestError):
    """A single map's mask could not be turned into GeoJSON"""
