"""
Exceptions raised while talking to the FMI open-data services.
"""


class FmiError(RuntimeError):
    """Base exception for upstream fetch and decode failures."""

    pass


class FmiTransportError(FmiError):
    """Upstream unreachable, timed out, or answered with a non-200 status."""

    pass


class MalformedDocumentError(FmiError):
    """The response body is not a decodable WFS feature collection."""

    pass
