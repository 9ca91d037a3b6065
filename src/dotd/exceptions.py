"""Exception types raised by dotd."""


class DotdError(Exception):
    """Base class for all dotd errors."""


class ConfigurationError(DotdError, ValueError):
    """Invalid listen address, upstream URL or block pattern."""


class EmptyUpstreamList(ConfigurationError):
    """Raised when no upstream servers are configured."""


class DecodeError(DotdError):
    """Incoming datagram is not a usable DNS query."""


class ResolutionError(DotdError):
    """A query could not be answered."""


class InvalidResolveTarget(ResolutionError):
    """A static resolve entry does not hold a valid IP address."""


class UnsupportedQuestionType(ResolutionError):
    """A static resolve entry matched a question that is neither A nor AAAA."""


class UpstreamsExhausted(ResolutionError):
    """Every upstream failed during one forwarding cycle."""
