"""Round-robin selection over the configured DoH upstream servers."""
import threading
from typing import List

from .config import logger
from .exceptions import EmptyUpstreamList


class UpstreamSelector:
    """
    Cyclic picker over a fixed, ordered list of upstream URLs.

    The list never changes after construction. The cursor is the only
    mutable state and is advanced under a lock held just for the increment,
    so N consecutive picks visit every upstream exactly once.
    """

    def __init__(self, upstreams: List[str]):
        """
        Initialize the selector.

        Args:
            upstreams: Ordered list of DoH server URLs
        """
        if not upstreams:
            raise EmptyUpstreamList("At least one upstream URL must be provided")

        self._upstreams = tuple(upstreams)
        self._cursor = 0
        self._lock = threading.Lock()
        logger.info(f"Initialized upstream selector with {len(self._upstreams)} servers: {list(self._upstreams)}")

    @property
    def upstreams(self):
        return self._upstreams

    def pick(self) -> str:
        """Return the next upstream in cyclic order."""
        with self._lock:
            index = self._cursor
            self._cursor = (index + 1) % len(self._upstreams)
        return self._upstreams[index]

    def length(self) -> int:
        """Return the number of configured upstreams."""
        return len(self._upstreams)

    __len__ = length
