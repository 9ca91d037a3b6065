"""UDP DNS protocol implementation."""
import asyncio
from dnslib import DNSError, DNSRecord
from dnslib.label import DNSLabelError
from .config import logger
from .exceptions import DecodeError


def decode_query(data: bytes) -> DNSRecord:
    """
    Parse raw datagram bytes into a DNS query.

    Raises:
        DecodeError: if the bytes are not a DNS message or carry no question
    """
    try:
        request = DNSRecord.parse(data)
    except (DNSError, DNSLabelError, ValueError, IndexError) as e:
        raise DecodeError(f"Malformed DNS message: {e}") from e

    if not request.questions:
        raise DecodeError(f"DNS message {request.header.id} has no question")
    return request


class DNSProtocol(asyncio.DatagramProtocol):
    """UDP Protocol handler for DNS requests."""

    def __init__(self, queue):
        self.queue = queue
        self.transport = None

    def connection_made(self, transport):
        """Called when the socket is bound."""
        self.transport = transport
        sockname = transport.get_extra_info('sockname')
        if sockname:
            logger.info(f"UDP Server listening on {sockname[0]}:{sockname[1]}")

    def datagram_received(self, data, addr):
        """Called when a UDP datagram is received."""
        try:
            # Only a bounded queue can be full; the default one never is.
            self.queue.put_nowait((data, addr, self.transport))
        except asyncio.QueueFull:
            logger.warning("Queue full! Dropping DNS packet.")

    def error_received(self, exc):
        """Socket errors are logged; the endpoint keeps serving."""
        logger.error(f"UDP socket error: {exc}")
