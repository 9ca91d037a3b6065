"""Main server implementation with reader pool and task-per-query handling."""
import asyncio
import ipaddress
import os
import signal
from typing import Dict, List, Optional, Tuple

import httpx
from dnslib import QTYPE, DNSRecord

from .config import (
    logger, LISTEN_ADDRESS, DOH_UPSTREAMS, BLOCKLIST, BLOCKREGEX, RESOLVE,
    WORKER_COUNT, QUEUE_SIZE,
)
from .exceptions import ConfigurationError, DecodeError, ResolutionError
from .global_metrics import GlobalMetrics
from .pipeline import ResolutionPipeline
from .protocol import DNSProtocol, decode_query
from .tables import Blocklist, BlockRegexList, StaticResolveTable
from .upstream_manager import UpstreamSelector


def parse_udp_address(address: str) -> Tuple[str, int]:
    """
    Split a ``host:port`` listen address, IPv6 hosts in brackets.

    The host must be an IP literal.

    Raises:
        ConfigurationError: on any malformed part
    """
    host, sep, port = address.rpartition(':')
    if not sep:
        raise ConfigurationError(f"Missing port in address '{address}'")

    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]
    elif ':' in host:
        raise ConfigurationError(f"Too many colons in address '{address}'")

    try:
        ip = ipaddress.ip_address(host)
    except ValueError as e:
        raise ConfigurationError(f"'{host}' is not a valid ip address") from e

    try:
        port_number = int(port)
    except ValueError as e:
        raise ConfigurationError(f"Invalid port '{port}' in address '{address}'") from e
    if not 0 <= port_number <= 65535:
        raise ConfigurationError(f"Port {port_number} out of range in address '{address}'")

    return str(ip), port_number


def parse_upstream_url(upstream: str) -> str:
    """Validate a DoH upstream URL, raising ConfigurationError if unusable."""
    try:
        url = httpx.URL(upstream)
    except (httpx.InvalidURL, TypeError) as e:
        raise ConfigurationError(f"Invalid upstream URL '{upstream}': {e}") from e

    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigurationError(f"Invalid upstream URL '{upstream}': expected an http(s) URL with a host")
    return upstream


async def handle_query(request: DNSRecord, data: bytes, addr, transport, client, pipeline, metrics=None):
    """
    Answer one decoded query and send the reply back to ``addr``.

    Any failure is logged with the transaction id and the query gets no reply.
    """
    qid = request.header.id
    qname = str(request.q.qname)
    qtype = QTYPE.get(request.q.qtype)
    logger.debug(f"[{qid}] Question {qname} ({qtype}) from {addr[0]}")

    try:
        response_bytes, source = await pipeline.answer(client, request, data)
    except ResolutionError as e:
        logger.error(f"[{qid}] {e}")
        if metrics is not None:
            metrics.record_drop()
        return
    except Exception as e:
        logger.error(f"[{qid}] Query processing error: {e}")
        if metrics is not None:
            metrics.record_drop()
        return

    transport.sendto(response_bytes, addr)
    logger.debug(f"[{qid}] [{source.upper()}] {qname} ({qtype}) -> {addr[0]}")


async def worker(name, queue, client, pipeline, pending, metrics=None):
    """
    Reader that consumes datagrams from the queue.

    Each decoded query is handled on its own task so a slow upstream never
    holds up the reader.

    Args:
        name: Worker identifier for logging
        queue: Asyncio queue containing (data, addr, transport) items
        client: HTTP client for DoH requests
        pipeline: Resolution pipeline shared by all queries
        pending: Set tracking in-flight query tasks
        metrics: Global metrics tracker
    """
    logger.debug(f"Worker {name} started")
    while True:
        data, addr, transport = await queue.get()

        try:
            request = decode_query(data)
        except DecodeError as e:
            logger.error(f"Dropping datagram from {addr[0]}: {e}")
            if metrics is not None:
                metrics.record_drop()
        except Exception as e:
            logger.error(f"Worker processing error: {e}")
            if metrics is not None:
                metrics.record_drop()
        else:
            task = asyncio.create_task(
                handle_query(request, data, addr, transport, client, pipeline, metrics)
            )
            pending.add(task)
            task.add_done_callback(pending.discard)
        finally:
            queue.task_done()


async def stats_task(global_metrics):
    """Periodically logs query statistics."""
    while True:
        await asyncio.sleep(300)  # Log stats every 5 minutes
        global_metrics.log_stats()


class DNSServer:
    """
    UDP DNS server that answers locally or forwards to DoH upstreams.

    All configuration is validated here, so a bad address, upstream URL or
    block pattern fails before any socket is opened.
    """

    def __init__(
        self,
        address: str,
        upstreams: List[str],
        blocklist: Optional[List[str]] = None,
        blockregex: Optional[List[str]] = None,
        resolve: Optional[Dict[str, str]] = None,
        worker_count: Optional[int] = None,
        queue_size: int = 0,
    ):
        self.host, self.port = parse_udp_address(address)
        self.selector = UpstreamSelector([parse_upstream_url(u) for u in upstreams])
        self.metrics = GlobalMetrics()
        self.pipeline = ResolutionPipeline(
            StaticResolveTable(resolve),
            Blocklist(blocklist),
            BlockRegexList(blockregex),
            self.selector,
            metrics=self.metrics,
        )
        self.worker_count = worker_count or os.cpu_count() or 1
        self.queue_size = queue_size
        self.transport = None
        self.ready = asyncio.Event()
        self._pending = set()

    @property
    def local_address(self):
        """The (host, port) the socket is bound to, once serving."""
        if self.transport is None:
            return None
        return self.transport.get_extra_info('sockname')[:2]

    async def serve(self, stop_event: asyncio.Event):
        """
        Bind the UDP socket and serve until ``stop_event`` is set.

        Raises:
            OSError: if the socket cannot be bound
        """
        loop = asyncio.get_running_loop()
        queue = asyncio.Queue(maxsize=self.queue_size)

        limits = httpx.Limits(max_keepalive_connections=20)
        async with httpx.AsyncClient(http2=True, limits=limits) as client:

            self.transport, _ = await loop.create_datagram_endpoint(
                lambda: DNSProtocol(queue),
                local_addr=(self.host, self.port)
            )
            self.ready.set()

            tasks = []
            for i in range(self.worker_count):
                task = asyncio.create_task(
                    worker(f"w-{i}", queue, client, self.pipeline, self._pending, self.metrics)
                )
                tasks.append(task)

            tasks.append(asyncio.create_task(stats_task(self.metrics)))

            try:
                await stop_event.wait()
            finally:
                logger.info("Stopping transport...")
                self.transport.close()
                self.ready.clear()

                logger.info("Cancelling workers...")
                tasks.extend(self._pending)
                for task in tasks:
                    task.cancel()

                await asyncio.gather(*tasks, return_exceptions=True)


async def main():
    """Main server entry point."""
    server = DNSServer(
        LISTEN_ADDRESS,
        DOH_UPSTREAMS,
        blocklist=BLOCKLIST,
        blockregex=BLOCKREGEX,
        resolve=RESOLVE,
        worker_count=WORKER_COUNT,
        queue_size=QUEUE_SIZE,
    )
    logger.info(
        f"Loaded {len(server.pipeline.resolve_table)} resolve entries, "
        f"{len(server.pipeline.blocklist)} blocked domains, "
        f"{len(server.pipeline.block_regex)} block patterns"
    )

    loop = asyncio.get_running_loop()

    # Graceful Shutdown handling
    stop_event = asyncio.Event()
    def signal_handler():
        logger.info("Shutdown signal received.")
        stop_event.set()

    try:
        loop.add_signal_handler(signal.SIGTERM, signal_handler)
        loop.add_signal_handler(signal.SIGINT, signal_handler)
    except NotImplementedError:
        logger.warning("Signal handlers not supported on this platform. This is expected on Windows systems.")

    await server.serve(stop_event)
