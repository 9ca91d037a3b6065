"""Unit and end-to-end tests for the server module."""
import asyncio
import pytest
from unittest.mock import Mock, AsyncMock, patch
from dnslib import DNSRecord, QTYPE, RCODE, RR, A

from dotd.exceptions import ConfigurationError, EmptyUpstreamList, UpstreamsExhausted
from dotd.global_metrics import GlobalMetrics
from dotd.server import DNSServer, handle_query, parse_udp_address, parse_upstream_url, worker

UPSTREAMS = ["https://1.1.1.1/dns-query", "https://1.0.0.1/dns-query"]


class TestParseUDPAddress:
    """Tests for parse_udp_address."""

    @pytest.mark.parametrize("address,expected", [
        ("127.0.0.1:53", ("127.0.0.1", 53)),
        ("0.0.0.0:5053", ("0.0.0.0", 5053)),
        ("[::1]:53", ("::1", 53)),
        ("[::]:0", ("::", 0)),
    ])
    def test_valid(self, address, expected):
        assert parse_udp_address(address) == expected

    @pytest.mark.parametrize("address", [
        "127.0.0.1",
        "localhost:53",
        "::1:53",
        "127.0.0.1:dns",
        "127.0.0.1:70000",
        "[::1]:-1",
        ":53",
    ])
    def test_invalid(self, address):
        with pytest.raises(ConfigurationError):
            parse_udp_address(address)


class TestParseUpstreamURL:
    """Tests for parse_upstream_url."""

    def test_valid(self):
        assert parse_upstream_url("https://1.1.1.1/dns-query") == "https://1.1.1.1/dns-query"
        assert parse_upstream_url("https://dns.google/dns-query") == "https://dns.google/dns-query"

    @pytest.mark.parametrize("url", ["not a url", "ftp://1.1.1.1/dns-query", "https:///dns-query", "/dns-query"])
    def test_invalid(self, url):
        with pytest.raises(ConfigurationError):
            parse_upstream_url(url)


class TestDNSServerConstruction:
    """Startup configuration errors are raised before anything is bound."""

    def test_valid_configuration(self):
        server = DNSServer(
            "127.0.0.1:5053", UPSTREAMS,
            blocklist=["bad.test"], blockregex=[r"^ads\."], resolve={"a.test": "127.0.0.1"},
            worker_count=2,
        )

        assert (server.host, server.port) == ("127.0.0.1", 5053)
        assert server.selector.length() == 2
        assert server.worker_count == 2
        assert server.local_address is None

    def test_default_worker_count(self):
        server = DNSServer("127.0.0.1:5053", UPSTREAMS)

        assert server.worker_count >= 1

    def test_invalid_address(self):
        with pytest.raises(ConfigurationError):
            DNSServer("nowhere", UPSTREAMS)

    def test_invalid_upstream(self):
        with pytest.raises(ConfigurationError):
            DNSServer("127.0.0.1:5053", ["https://1.1.1.1/dns-query", "garbage"])

    def test_no_upstreams(self):
        with pytest.raises(EmptyUpstreamList):
            DNSServer("127.0.0.1:5053", [])

    def test_invalid_regex(self):
        with pytest.raises(ConfigurationError):
            DNSServer("127.0.0.1:5053", UPSTREAMS, blockregex=["[unclosed"])


@pytest.mark.asyncio
async def test_handle_query_sends_answer():
    """Test that a pipeline answer is written back to the client."""
    request = DNSRecord.question("example.com", "A")
    pipeline = Mock()
    pipeline.answer = AsyncMock(return_value=(b"response", "upstream"))
    transport = Mock()
    addr = ("127.0.0.1", 12345)

    await handle_query(request, request.pack(), addr, transport, AsyncMock(), pipeline)

    transport.sendto.assert_called_once_with(b"response", addr)


@pytest.mark.asyncio
async def test_handle_query_resolution_error_drops():
    """Test that a resolution error produces no reply."""
    request = DNSRecord.question("example.com", "A")
    pipeline = Mock()
    pipeline.answer = AsyncMock(side_effect=UpstreamsExhausted("All 2 upstream attempts failed"))
    transport = Mock()
    metrics = GlobalMetrics()

    await handle_query(request, request.pack(), ("127.0.0.1", 1), transport, AsyncMock(), pipeline, metrics)

    transport.sendto.assert_not_called()
    assert metrics.dropped == 1


@pytest.mark.asyncio
async def test_handle_query_unexpected_error_drops():
    """Test that an unexpected error is contained in the query task."""
    request = DNSRecord.question("example.com", "A")
    pipeline = Mock()
    pipeline.answer = AsyncMock(side_effect=RuntimeError("boom"))
    transport = Mock()

    await handle_query(request, request.pack(), ("127.0.0.1", 1), transport, AsyncMock(), pipeline)

    transport.sendto.assert_not_called()


@pytest.mark.asyncio
async def test_worker_spawns_task_per_query():
    """Test that the worker hands each decoded query to its own task."""
    queue = asyncio.Queue()
    pending = set()
    release = asyncio.Event()

    async def slow_answer(client, request, data):
        await release.wait()
        return data, "upstream"

    pipeline = Mock()
    pipeline.answer = slow_answer
    transport = Mock()

    requests = [DNSRecord.question(f"q{i}.example.com", "A") for i in range(3)]
    for i, request in enumerate(requests):
        await queue.put((request.pack(), ("127.0.0.1", 1000 + i), transport))

    worker_task = asyncio.create_task(worker("test-worker", queue, AsyncMock(), pipeline, pending))

    # A single reader drains every datagram while all answers are still blocked
    await asyncio.wait_for(queue.join(), 1)
    assert len(pending) == 3

    release.set()
    await asyncio.gather(*list(pending))

    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass

    assert transport.sendto.call_count == 3
    assert not pending


@pytest.mark.asyncio
async def test_worker_invalid_dns_packet():
    """Test worker handling an invalid DNS packet."""
    queue = asyncio.Queue()
    pending = set()
    pipeline = Mock()
    pipeline.answer = AsyncMock()
    metrics = GlobalMetrics()

    transport = Mock()
    await queue.put((b"not_a_valid_dns_packet", ("10.0.0.1", 8888), transport))

    worker_task = asyncio.create_task(worker("test-worker", queue, AsyncMock(), pipeline, pending, metrics))

    await asyncio.wait_for(queue.join(), 1)

    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass

    # Should not crash, just drop the datagram
    assert not pending
    pipeline.answer.assert_not_called()
    transport.sendto.assert_not_called()
    assert metrics.dropped == 1


class ClientProtocol(asyncio.DatagramProtocol):
    """Collects datagrams received by a test client."""

    def __init__(self):
        self.responses = asyncio.Queue()

    def datagram_received(self, data, addr):
        self.responses.put_nowait(data)


async def send_query(addr, payload, timeout=2.0):
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(ClientProtocol, remote_addr=addr)
    try:
        transport.sendto(payload)
        return await asyncio.wait_for(protocol.responses.get(), timeout)
    finally:
        transport.close()


async def start_server(server):
    stop_event = asyncio.Event()
    serve_task = asyncio.create_task(server.serve(stop_event))
    await asyncio.wait_for(server.ready.wait(), 5)
    return stop_event, serve_task


async def stop_server(stop_event, serve_task):
    stop_event.set()
    await asyncio.wait_for(serve_task, 5)


@pytest.mark.asyncio
async def test_end_to_end_static_resolve():
    """Test that a resolve entry is answered over UDP."""
    server = DNSServer("127.0.0.1:0", UPSTREAMS, resolve={"a.test.": "127.0.0.1"}, worker_count=2)
    stop_event, serve_task = await start_server(server)
    try:
        request = DNSRecord.question("a.test.", "A")
        data = await send_query(server.local_address, request.pack())
    finally:
        await stop_server(stop_event, serve_task)

    reply = DNSRecord.parse(data)
    assert reply.header.id == request.header.id
    assert reply.header.rcode == RCODE.NOERROR
    assert len(reply.rr) == 1
    assert reply.rr[0].rtype == QTYPE.A
    assert str(reply.rr[0].rdata) == "127.0.0.1"


@pytest.mark.asyncio
@pytest.mark.parametrize("qtype", ["A", "AAAA", "MX"])
async def test_end_to_end_blocklist(qtype):
    """Test that a blocked name gets NXDOMAIN for any record type."""
    server = DNSServer("127.0.0.1:0", UPSTREAMS, blocklist=["bad.test."], worker_count=1)
    stop_event, serve_task = await start_server(server)
    try:
        request = DNSRecord.question("bad.test.", qtype)
        data = await send_query(server.local_address, request.pack())
    finally:
        await stop_server(stop_event, serve_task)

    reply = DNSRecord.parse(data)
    assert reply.header.rcode == RCODE.NXDOMAIN
    assert reply.rr == []


@pytest.mark.asyncio
async def test_end_to_end_forwarding():
    """Test that unresolved queries are relayed verbatim from the upstream."""
    request = DNSRecord.question("example.com", "A")
    upstream_reply = request.reply()
    upstream_reply.add_answer(RR("example.com", QTYPE.A, rdata=A("93.184.216.34"), ttl=300))
    upstream_bytes = upstream_reply.pack()

    server = DNSServer("127.0.0.1:0", UPSTREAMS, worker_count=1)
    with patch('dotd.pipeline.resolve_doh', new_callable=AsyncMock,
               return_value=upstream_bytes) as mock_resolve:
        stop_event, serve_task = await start_server(server)
        try:
            data = await send_query(server.local_address, request.pack())
        finally:
            await stop_server(stop_event, serve_task)

    assert data == upstream_bytes
    assert mock_resolve.call_args[0][1] == request.pack()


@pytest.mark.asyncio
async def test_end_to_end_malformed_input_is_silently_dropped():
    """Test that malformed bytes produce no outbound datagram at all."""
    server = DNSServer("127.0.0.1:0", UPSTREAMS, blocklist=["bad.test"], worker_count=1)
    stop_event, serve_task = await start_server(server)
    try:
        with pytest.raises(asyncio.TimeoutError):
            await send_query(server.local_address, b"\x00\x01garbage", timeout=0.5)

        # The service keeps answering afterwards
        data = await send_query(server.local_address, DNSRecord.question("bad.test", "A").pack())
    finally:
        await stop_server(stop_event, serve_task)

    assert DNSRecord.parse(data).header.rcode == RCODE.NXDOMAIN


@pytest.mark.asyncio
async def test_end_to_end_upstreams_exhausted_gets_no_reply():
    """Test that a query failing every upstream ends without a reply."""
    server = DNSServer("127.0.0.1:0", UPSTREAMS, worker_count=1)
    with patch('dotd.pipeline.resolve_doh', new_callable=AsyncMock,
               side_effect=UpstreamsExhausted("All 2 upstream attempts failed")):
        stop_event, serve_task = await start_server(server)
        try:
            with pytest.raises(asyncio.TimeoutError):
                await send_query(server.local_address, DNSRecord.question("example.com", "A").pack(), timeout=0.5)
        finally:
            await stop_server(stop_event, serve_task)


@pytest.mark.asyncio
async def test_bind_failure_is_fatal():
    """Test that a port already in use stops serve with OSError."""
    first = DNSServer("127.0.0.1:0", UPSTREAMS, worker_count=1)
    stop_event, serve_task = await start_server(first)
    try:
        port = first.local_address[1]
        second = DNSServer(f"127.0.0.1:{port}", UPSTREAMS, worker_count=1)
        with pytest.raises(OSError):
            await second.serve(asyncio.Event())
    finally:
        await stop_server(stop_event, serve_task)


@pytest.mark.asyncio
async def test_worker_survives_unexpected_decode_error():
    """Test that an unexpected error while decoding does not end the reader."""
    queue = asyncio.Queue()
    pending = set()
    pipeline = Mock()
    pipeline.answer = AsyncMock(return_value=(b"response", "upstream"))
    metrics = GlobalMetrics()
    transport = Mock()

    request = DNSRecord.question("example.com", "A")
    await queue.put((b"first", ("10.0.0.1", 1), transport))
    await queue.put((request.pack(), ("10.0.0.1", 2), transport))

    with patch('dotd.server.decode_query', side_effect=[RuntimeError("unexpected"), request]):
        worker_task = asyncio.create_task(worker("test-worker", queue, AsyncMock(), pipeline, pending, metrics))
        await asyncio.wait_for(queue.join(), 1)
        await asyncio.gather(*list(pending))

    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass

    transport.sendto.assert_called_once_with(b"response", ("10.0.0.1", 2))
    assert metrics.dropped == 1
