"""Per-query resolution: static resolve, blocklist, block regex, upstream."""
import ipaddress
import time
from typing import Optional, Tuple

import httpx
from dnslib import AAAA, CLASS, QTYPE, RCODE, RR, A, DNSHeader, DNSRecord

from .config import logger
from .exceptions import InvalidResolveTarget, UnsupportedQuestionType
from .resolver import resolve_doh
from .tables import Blocklist, BlockRegexList, StaticResolveTable, normalize_name
from .upstream_manager import UpstreamSelector

SOURCE_RESOLVE = "resolve"
SOURCE_BLOCKLIST = "blocklist"
SOURCE_BLOCKREGEX = "blockregex"
SOURCE_UPSTREAM = "upstream"


def build_reply(request: DNSRecord, rcode=RCODE.NOERROR) -> DNSRecord:
    """Reply skeleton echoing the id and first question of ``request``."""
    header = DNSHeader(id=request.header.id, qr=1, rd=1, ra=1, rcode=rcode)
    return DNSRecord(header, q=request.q)


class ResolutionPipeline:
    """
    Decides how a single query is answered.

    Stages run in a fixed order and the first one producing an answer wins:
    static resolve, exact blocklist, regex blocklist, then DoH forwarding of
    the original bytes. The lookup tables are never written after
    construction and are shared by every query task.
    """

    def __init__(
        self,
        resolve_table: StaticResolveTable,
        blocklist: Blocklist,
        block_regex: BlockRegexList,
        selector: UpstreamSelector,
        metrics=None,
    ):
        self.resolve_table = resolve_table
        self.blocklist = blocklist
        self.block_regex = block_regex
        self.selector = selector
        self.metrics = metrics

    def answer_with_resolve(self, request: DNSRecord) -> Optional[DNSRecord]:
        question = request.q
        qid = request.header.id
        name = normalize_name(question.qname)

        resolved = self.resolve_table.lookup(name)
        if resolved is None:
            return None

        logger.debug(f"[{qid}] Resolving '{name}' to {resolved}")

        try:
            ip = ipaddress.ip_address(resolved)
        except ValueError as e:
            raise InvalidResolveTarget(f"Invalid ip address '{resolved}' for '{name}'") from e

        # IPv4-mapped IPv6 literals are answered as IPv4
        ipv4 = ip if ip.version == 4 else ip.ipv4_mapped

        reply = build_reply(request)

        if question.qtype == QTYPE.A:
            if ipv4 is not None:
                reply.add_answer(RR(question.qname, QTYPE.A, CLASS.IN, 0, A(str(ipv4))))
        elif question.qtype == QTYPE.AAAA:
            if ipv4 is None:
                reply.add_answer(RR(question.qname, QTYPE.AAAA, CLASS.IN, 0, AAAA(str(ip))))
        else:
            raise UnsupportedQuestionType(
                f"Invalid question type '{QTYPE.get(question.qtype)}' for '{name}'"
            )

        return reply

    def answer_with_blocklist(self, request: DNSRecord) -> Optional[DNSRecord]:
        name = normalize_name(request.q.qname)
        if name not in self.blocklist:
            return None

        logger.warning(f"[{request.header.id}] '{name}' is blocked")
        return build_reply(request, rcode=RCODE.NXDOMAIN)

    def answer_with_blockregex(self, request: DNSRecord) -> Optional[DNSRecord]:
        name = normalize_name(request.q.qname)
        pattern = self.block_regex.match(name)
        if pattern is None:
            return None

        logger.warning(f"[{request.header.id}] '{name}' is blocked by regex '{pattern}'")
        return build_reply(request, rcode=RCODE.NXDOMAIN)

    async def answer(self, client: httpx.AsyncClient, request: DNSRecord, data: bytes) -> Tuple[bytes, str]:
        """
        Produce the response payload for one query.

        Args:
            client: HTTP client used if the query is forwarded
            request: The decoded query
            data: The original query bytes, forwarded verbatim

        Returns:
            Tuple of (response_bytes, source) where source names the stage
            that answered
        """
        stages = (
            (SOURCE_RESOLVE, self.answer_with_resolve),
            (SOURCE_BLOCKLIST, self.answer_with_blocklist),
            (SOURCE_BLOCKREGEX, self.answer_with_blockregex),
        )
        for source, stage in stages:
            reply = stage(request)
            if reply is not None:
                if self.metrics is not None:
                    self.metrics.record_answer(source)
                return reply.pack(), source

        start_time = time.time()
        response_bytes = await resolve_doh(client, data, self.selector, qid=request.header.id)
        if self.metrics is not None:
            self.metrics.record_answer(SOURCE_UPSTREAM, time.time() - start_time)
        return response_bytes, SOURCE_UPSTREAM
