"""DoH (DNS over HTTPS) forwarding with round-robin failover."""
import asyncio
import httpx
from .config import logger
from .exceptions import UpstreamsExhausted
from .upstream_manager import UpstreamSelector

DOH_MEDIA_TYPE = "application/dns-message"
UPSTREAM_TIMEOUT = 10.0


async def resolve_doh(
    client: httpx.AsyncClient,
    data: bytes,
    selector: UpstreamSelector,
    qid=None,
    timeout: float = UPSTREAM_TIMEOUT,
) -> bytes:
    """
    Forward a raw DNS query to the DoH upstreams.

    Makes at most one attempt per upstream, starting from wherever the shared
    cursor currently stands. The first 200 response wins.

    Args:
        client: The HTTP client to use for the request
        data: Raw DNS query bytes, sent unchanged
        selector: Round-robin picker over the upstream servers
        qid: Transaction id, used for logging only
        timeout: Deadline in seconds for a whole attempt, body included

    Returns:
        The raw DNS response bytes from the upstream

    Raises:
        UpstreamsExhausted: if every attempt failed
    """
    headers = {
        "Content-Type": DOH_MEDIA_TYPE,
        "Accept": DOH_MEDIA_TYPE,
    }
    max_attempts = selector.length()

    for attempt in range(1, max_attempts + 1):
        upstream = selector.pick()
        logger.debug(f"[{qid}] Forwarding to {upstream} (attempt {attempt}/{max_attempts})")

        try:
            # httpx limits each connect/read/write separately; the attempt as a whole is capped here
            resp = await asyncio.wait_for(
                client.post(upstream, content=data, headers=headers, timeout=timeout),
                timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"[{qid}] DoH request to {upstream} failed (attempt {attempt}): {e}")
            continue
        except asyncio.TimeoutError:
            logger.error(f"[{qid}] DoH request to {upstream} timed out after {timeout}s (attempt {attempt})")
            continue

        if resp.status_code != 200:
            logger.error(f"[{qid}] DoH request to {upstream} returned status {resp.status_code} (attempt {attempt})")
            continue

        return resp.content

    raise UpstreamsExhausted(f"All {max_attempts} upstream attempts failed")
