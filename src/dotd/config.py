"""Configuration module for dotd."""
import os
import logging

# --- Logging Setup ---
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger("dotd")


def _split(value, sep=','):
    """Split an environment value into its non-empty, stripped items."""
    return [item.strip() for item in value.split(sep) if item.strip()]


def parse_resolve(value):
    """
    Parse ``name=ip`` pairs separated by commas into a dict.

    Pairs without ``=`` are skipped with a warning.
    """
    resolve = {}
    for pair in _split(value):
        name, sep, ip = pair.partition('=')
        if not sep or not name.strip():
            logger.warning(f"Ignoring malformed RESOLVE entry '{pair}'")
            continue
        resolve[name.strip()] = ip.strip()
    return resolve


# --- Configuration ---
LISTEN_ADDRESS = os.getenv('LISTEN_ADDRESS', '[::1]:53')

# DOH_UPSTREAM can be a single URL or comma-separated list of URLs
_doh_upstream_env = os.getenv('DOH_UPSTREAM', 'https://1.1.1.1/dns-query,https://1.0.0.1/dns-query')
DOH_UPSTREAMS = _split(_doh_upstream_env)

BLOCKLIST = _split(os.getenv('BLOCKLIST', ''))

# Whitespace separated, since patterns may contain commas. Matching ignores case.
BLOCKREGEX = os.getenv('BLOCKREGEX', '').split()

RESOLVE = parse_resolve(os.getenv('RESOLVE', ''))

WORKER_COUNT = int(os.getenv('WORKER_COUNT', os.cpu_count() or 1))
QUEUE_SIZE = int(os.getenv('QUEUE_SIZE', 0))
