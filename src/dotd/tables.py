"""Read-only lookup tables built once from configuration."""
import re
from typing import Dict, Iterable, Optional

from .exceptions import ConfigurationError


def normalize_name(name: str) -> str:
    """Strip the trailing root label and lower-case a domain name."""
    name = str(name)
    if name.endswith('.'):
        name = name[:-1]
    return name.lower()


def wildcard_for(name: str) -> Optional[str]:
    """
    Return the ``*.<second-level>.<tld>`` key for a normalized name.

    Names with fewer than two labels have no wildcard form.
    """
    labels = name.split('.')
    if len(labels) < 2:
        return None
    return f"*.{labels[-2]}.{labels[-1]}"


class StaticResolveTable:
    """Maps domain names, or a two-label wildcard, to a literal IP string."""

    def __init__(self, mapping: Optional[Dict[str, str]] = None):
        self._entries = {
            normalize_name(name): target
            for name, target in (mapping or {}).items()
            if target
        }

    def __len__(self):
        return len(self._entries)

    def lookup(self, name: str) -> Optional[str]:
        """Exact match first, then the wildcard of the last two labels."""
        name = normalize_name(name)
        target = self._entries.get(name)
        if target is not None:
            return target

        wildcard = wildcard_for(name)
        if wildcard is None:
            return None
        return self._entries.get(wildcard)


class Blocklist:
    """Exact domain names that must be answered with NXDOMAIN."""

    def __init__(self, names: Optional[Iterable[str]] = None):
        self._names = frozenset(normalize_name(n) for n in (names or ()) if n)

    def __contains__(self, name):
        return normalize_name(name) in self._names

    def __len__(self):
        return len(self._names)


class BlockRegexList:
    """
    Ordered block patterns; a name is blocked if any of them matches.

    Names are matched in lower case, so patterns ignore case too.
    """

    def __init__(self, patterns: Optional[Iterable[str]] = None):
        compiled = []
        for pattern in patterns or ():
            try:
                compiled.append(re.compile(pattern, re.IGNORECASE))
            except re.error as e:
                raise ConfigurationError(f"Invalid block pattern '{pattern}': {e}") from e
        self._patterns = tuple(compiled)

    def __len__(self):
        return len(self._patterns)

    def match(self, name: str) -> Optional[str]:
        """Return the first pattern found in ``name``, or None."""
        name = normalize_name(name)
        for pattern in self._patterns:
            if pattern.search(name):
                return pattern.pattern
        return None
