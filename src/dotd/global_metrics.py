"""Global metrics tracking for dotd."""
import time
from dataclasses import dataclass, field
from typing import Dict, List
from .config import logger

SOURCES = ("resolve", "blocklist", "blockregex", "upstream")


@dataclass
class GlobalMetrics:
    """Tracks how queries were answered between two stats intervals."""

    total_queries: int = 0
    answered: Dict[str, int] = field(default_factory=lambda: dict.fromkeys(SOURCES, 0))
    dropped: int = 0
    response_times: List[float] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    last_log_time: float = field(default_factory=time.time)

    def record_answer(self, source: str, response_time: float = None):
        """Record a query answered by ``source``, with upstream latency if forwarded."""
        self.total_queries += 1
        self.answered[source] = self.answered.get(source, 0) + 1
        if response_time is not None:
            self.response_times.append(response_time)
            # Keep list bounded to last 1000 entries
            if len(self.response_times) > 1000:
                self.response_times = self.response_times[-1000:]

    def record_drop(self):
        """Record a query that got no reply."""
        self.total_queries += 1
        self.dropped += 1

    def get_queries_per_minute(self) -> float:
        """Calculate queries per minute since last log."""
        elapsed_minutes = (time.time() - self.last_log_time) / 60.0
        if elapsed_minutes == 0:
            return 0.0
        return self.total_queries / elapsed_minutes

    @property
    def blocked(self) -> int:
        return self.answered.get("blocklist", 0) + self.answered.get("blockregex", 0)

    def get_mean_response_time(self) -> float:
        """Get mean upstream response time."""
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)

    def log_stats(self):
        """Log global statistics and reset the counters."""
        qpm = self.get_queries_per_minute()

        logger.info("=== Global Metrics ===")

        answer_stats = (
            f"Resolved: {self.answered.get('resolve', 0)}, "
            f"Blocked: {self.blocked}, "
            f"Forwarded: {self.answered.get('upstream', 0)}, "
            f"Dropped: {self.dropped}"
        )

        if self.response_times:
            response_stats = (
                f", Upstream times: min={min(self.response_times):.3f}s, "
                f"mean={self.get_mean_response_time():.3f}s, "
                f"max={max(self.response_times):.3f}s"
            )
        else:
            response_stats = ""

        logger.info(f"Queries/min: {qpm:.1f}, {answer_stats}{response_stats}")

        # Reset counters for next interval
        self.total_queries = 0
        self.answered = dict.fromkeys(SOURCES, 0)
        self.dropped = 0
        self.response_times = []
        self.last_log_time = time.time()
