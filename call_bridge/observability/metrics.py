"""Per-call processing metrics.

Provides the CallMetrics dataclass and log_call_metrics() for emitting one
structured JSON line per processed webhook, suitable for log-based metric
extraction.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime


@dataclass
class CallMetrics:
    """All metrics collected for a single call processing run."""

    call_id: str
    request_id: str
    status: str
    processing_time_ms: int
    audio_size_bytes: int = 0
    audio_format: str = ""
    transcript_length: int = 0
    transcript_duration_seconds: float = 0.0
    stage_timings: dict[str, float] = field(default_factory=dict)
    retry_count: int = 0
    error_stage: str | None = None
    error_message: str | None = None


def log_call_metrics(metrics: CallMetrics) -> None:
    """Emit call metrics as a single structured JSON line to stdout.

    Args:
        metrics: Populated CallMetrics dataclass.
    """
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO",
        "metric_type": "call_completion",
        **asdict(metrics),
    }
    print(json.dumps(entry), flush=True)
