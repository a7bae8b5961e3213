"""
mmai/benchmarks/runner.py

Benchmark result container and on-disk layout.

Results are written as JSON under <output_dir>/<name>/<timestamp>.json so that
runs of the same benchmark sort chronologically.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

# Canonical timestamp format used for file names and result timestamps.
TIMESTAMP_FMT = "%Y-%m-%d_%H%M%S"


def _now_stamp() -> str:
    """Return current time in the canonical benchmark timestamp format."""
    return datetime.now().strftime(TIMESTAMP_FMT)


@dataclass
class BenchmarkResult:
    """
    Container for benchmark results.

    Attributes:
        name: Human-readable benchmark name
        config: Parameters used for the benchmark
        timings: Mean per-stage timings in seconds (e.g., {"inference": 0.0012})
        metrics: Derived metrics (e.g., {"decisions_per_sec": 800})
        metadata: System information and context (device, model path, etc.)
        timestamp: Timestamp when the benchmark was run (format: YYYY-MM-DD_HHMMSS)
        notes: Free-text context about the run
    """
    name: str
    config: Dict[str, Any] = field(default_factory=dict)
    timings: Dict[str, float] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now_stamp)
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BenchmarkResult":
        """Construct from dictionary (for loading from JSON)."""
        return cls(**data)


def save_result(result: BenchmarkResult, output_dir: str) -> Path:
    """Writes `result` as JSON and returns the file path."""
    bench_dir = Path(output_dir) / result.name
    bench_dir.mkdir(parents=True, exist_ok=True)
    json_path = bench_dir / f"{result.timestamp}.json"
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(result.to_dict(), f, indent=2)
    logger.info("Saved results to %s", json_path)
    return json_path
