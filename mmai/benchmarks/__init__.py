"""Decision latency benchmarks."""

from .runner import BenchmarkResult, save_result
from .decision_bench import random_observation, run_decision_benchmark

__all__ = ["BenchmarkResult", "save_result", "random_observation", "run_decision_benchmark"]
