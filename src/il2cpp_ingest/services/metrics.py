"""
Performance metrics collection for the ingestion engines.

Both the chunked processor and the batch vector store can report into a
shared PerformanceMetricsCollector; the collector keeps per-operation timing
samples and turns them into summaries for logging or reporting.
"""

import asyncio
import functools
import json
import math
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, Iterator, List, Optional, Union

import psutil

from ..core.config import settings
from ..core.logging import logger
from ..models.chunk import ProcessingResult
from ..models.metrics import (
    Bottleneck,
    BottleneckReport,
    OptimizationRecommendation,
    PerformanceRegression,
    PerformanceThresholds,
)
from ..models.record import BatchInsertResult


class MovingAverage:
    """Windowed moving average; damps oscillation in ETA and latency readings."""

    def __init__(self, window_size: int = 20):
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self._samples: Deque[float] = deque(maxlen=window_size)

    def add(self, value: float):
        self._samples.append(value)

    @property
    def value(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    def __len__(self) -> int:
        return len(self._samples)


@dataclass
class OperationStats:
    """Accumulated timing for one named operation."""

    name: str
    count: int = 0
    errors: int = 0
    total_ms: float = 0.0
    min_ms: float = math.inf
    max_ms: float = 0.0
    samples: Deque[float] = field(default_factory=lambda: deque(maxlen=1000))
    custom: Dict[str, float] = field(default_factory=dict)
    peak_memory_bytes: int = 0

    def record(
        self,
        duration_ms: float,
        success: bool = True,
        memory_bytes: Optional[int] = None,
        **custom: float,
    ):
        self.count += 1
        if not success:
            self.errors += 1
        if memory_bytes is not None:
            self.peak_memory_bytes = max(self.peak_memory_bytes, memory_bytes)
        self.total_ms += duration_ms
        self.min_ms = min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        self.samples.append(duration_ms)
        for key, value in custom.items():
            self.custom[key] = self.custom.get(key, 0.0) + value

    @property
    def average_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0

    @property
    def p95_ms(self) -> float:
        if not self.samples:
            return 0.0
        ordered = sorted(self.samples)
        rank = max(0, math.ceil(0.95 * len(ordered)) - 1)
        return ordered[rank]

    @property
    def error_rate(self) -> float:
        """Error rate as percentage."""
        return (self.errors / self.count * 100) if self.count > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "count": self.count,
            "errors": self.errors,
            "error_rate_percent": round(self.error_rate, 1),
            "total_ms": round(self.total_ms, 2),
            "average_ms": round(self.average_ms, 2),
            "min_ms": round(self.min_ms, 2) if self.count else 0.0,
            "max_ms": round(self.max_ms, 2),
            "p95_ms": round(self.p95_ms, 2),
            "peak_memory_bytes": self.peak_memory_bytes,
            "custom": dict(self.custom),
        }


class PerformanceMetricsCollector:
    """
    Accumulates timing and throughput data from the ingestion engines.

    Thread-safe: sync tracking may happen inside executor threads while the
    event loop records batch results. Samples are compared against
    PerformanceThresholds to report bottlenecks, and against saved baselines
    to report regressions.
    """

    CHUNK_RUN = "chunk_processing"
    BATCH_INSERT = "batch_insert"

    CRITICAL_SEVERITY = 70.0
    LOW_PARALLEL_EFFICIENCY = 50.0

    def __init__(self, thresholds: Optional[PerformanceThresholds] = None):
        self.thresholds = thresholds or PerformanceThresholds()
        self._lock = threading.Lock()
        self._process = psutil.Process()
        self._operations: Dict[str, OperationStats] = {}
        self._baselines: Dict[str, Dict[str, float]] = {}
        self._cpu_samples: Deque[float] = deque(maxlen=100)
        self._active_operations = 0
        self._peak_active_operations = 0
        self._started_at = time.time()
        self._documents_inserted = 0
        self._documents_failed = 0
        self._chunks_processed = 0

    def set_thresholds(self, thresholds: Optional[PerformanceThresholds] = None, **updates: Any):
        """Replace thresholds wholesale, override single limits, or both."""
        merged = (thresholds or self.thresholds).model_copy(update=updates)
        self.thresholds = PerformanceThresholds.model_validate(merged.model_dump())
        return self.thresholds

    # ==================== Recording ====================

    def record(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        memory_bytes: Optional[int] = None,
        **custom: float,
    ):
        """Record one timed sample for an operation."""
        with self._lock:
            stats = self._operations.get(name)
            if stats is None:
                stats = self._operations[name] = OperationStats(name=name)
            stats.record(duration_ms, success=success, memory_bytes=memory_bytes, **custom)

    def record_cpu_usage(self, percent: float):
        with self._lock:
            self._cpu_samples.append(percent)

    def sample_cpu(self) -> float:
        """Sample process CPU usage since the previous call."""
        percent = self._process.cpu_percent(interval=None)
        self.record_cpu_usage(percent)
        return percent

    @contextmanager
    def track(self, name: str) -> Iterator[None]:
        """
        Time the enclosed block. Works around sync code and around ``await``
        expressions inside coroutines alike; a raised exception is recorded
        as an error and re-raised. Resident memory at exit counts toward the
        operation's peak.
        """
        with self._lock:
            self._active_operations += 1
            self._peak_active_operations = max(self._peak_active_operations, self._active_operations)
        start = time.perf_counter()
        success = True
        try:
            yield
        except BaseException:
            success = False
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            with self._lock:
                self._active_operations -= 1
            self.record(
                name,
                duration_ms,
                success=success,
                memory_bytes=self._process.memory_info().rss,
            )

    def timed(self, name: str):
        """Decorator form of track() for sync and async callables."""

        def decorator(func):
            if asyncio.iscoroutinefunction(func):

                @functools.wraps(func)
                async def async_wrapper(*args, **kwargs):
                    with self.track(name):
                        return await func(*args, **kwargs)

                return async_wrapper

            @functools.wraps(func)
            def wrapper(*args, **kwargs):
                with self.track(name):
                    return func(*args, **kwargs)

            return wrapper

        return decorator

    def record_processing_result(self, result: ProcessingResult):
        """Absorb the outcome of a chunked processing run."""
        metrics = result.performance_metrics
        duration_ms = (
            metrics.total_processing_time_ms
            if metrics
            else (result.end_time - result.start_time) * 1000
        )
        custom = {
            "chunks": float(result.total_chunks),
            "processed_chunks": float(result.processed_chunks),
            "failed_chunks": float(result.failed_chunks),
        }
        if metrics:
            custom["parallel_efficiency_score"] = metrics.parallel_efficiency_score
        self.record(
            self.CHUNK_RUN,
            duration_ms,
            success=result.failed_chunks == 0,
            memory_bytes=self._process.memory_info().rss,
            **custom,
        )
        self.sample_cpu()
        with self._lock:
            self._chunks_processed += result.processed_chunks - result.failed_chunks

    def record_batch_insert(self, result: BatchInsertResult):
        """Absorb the outcome of a batch insert call."""
        metrics = result.metrics
        self.record(
            self.BATCH_INSERT,
            metrics.total_processing_time_ms,
            success=result.failed_inserts == 0,
            documents=float(result.total_documents),
            embedding_ms=metrics.embedding_generation_time_ms,
            database_ms=metrics.database_insertion_time_ms,
            retries=float(metrics.retries_performed),
            batches=float(metrics.batches_processed),
        )
        self.sample_cpu()
        with self._lock:
            self._documents_inserted += result.successful_inserts
            self._documents_failed += result.failed_inserts

    # ==================== Reporting ====================

    def get_operation_stats(self, name: str) -> Optional[OperationStats]:
        with self._lock:
            return self._operations.get(name)

    @property
    def operation_names(self) -> List[str]:
        with self._lock:
            return sorted(self._operations)

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self._started_at

    @property
    def throughput(self) -> float:
        """Inserted documents per second since the collector was created."""
        elapsed = self.elapsed_seconds
        return self._documents_inserted / elapsed if elapsed > 0 else 0.0

    def snapshot(self) -> Dict[str, Any]:
        """Point-in-time summary including process memory usage."""
        memory = self._process.memory_info()
        with self._lock:
            operations = {name: stats.to_dict() for name, stats in self._operations.items()}
            cpu_samples = list(self._cpu_samples)
            return {
                "elapsed_seconds": round(self.elapsed_seconds, 1),
                "documents_inserted": self._documents_inserted,
                "documents_failed": self._documents_failed,
                "chunks_processed": self._chunks_processed,
                "throughput_docs_per_sec": round(self.throughput, 2),
                "memory_rss_bytes": memory.rss,
                "average_cpu_percent": round(sum(cpu_samples) / len(cpu_samples), 1) if cpu_samples else 0.0,
                "peak_active_operations": self._peak_active_operations,
                "operations": operations,
            }

    # ==================== Analysis ====================

    def detect_bottlenecks(self) -> List[Bottleneck]:
        """
        Compare collected samples with the thresholds.

        Severity is the overshoot ratio scaled per kind (duration x50,
        error rate x50, memory x60, CPU x70, concurrency x40), capped at 100.
        Most severe first.
        """
        limits = self.thresholds
        with self._lock:
            operations = list(self._operations.values())
            cpu_samples = list(self._cpu_samples)
            peak_active = self._peak_active_operations
            slow_samples = {
                stats.name: [d for d in stats.samples if d > limits.max_operation_duration_ms]
                for stats in operations
            }

        bottlenecks: List[Bottleneck] = []

        slow = {name: samples for name, samples in slow_samples.items() if samples}
        if slow:
            durations = [d for samples in slow.values() for d in samples]
            average = sum(durations) / len(durations)
            bottlenecks.append(
                Bottleneck(
                    type="slow_operation",
                    severity=min(100.0, average / limits.max_operation_duration_ms * 50),
                    description=(
                        f"{len(durations)} operations exceeded {limits.max_operation_duration_ms:.0f}ms "
                        f"(average {average:.0f}ms)"
                    ),
                    affected_operations=sorted(slow),
                    suggestion="Raise concurrency or shrink chunks and batches for the affected operations",
                )
            )

        failing = [s for s in operations if s.count and s.error_rate > limits.max_error_rate_percent]
        if failing:
            average = sum(s.error_rate for s in failing) / len(failing)
            bottlenecks.append(
                Bottleneck(
                    type="high_error_rate",
                    severity=min(100.0, average / limits.max_error_rate_percent * 50),
                    description=f"Error rate {average:.1f}% exceeds {limits.max_error_rate_percent:.1f}%",
                    affected_operations=sorted(s.name for s in failing),
                    suggestion="Inspect failed chunks and batches; increase retries for transient store errors",
                )
            )

        heavy = [s for s in operations if s.peak_memory_bytes > limits.max_memory_bytes]
        if heavy:
            average = sum(s.peak_memory_bytes for s in heavy) / len(heavy)
            bottlenecks.append(
                Bottleneck(
                    type="high_memory_usage",
                    severity=min(100.0, average / limits.max_memory_bytes * 60),
                    description=(
                        f"Peak memory {average / (1024 * 1024):.1f}MB exceeds "
                        f"{limits.max_memory_bytes / (1024 * 1024):.1f}MB"
                    ),
                    affected_operations=sorted(s.name for s in heavy),
                    suggestion="Lower memory_limit_mb or the batch memory budget",
                )
            )

        if cpu_samples:
            average = sum(cpu_samples) / len(cpu_samples)
            if average > limits.max_cpu_percent:
                bottlenecks.append(
                    Bottleneck(
                        type="high_cpu_usage",
                        severity=min(100.0, average / limits.max_cpu_percent * 70),
                        description=f"Average CPU {average:.1f}% exceeds {limits.max_cpu_percent:.1f}%",
                        suggestion="Reduce max_concurrent_chunks or batch concurrency",
                    )
                )

        if limits.max_concurrent_operations and peak_active > limits.max_concurrent_operations:
            bottlenecks.append(
                Bottleneck(
                    type="high_concurrency",
                    severity=min(100.0, peak_active / limits.max_concurrent_operations * 40),
                    description=(
                        f"{peak_active} concurrent operations exceed {limits.max_concurrent_operations}"
                    ),
                    suggestion="Lower concurrency or the connection pool size",
                )
            )

        bottlenecks.sort(key=lambda b: b.severity, reverse=True)
        return bottlenecks

    def get_optimization_recommendations(self) -> List[OptimizationRecommendation]:
        """Tuning suggestions derived from the collected samples, highest impact first."""
        limits = self.thresholds
        with self._lock:
            operations = dict(self._operations)

        recommendations: List[OptimizationRecommendation] = []

        near_limit = sorted(
            name
            for name, stats in operations.items()
            if stats.count and stats.average_ms > limits.max_operation_duration_ms * 0.8
        )
        if near_limit:
            recommendations.append(
                OptimizationRecommendation(
                    category="parallelization",
                    description=f"Operations close to the duration limit: {', '.join(near_limit)}",
                    impact=85,
                    difficulty=3,
                    implementation="Raise max_concurrent_chunks or batch concurrency so work overlaps",
                    estimated_improvement_percent=60,
                )
            )

        chunk_runs = operations.get(self.CHUNK_RUN)
        if chunk_runs and chunk_runs.count and "parallel_efficiency_score" in chunk_runs.custom:
            efficiency = chunk_runs.custom["parallel_efficiency_score"] / chunk_runs.count
            if efficiency < self.LOW_PARALLEL_EFFICIENCY:
                recommendations.append(
                    OptimizationRecommendation(
                        category="chunking",
                        description=f"Parallel efficiency averages {efficiency:.0f}%",
                        impact=75,
                        difficulty=2,
                        implementation="Use larger chunks so per-chunk overhead stops dominating",
                        estimated_improvement_percent=50,
                    )
                )

        inserts = operations.get(self.BATCH_INSERT)
        if inserts and inserts.custom.get("retries", 0) > 0:
            recommendations.append(
                OptimizationRecommendation(
                    category="batching",
                    description=f"{inserts.custom['retries']:.0f} batch retries were needed",
                    impact=70,
                    difficulty=2,
                    implementation="Switch to ADAPTIVE batching or lower batch_size",
                    estimated_improvement_percent=30,
                )
            )

        heavy = sorted(
            name
            for name, stats in operations.items()
            if stats.peak_memory_bytes > limits.max_memory_bytes * 0.7
        )
        if heavy:
            recommendations.append(
                OptimizationRecommendation(
                    category="memory",
                    description=f"Memory close to the limit during: {', '.join(heavy)}",
                    impact=65,
                    difficulty=3,
                    implementation="Lower memory_limit_mb or stream smaller dumps per run",
                    estimated_improvement_percent=40,
                )
            )

        recommendations.sort(key=lambda r: r.impact, reverse=True)
        return recommendations

    def generate_bottleneck_report(self) -> BottleneckReport:
        bottlenecks = self.detect_bottlenecks()
        severities = [b.severity for b in bottlenecks]
        return BottleneckReport(
            bottlenecks=bottlenecks,
            recommendations=self.get_optimization_recommendations(),
            total_bottlenecks=len(bottlenecks),
            critical_bottlenecks=sum(1 for s in severities if s >= self.CRITICAL_SEVERITY),
            average_severity=sum(severities) / len(severities) if severities else 0.0,
        )

    def save_baseline(self, name: str) -> Dict[str, float]:
        """Remember current per-operation average durations under ``name``."""
        with self._lock:
            baseline = {
                op: stats.average_ms for op, stats in self._operations.items() if stats.count
            }
            self._baselines[name] = baseline
        logger.info(f"Saved performance baseline '{name}' ({len(baseline)} operations)")
        return dict(baseline)

    def detect_regressions(
        self, baseline_name: str, threshold_percent: Optional[float] = None
    ) -> List[PerformanceRegression]:
        """
        Operations whose average duration grew more than ``threshold_percent``
        over the saved baseline. Severity is half the regression percentage,
        capped at 100. An unknown baseline yields no regressions.
        """
        threshold = settings.PERF_REGRESSION_PERCENT if threshold_percent is None else threshold_percent
        with self._lock:
            baseline = self._baselines.get(baseline_name)
            current = {op: stats.average_ms for op, stats in self._operations.items() if stats.count}
        if baseline is None:
            logger.warning(f"No performance baseline named '{baseline_name}'")
            return []

        regressions: List[PerformanceRegression] = []
        for op, baseline_ms in baseline.items():
            if op not in current or baseline_ms <= 0:
                continue
            percent = (current[op] - baseline_ms) / baseline_ms * 100
            if percent > threshold:
                regressions.append(
                    PerformanceRegression(
                        operation_name=op,
                        baseline_ms=baseline_ms,
                        current_ms=current[op],
                        regression_percent=percent,
                        severity=min(100.0, percent / 2),
                    )
                )
        regressions.sort(key=lambda r: r.regression_percent, reverse=True)
        return regressions

    def export_data(self, path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
        """Everything the collector knows as JSON-ready data, optionally written to ``path``."""
        with self._lock:
            baselines = {name: dict(values) for name, values in self._baselines.items()}
        data = {
            "exported_at": datetime.now().isoformat(),
            "thresholds": self.thresholds.model_dump(),
            "baselines": baselines,
            "snapshot": self.snapshot(),
            "report": self.generate_bottleneck_report().model_dump(mode="json"),
        }
        if path is not None:
            Path(path).write_text(json.dumps(data, indent=2), encoding="utf-8")
            logger.info(f"Exported performance data to {path}")
        return data

    def log_summary(self):
        """Log a summary of collected metrics."""
        summary = self.snapshot()
        logger.info(
            f"Ingestion metrics: {summary['documents_inserted']} docs inserted, "
            f"{summary['documents_failed']} failed, "
            f"{summary['chunks_processed']} chunks in {summary['elapsed_seconds']:.1f}s "
            f"({summary['throughput_docs_per_sec']:.2f} docs/sec), "
            f"RSS {summary['memory_rss_bytes'] / (1024 * 1024):.1f}MB"
        )
        for name, stats in summary["operations"].items():
            logger.info(
                f"  {name}: {stats['count']} runs, avg {stats['average_ms']:.0f}ms, "
                f"p95 {stats['p95_ms']:.0f}ms, errors {stats['errors']}"
            )
        for bottleneck in self.detect_bottlenecks():
            logger.warning(
                f"Bottleneck {bottleneck.type} (severity {bottleneck.severity:.0f}): "
                f"{bottleneck.description}"
            )

    def reset(self):
        """Clear samples and counters; thresholds and saved baselines are kept."""
        with self._lock:
            self._operations.clear()
            self._cpu_samples.clear()
            self._peak_active_operations = self._active_operations
            self._started_at = time.time()
            self._documents_inserted = 0
            self._documents_failed = 0
            self._chunks_processed = 0
