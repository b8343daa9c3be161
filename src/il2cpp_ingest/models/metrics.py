"""Performance analysis models."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..core.config import settings


class PerformanceThresholds(BaseModel):
    """Limits above which an operation is reported as a bottleneck."""

    max_operation_duration_ms: float = Field(default=settings.PERF_MAX_OPERATION_MS, gt=0)
    max_memory_bytes: int = Field(default=settings.PERF_MAX_MEMORY_BYTES, gt=0)
    max_cpu_percent: float = Field(default=settings.PERF_MAX_CPU_PERCENT, gt=0)
    max_error_rate_percent: float = Field(default=settings.PERF_MAX_ERROR_RATE_PERCENT, gt=0)
    max_concurrent_operations: Optional[int] = Field(default=None, ge=1)


class Bottleneck(BaseModel):
    """One detected bottleneck."""

    type: str
    severity: float = Field(..., ge=0, le=100)
    description: str
    affected_operations: List[str] = Field(default_factory=list)
    suggestion: Optional[str] = None


class OptimizationRecommendation(BaseModel):
    """Suggested tuning, ranked by expected impact."""

    category: str
    description: str
    impact: int = Field(..., ge=0, le=100)
    difficulty: int = Field(..., ge=1, le=5)
    implementation: str
    estimated_improvement_percent: Optional[float] = None


class BottleneckReport(BaseModel):
    """Bottlenecks plus recommendations at one point in time."""

    bottlenecks: List[Bottleneck] = Field(default_factory=list)
    recommendations: List[OptimizationRecommendation] = Field(default_factory=list)
    total_bottlenecks: int = 0
    critical_bottlenecks: int = 0
    average_severity: float = 0.0
    generated_at: datetime = Field(default_factory=datetime.now)


class PerformanceRegression(BaseModel):
    """An operation that got slower than its saved baseline."""

    operation_name: str
    baseline_ms: float
    current_ms: float
    regression_percent: float
    severity: float = Field(..., ge=0, le=100)
    detected_at: datetime = Field(default_factory=datetime.now)
