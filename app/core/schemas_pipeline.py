"""Pydantic schemas for plan pipeline runs, stages and progress reporting."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


# =============================================================================
# Stages
# =============================================================================


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({StageStatus.COMPLETED, StageStatus.FAILED})

# Stage keys in graph order, with display names
STAGE_DEFINITIONS: list[tuple[str, str]] = [
    ("analysis", "Idea analysis"),
    ("planning", "Layered planning"),
    ("visualizations", "Visualization generation"),
    ("coding_prompts", "Coding prompt engineering"),
    ("aggregation", "Quality validation and assembly"),
]

STAGE_KEYS = [key for key, _ in STAGE_DEFINITIONS]


class Stage(BaseModel):
    """One node of the pipeline graph."""

    key: str
    name: str
    status: StageStatus = StageStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    start_time: float | None = None
    end_time: float | None = None
    result: Any = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration(self) -> float | None:
        if self.start_time is None or self.end_time is None:
            return None
        return max(self.end_time - self.start_time, 0.0)

    def can_transition(self, new_status: StageStatus) -> bool:
        """Stages only move forward: pending -> processing -> completed/failed."""
        if new_status == self.status:
            return not self.is_terminal
        if self.status == StageStatus.PENDING:
            return new_status in (StageStatus.PROCESSING, StageStatus.FAILED)
        if self.status == StageStatus.PROCESSING:
            return new_status in TERMINAL_STATUSES
        return False


# =============================================================================
# Progress
# =============================================================================


class TimeEstimate(BaseModel):
    """Projected time to completion. Durations are in seconds."""

    estimated_total: float = 0
    estimated_remaining: float = 0
    confidence: float = Field(0.5, ge=0, le=1)
    completion_time: datetime
    is_reliable: bool = False


class PerformanceMetrics(BaseModel):
    """Durations over completed stages, in seconds."""

    average_stage_time: float = 0
    total_elapsed_time: float = 0
    estimated_remaining_time: float = 0


class StageTimeStats(BaseModel):
    """Historical duration statistics for one stage."""

    stage: str
    average_time: float
    min_time: float
    max_time: float
    sample_count: int = 0
    standard_deviation: float = 0


# =============================================================================
# Runs
# =============================================================================


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:16]}"


class PipelineRun(BaseModel):
    """One execution of the five-stage graph for one idea."""

    id: str = Field(default_factory=new_run_id)
    language: str = "typescript"
    stages: list[Stage] = Field(
        default_factory=lambda: [Stage(key=key, name=name) for key, name in STAGE_DEFINITIONS]
    )
    current_stage_index: int = 0
    overall_progress: int = Field(0, ge=0, le=100)
    is_complete: bool = False
    has_error: bool = False
    results: dict[str, Any] = Field(default_factory=dict)
    started_at: float | None = None
    time_estimate: TimeEstimate | None = None
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)

    def stage(self, key: str) -> Stage:
        for stage in self.stages:
            if stage.key == key:
                return stage
        raise KeyError(f"Unknown stage: {key}")

    def stage_index(self, key: str) -> int:
        return STAGE_KEYS.index(key)

    def refresh(self) -> None:
        """Recompute overall progress and the completion/error flags from stage statuses."""
        completed = sum(1 for s in self.stages if s.status == StageStatus.COMPLETED)
        processing = sum(1 for s in self.stages if s.status == StageStatus.PROCESSING)
        total = len(self.stages)
        self.overall_progress = round(100 * (completed + 0.5 * processing) / total)
        self.is_complete = completed == total
        self.has_error = any(s.status == StageStatus.FAILED for s in self.stages)

    @property
    def failed_stage(self) -> Stage | None:
        return next((s for s in self.stages if s.status == StageStatus.FAILED), None)


class PipelineOutcome(BaseModel):
    """Final result of a run: either the assembled plan or the first stage error."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    failed_stage: str | None = None
    run: PipelineRun


class PipelineEvent(BaseModel):
    """Item yielded by ``PlanPipeline.stream``."""

    type: Literal["status", "complete"]
    run: PipelineRun
    outcome: PipelineOutcome | None = None


# =============================================================================
# API
# =============================================================================


class GeneratePlanRequest(BaseModel):
    """Request body for plan generation."""

    idea: str = Field(..., min_length=1, max_length=20000, description="Free-form product idea")
    language: str | None = Field(None, description="Target language for coding prompts")
