"""Tests for stage duration history and time-to-completion estimates."""

from datetime import UTC, datetime

import pytest

from app.core.metrics import MetricsRecorder
from app.core.progress_estimator import (
    BASE_STAGE_SECONDS,
    ProgressEstimator,
    StageDurationHistory,
)
from app.core.schemas_pipeline import PipelineRun, StageStatus


def _run(started_at: float = 1000.0) -> PipelineRun:
    run = PipelineRun()
    run.started_at = started_at
    return run


def test_history_keeps_only_latest_samples():
    history = StageDurationHistory(capacity=3)
    for duration in (1, 2, 3, 4, 5):
        history.record("analysis", duration)

    assert history.samples("analysis") == [3, 4, 5]
    assert history.sample_count("analysis") == 3
    assert history.average("analysis") == 4


def test_history_defaults_to_base_durations():
    history = StageDurationHistory()

    assert history.average("planning") == BASE_STAGE_SECONDS["planning"]
    assert history.average("unknown_stage") == 10.0
    stats = history.stats("coding_prompts")
    assert stats.sample_count == 0
    assert stats.average_time == 15.0


def test_history_stats():
    history = StageDurationHistory()
    for duration in (2.0, 4.0, 6.0):
        history.record("analysis", duration)

    stats = history.stats("analysis")

    assert stats.average_time == 4.0
    assert stats.min_time == 2.0
    assert stats.max_time == 6.0
    assert stats.sample_count == 3
    assert stats.standard_deviation == pytest.approx(1.633, abs=1e-3)


def test_history_records_completion_event():
    metrics = MetricsRecorder()
    history = StageDurationHistory(metrics=metrics)
    history.record("analysis", 2.5)

    assert metrics.count("stage_completion_time") == 1
    assert metrics.total("stage_completion_time") == 2.5


def test_history_rejects_invalid_capacity():
    with pytest.raises(ValueError):
        StageDurationHistory(capacity=0)


def test_estimate_for_fresh_run_uses_base_durations():
    estimator = ProgressEstimator(clock=lambda: 1000.0)

    estimate = estimator.estimate(_run())

    assert estimate.estimated_total == 50.0
    assert estimate.estimated_remaining == 50.0
    assert estimate.confidence == 0.2
    assert estimate.is_reliable is False
    assert estimate.completion_time == datetime.fromtimestamp(1050.0, UTC)


def test_estimate_uses_live_projection_past_ten_percent():
    history = StageDurationHistory()
    history.record("analysis", 6.0)
    estimator = ProgressEstimator(history=history, clock=lambda: 1010.0)

    run = _run()
    analysis = run.stage("analysis")
    analysis.status = StageStatus.COMPLETED
    analysis.start_time, analysis.end_time = 1000.0, 1006.0
    planning = run.stage("planning")
    planning.status = StageStatus.PROCESSING
    planning.start_time = 1006.0
    planning.progress = 50

    estimate = estimator.estimate(run)

    # analysis 6 + planning projected 8 (4s at 50%) + pending 10 + 15 + 5
    assert estimate.estimated_total == 44.0
    assert estimate.estimated_remaining == 34.0
    # 0.5 + 0.1 * (1/10) + 0.2 - 0.3 * 34/44
    assert estimate.confidence == 0.48


def test_estimate_below_projection_threshold_uses_average():
    estimator = ProgressEstimator(clock=lambda: 1010.0)
    run = _run()
    analysis = run.stage("analysis")
    analysis.status = StageStatus.COMPLETED
    analysis.start_time, analysis.end_time = 1000.0, 1006.0
    planning = run.stage("planning")
    planning.status = StageStatus.PROCESSING
    planning.start_time = 1006.0
    planning.progress = 5

    estimate = estimator.estimate(run)

    # planning: max(average 12, elapsed 4) -> 8 seconds left
    assert estimate.estimated_remaining == 8.0 + 10.0 + 15.0 + 5.0


def test_confidence_is_clamped():
    history = StageDurationHistory()
    for key in BASE_STAGE_SECONDS:
        for _ in range(10):
            history.record(key, 1.0)
    estimator = ProgressEstimator(history=history, clock=lambda: 1000.0)

    run = _run(started_at=900.0)
    for stage in run.stages:
        stage.status = StageStatus.COMPLETED
        stage.start_time, stage.end_time = 900.0, 901.0

    estimate = estimator.estimate(run)

    assert estimate.confidence == 0.95
    assert estimate.estimated_remaining == 0
    # Nothing left to estimate, so the estimate is not "reliable"
    assert estimate.is_reliable is False


def test_reliable_estimate_with_history():
    history = StageDurationHistory()
    for key in BASE_STAGE_SECONDS:
        for _ in range(10):
            history.record(key, 2.0)
    estimator = ProgressEstimator(history=history, clock=lambda: 1000.0)

    estimate = estimator.estimate(_run())

    # 0.5 + 0.1 * 5 - 0.3 * 10/10 = 0.7
    assert estimate.confidence == 0.7
    assert estimate.estimated_remaining == 10.0
    assert estimate.is_reliable is True
