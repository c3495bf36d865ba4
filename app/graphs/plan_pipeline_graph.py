"""LangGraph pipeline turning a product idea into a development plan.

Graph: analyze -> plan -> fan_out_generation -> aggregate. The fan-out node
runs the visualization and coding-prompt stages concurrently and joins both
before returning. A failed stage routes straight to END.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

from langgraph.graph import END, StateGraph

from app.chains.analyze_idea import AnalysisResult, analyze_idea
from app.chains.assemble_plan import PlanDeliverable, assemble_plan
from app.chains.generate_coding_prompts import CodingPromptsResult, generate_coding_prompts
from app.chains.generate_visualizations import VisualizationResult, generate_visualizations
from app.chains.plan_layers import PlanningResult, plan_layers
from app.core.config import Settings, get_settings
from app.core.errors import PipelineTimeoutError, user_facing_message
from app.core.llm_gateway import LLMGateway
from app.core.logging import get_logger
from app.core.metrics import timer
from app.core.pipeline_status import PipelineStatusTracker, StatusCallback
from app.core.progress_estimator import ProgressEstimator, StageDurationHistory
from app.core.quality_scoring import HeuristicQualityScorer, QualityScorer
from app.core.schemas_pipeline import STAGE_KEYS, PipelineEvent, PipelineOutcome, PipelineRun

logger = get_logger(__name__)

MAX_STEPS = 8


@dataclass
class PlanPipelineState:
    """State for the plan pipeline graph."""

    # Input fields
    idea: str
    language: str
    run_id: str
    tracker: PipelineStatusTracker

    # Processing state
    step_count: int = 0
    analysis: AnalysisResult | None = None
    planning: PlanningResult | None = None
    visualizations: VisualizationResult | None = None
    coding_prompts: CodingPromptsResult | None = None
    parallel_time: float = 0.0

    # Output
    deliverable: PlanDeliverable | None = None
    error: str | None = None
    failed_stage: str | None = None


def _check_max_steps(state: PlanPipelineState) -> PlanPipelineState:
    """Check and increment step count, raise if exceeded."""
    state.step_count += 1
    if state.step_count > MAX_STEPS:
        raise RuntimeError(f"Graph exceeded max steps ({MAX_STEPS})")
    return state


def _continue_to(next_node: str) -> Callable[[PlanPipelineState], str]:
    """Route to ``next_node`` unless the previous node recorded an error."""

    def route(state: PlanPipelineState) -> str:
        if state.error:
            return END
        return next_node

    return route


class PlanPipeline:
    """
    Runs the five-stage plan graph.

    One instance may serve many runs; per-run state lives in the graph state
    and its ``PipelineStatusTracker``. Stage duration history and the
    gateway's cache are shared across runs.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        gateway: LLMGateway | None = None,
        scorer: QualityScorer | None = None,
        estimator: ProgressEstimator | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.gateway = gateway or LLMGateway(settings=self.settings)
        self.scorer = scorer or HeuristicQualityScorer()
        self.estimator = estimator or ProgressEstimator(
            history=StageDurationHistory(
                capacity=self.settings.STAGE_HISTORY_CAPACITY,
                metrics=self.gateway.metrics,
            ),
            clock=clock,
        )
        self._clock = clock
        self._graph = self._build_graph().compile()

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _analyze(self, state: PlanPipelineState) -> dict[str, Any]:
        """Node 1: analyze the idea."""
        state = _check_max_steps(state)
        analysis, error = await state.tracker.run_stage(
            "analysis",
            lambda on_progress: analyze_idea(
                state.idea,
                gateway=self.gateway,
                parser=self.gateway.parser,
                on_progress=on_progress,
            ),
        )
        if error:
            return {"error": error, "failed_stage": "analysis", "step_count": state.step_count}
        return {"analysis": analysis, "step_count": state.step_count}

    async def _plan(self, state: PlanPipelineState) -> dict[str, Any]:
        """Node 2: layered plan from the analysis."""
        state = _check_max_steps(state)
        planning, error = await state.tracker.run_stage(
            "planning",
            lambda on_progress: plan_layers(
                state.analysis,
                gateway=self.gateway,
                parser=self.gateway.parser,
                on_progress=on_progress,
            ),
        )
        if error:
            return {"error": error, "failed_stage": "planning", "step_count": state.step_count}
        return {"planning": planning, "step_count": state.step_count}

    async def _fan_out_generation(self, state: PlanPipelineState) -> dict[str, Any]:
        """Node 3: visualizations and coding prompts in parallel, joined before returning."""
        state = _check_max_steps(state)
        tracker = state.tracker
        start = time.perf_counter()

        with timer("Parallel generation", state.run_id):
            (visualizations, vis_error), (coding_prompts, prompts_error) = await asyncio.gather(
                tracker.run_stage(
                    "visualizations",
                    lambda on_progress: generate_visualizations(
                        state.planning,
                        gateway=self.gateway,
                        parser=self.gateway.parser,
                        on_progress=on_progress,
                    ),
                ),
                tracker.run_stage(
                    "coding_prompts",
                    lambda on_progress: generate_coding_prompts(
                        state.planning,
                        state.language,
                        gateway=self.gateway,
                        parser=self.gateway.parser,
                        on_progress=on_progress,
                    ),
                ),
            )

        update: dict[str, Any] = {
            "visualizations": visualizations,
            "coding_prompts": coding_prompts,
            "parallel_time": time.perf_counter() - start,
            "step_count": state.step_count,
        }
        if vis_error:
            update.update(error=vis_error, failed_stage="visualizations")
        elif prompts_error:
            update.update(error=prompts_error, failed_stage="coding_prompts")
        return update

    async def _assemble(self, state: PlanPipelineState, on_progress: Callable[[int], None]) -> PlanDeliverable:
        tracker = state.tracker
        processing_time = sum(s.duration or 0.0 for s in tracker.run.stages)
        deliverable = await assemble_plan(
            state.analysis,
            state.planning,
            state.visualizations,
            state.coding_prompts,
            gateway=self.gateway,
            parser=self.gateway.parser,
            scorer=self.scorer,
            min_prompt_count=self.settings.MIN_PROMPT_COUNT,
            acceptance_threshold=self.settings.QUALITY_ACCEPTANCE_THRESHOLD,
            version=self.settings.PLAN_VERSION,
            processing_time=processing_time,
            on_progress=on_progress,
        )
        deliverable.optimization_metrics = {
            "parallel_processing_time": round(state.parallel_time, 3),
            "total_processing_time": round(tracker.now() - (tracker.run.started_at or tracker.now()), 3),
            "cache_stats": self.gateway.cache.stats(),
        }
        return deliverable

    async def _aggregate(self, state: PlanPipelineState) -> dict[str, Any]:
        """Node 4: validate, score and assemble the deliverable."""
        state = _check_max_steps(state)
        deliverable, error = await state.tracker.run_stage("aggregation", partial(self._assemble, state))
        if error:
            return {"error": error, "failed_stage": "aggregation", "step_count": state.step_count}
        return {"deliverable": deliverable, "step_count": state.step_count}

    def _build_graph(self) -> StateGraph:
        """Build the plan pipeline graph."""
        graph = StateGraph(PlanPipelineState)

        graph.add_node("analyze", self._analyze)
        graph.add_node("plan", self._plan)
        graph.add_node("fan_out_generation", self._fan_out_generation)
        graph.add_node("aggregate", self._aggregate)

        graph.set_entry_point("analyze")
        graph.add_conditional_edges("analyze", _continue_to("plan"), {"plan": "plan", END: END})
        graph.add_conditional_edges(
            "plan",
            _continue_to("fan_out_generation"),
            {"fan_out_generation": "fan_out_generation", END: END},
        )
        graph.add_conditional_edges(
            "fan_out_generation",
            _continue_to("aggregate"),
            {"aggregate": "aggregate", END: END},
        )
        graph.add_edge("aggregate", END)

        return graph

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def validate_request(self, idea: str) -> None:
        """
        Raises:
            ValueError: If the idea is empty
            ConfigurationError: If the completion API key is missing
        """
        if not idea or not idea.strip():
            raise ValueError("Please provide a product idea")
        self.gateway.ensure_configured()

    async def _execute(
        self,
        idea: str,
        language: str,
        on_status: StatusCallback | None,
        queue: asyncio.Queue | None,
    ) -> PipelineOutcome:
        run = PipelineRun(language=language)
        tracker = PipelineStatusTracker(
            run, self.estimator, on_status=on_status, queue=queue, clock=self._clock
        )
        tracker.start()

        initial_state = PlanPipelineState(
            idea=idea.strip(),
            language=language,
            run_id=run.id,
            tracker=tracker,
        )

        logger.info(
            f"Starting plan pipeline ({len(idea)} chars, language={language})",
            extra={"run_id": run.id},
        )

        try:
            final_state = await asyncio.wait_for(
                self._graph.ainvoke(initial_state),
                timeout=self.settings.PIPELINE_TIMEOUT_SECONDS,
            )
        except TimeoutError:
            message = user_facing_message(
                PipelineTimeoutError(f"Run exceeded {self.settings.PIPELINE_TIMEOUT_SECONDS:.0f}s")
            )
            failed = tracker.fail_processing_stages(message)
            logger.error(
                f"Plan pipeline timed out, failed stages: {failed}",
                extra={"run_id": run.id},
            )
            return PipelineOutcome(
                success=False,
                error=message,
                failed_stage=failed[0] if failed else None,
                run=tracker.snapshot(),
            )
        except Exception as e:
            logger.exception(f"Plan pipeline crashed: {e}", extra={"run_id": run.id})
            message = user_facing_message(e)
            tracker.fail_processing_stages(message)
            return PipelineOutcome(success=False, error=message, run=tracker.snapshot())

        if final_state.get("error"):
            logger.warning(
                f"Plan pipeline stopped at {final_state.get('failed_stage')}",
                extra={"run_id": run.id},
            )
            return PipelineOutcome(
                success=False,
                error=final_state["error"],
                failed_stage=final_state.get("failed_stage"),
                run=tracker.snapshot(),
            )

        deliverable: PlanDeliverable = final_state["deliverable"]
        logger.info(
            f"Plan pipeline completed, quality {deliverable.metadata.quality_score}%",
            extra={"run_id": run.id},
        )
        return PipelineOutcome(
            success=True,
            data=deliverable.model_dump(mode="json"),
            run=tracker.snapshot(),
        )

    async def run(
        self,
        idea: str,
        language: str | None = None,
        on_status: StatusCallback | None = None,
    ) -> PipelineOutcome:
        """
        Run the whole pipeline for one idea.

        Args:
            idea: Free-form product idea
            language: Target language for coding prompts (defaults to settings)
            on_status: Receives a deep copy of the run after every stage change

        Returns:
            PipelineOutcome with the deliverable or the first stage error

        Raises:
            ValueError: If the idea is empty
            ConfigurationError: If the completion API key is missing
        """
        self.validate_request(idea)
        return await self._execute(idea, language or self.settings.DEFAULT_LANGUAGE, on_status, None)

    async def stream(self, idea: str, language: str | None = None) -> AsyncIterator[PipelineEvent]:
        """
        Run the pipeline and yield a status event per stage change, then a complete event.

        Raises:
            ValueError: If the idea is empty
            ConfigurationError: If the completion API key is missing
        """
        self.validate_request(idea)
        queue: asyncio.Queue[PipelineEvent] = asyncio.Queue()
        task = asyncio.create_task(
            self._execute(idea, language or self.settings.DEFAULT_LANGUAGE, None, queue)
        )

        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue

                getter.cancel()
                outcome = task.result()
                while not queue.empty():
                    yield queue.get_nowait()
                yield PipelineEvent(type="complete", run=outcome.run, outcome=outcome)
                return
        finally:
            if not task.done():
                task.cancel()

    def stats(self) -> dict[str, Any]:
        """Cache, parser and event counters plus per-stage duration history."""
        return {
            **self.gateway.stats(),
            "stage_history": {
                key: self.estimator.history.stats(key).model_dump() for key in STAGE_KEYS
            },
        }
