"""Fake chat-completion service for pipeline tests.

Routes each request to a canned reply by its system message, so every
stage of the plan pipeline gets a realistic answer without a network.
"""

import asyncio
import json
from typing import Any

import httpx

from app.chains import analyze_idea, assemble_plan, generate_coding_prompts, generate_visualizations, plan_layers
from app.chains.plan_layers import PLAN_FIELD_IDS

SAMPLE_IDEA = (
    "A mobile app that lets neighbours lend and borrow household tools, with deposits, "
    "ratings and pickup scheduling for small communities."
)

ANALYSIS_REPLY = {
    "core_problems": "Tools are bought for one job and then sit unused in garages",
    "target_users": "Homeowners and renters in dense neighbourhoods",
    "market_pain_points": "Renting from stores is expensive and inconvenient",
    "technical_complexity": {
        "level": "5",
        "main_challenges": "Trust, deposits and scheduling",
        "recommended_stack": "React Native, FastAPI, PostgreSQL",
    },
    "business_viability": {
        "market_potential": "Large in suburban areas",
        "competitors": "Generic marketplaces without deposit handling",
        "monetization_model": "Small fee per loan",
    },
    "implementation_path": {
        "mvp_features": "Listings, requests, deposits",
        "development_priority": "Trust before growth",
        "milestones": "Beta in one neighbourhood",
    },
    "domain_classification": "Sharing economy",
    "key_features": ["Tool listings", "Borrow requests", "Deposits", "Ratings", "Pickup scheduling"],
    "user_personas": "Weekend DIYers, new homeowners",
    "competitive_landscape": "Fragmented, no neighbourhood-first player",
}

PLANNING_REPLY = {field_id: f"Concrete plan for {field_id.replace('_', ' ')}" for field_id in PLAN_FIELD_IDS}

VISUALIZATION_REPLY = {
    "system_architecture": {
        "title": "System architecture",
        "mermaid_code": "graph TB\n    App[Mobile app] --> Api[API]\n    Api --> Db[Database]",
        "description": "Clients, API and storage",
    },
    "data_flow": {
        "title": "Data flow",
        "mermaid_code": "graph LR\n    Req[Borrow request] --> Dep[Deposit hold]\n    Dep --> Loan[Loan record]",
        "description": "Borrowing flow",
    },
    "deployment_architecture": {
        "title": "Deployment",
        "mermaid_code": "graph TB\n    Lb[Load balancer] --> Svc[API service]\n    Svc --> Pg[Managed Postgres]",
        "description": "Single region deployment",
    },
}

CODING_PROMPTS_REPLY = {
    "prompts": [
        {
            "id": f"task_{i}",
            "title": f"Task {i}",
            "category": "core_feature",
            "priority": "high",
            "prompt": f"Implement part {i} of the tool lending app",
            "technical_requirements": "Typed code with tests",
            "deliverables": "Merged pull request",
            "quality_standards": "Lint clean",
            "estimated_time": "1 day",
        }
        for i in range(1, 9)
    ],
    "execution_order": "task_1 to task_8",
    "dependencies": "Each task builds on the previous one",
    "total_estimated_time": "8 days",
}

REVIEW_REPLY = {
    "summary": "A focused plan with a clear MVP.",
    "risks": ["Deposit disputes"],
    "recommendations": ["Pilot with one neighbourhood"],
}

STAGE_REPLIES: dict[str, Any] = {
    "analysis": "Here is the analysis:\n```json\n" + json.dumps(ANALYSIS_REPLY) + "\n```",
    "planning": json.dumps(PLANNING_REPLY),
    "visualizations": json.dumps(VISUALIZATION_REPLY),
    "coding_prompts": json.dumps(CODING_PROMPTS_REPLY),
    "aggregation": json.dumps(REVIEW_REPLY),
}

SYSTEM_PROMPTS = {
    analyze_idea.SYSTEM_PROMPT: "analysis",
    plan_layers.SYSTEM_PROMPT: "planning",
    generate_visualizations.SYSTEM_PROMPT: "visualizations",
    generate_coding_prompts.SYSTEM_PROMPT: "coding_prompts",
    assemble_plan.SYSTEM_PROMPT: "aggregation",
}


async def no_sleep(_delay: float) -> None:
    return None


def completion_response(content: str, status_code: int = 200) -> httpx.Response:
    """Chat-completion response carrying ``content``."""
    return httpx.Response(
        status_code,
        json={
            "choices": [{"message": {"role": "assistant", "content": content}}],
            "usage": {"total_tokens": 42},
        },
    )


def request_messages(request: httpx.Request) -> tuple[str, str]:
    """(system message, user prompt) sent in a completion request."""
    payload = json.loads(request.content)
    system = ""
    user = ""
    for message in payload["messages"]:
        if message["role"] == "system":
            system = message["content"]
        elif message["role"] == "user":
            user = message["content"]
    return system, user


class FakeCompletionService:
    """
    Callable ``httpx.MockTransport`` handler answering per stage.

    ``failures`` maps a stage to the HTTP status it should always return;
    ``transient`` maps a stage to how many 503s it returns before answering;
    ``delays`` maps a stage to seconds to wait before answering.
    """

    def __init__(
        self,
        replies: dict[str, Any] | None = None,
        failures: dict[str, int] | None = None,
        transient: dict[str, int] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.replies = {**STAGE_REPLIES, **(replies or {})}
        self.failures = failures or {}
        self.transient = dict(transient or {})
        self.delays = delays or {}
        self.calls: list[str] = []
        self.prompts: dict[str, str] = {}
        self.active = 0
        self.max_active = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        system, user = request_messages(request)
        stage = SYSTEM_PROMPTS.get(system, "unknown")
        self.calls.append(stage)
        self.prompts[stage] = user

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if stage in self.delays:
                await asyncio.sleep(self.delays[stage])
            else:
                await asyncio.sleep(0)
        finally:
            self.active -= 1

        if stage in self.failures:
            return httpx.Response(self.failures[stage], text="upstream error")
        if self.transient.get(stage):
            self.transient[stage] -= 1
            return httpx.Response(503, text="busy")
        return completion_response(self.replies[stage])
