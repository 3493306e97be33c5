"""
Branch flow: the same brainstorming prompt goes to the two strongest models
of a tier concurrently, then the strongest model consolidates both answers.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

import httpx

from threadloop.escalation import ModelLadder
from threadloop.llm import LLMClient, LLMResponseError

logger = logging.getLogger(__name__)

DEEP_MARKERS = ("think deeply", "thoroughly")

BRAINSTORM_PROMPT = """You are an expert architect exploring multiple solutions to a problem.

## Objective
{question}

## Your Task
Suggest 2-3 distinct architectural approaches to achieve this goal.

## Rules
- No code, code blocks or implementation snippets.
- Focus on theory, architecture, strategy and high-level design.
- Explain your reasoning step by step.

For each approach give: title, overview, rationale, architecture, pros, cons, best for.
"""

CONSOLIDATION_PROMPT = """You are a lead architect consolidating brainstorming from several advisors.

## Original User Question
"{question}"

{suggestions}

## Your Task
1. Identify the distinct approaches across all advisors.
2. Merge similar ones, keeping the best elements.
3. Summarize each approach in at most 7 bullet points.
4. Recommend which approach fits which scenario.
5. End with: "Which approach would you like to explore further?"

No code. Be concise but complete.
"""


@dataclass(frozen=True)
class BranchResult:
    model: str
    content: str | None
    error: str | None
    elapsed_s: float

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.content)


@dataclass(frozen=True)
class BranchOutcome:
    response: str
    model: str
    tier: str
    branches: list[BranchResult]


def choose_tier(question: str) -> str:
    lower = question.lower()
    return "tier4" if any(marker in lower for marker in DEEP_MARKERS) else "tier3"


def select_branch_models(ladder: ModelLadder, tier: str) -> tuple[list[str], str]:
    """Returns the brainstorming models and the consolidator for a tier."""
    models = ladder.branch_models(tier)
    if not models:
        raise ValueError(f"tier {tier} has no models")
    brainstormers = models[-2:]
    return brainstormers, models[-1]


class BranchFlow:
    def __init__(self, llm: LLMClient, ladder: ModelLadder | None = None, max_workers: int = 4) -> None:
        self.llm = llm
        self.ladder = ladder or ModelLadder()
        self.max_workers = max_workers

    def scatter(self, models: list[str], prompt: str) -> list[BranchResult]:
        """Sends the prompt to every model at once and waits for all of them."""
        results: list[BranchResult | None] = [None] * len(models)
        messages = [{"role": "user", "content": prompt}]

        def _ask(index: int, model: str) -> None:
            started = time.monotonic()
            try:
                completion = self.llm.complete(model, messages)
            except (httpx.HTTPError, LLMResponseError) as exc:
                logger.warning("Branch model %s failed: %s", model, exc)
                results[index] = BranchResult(model, None, str(exc), time.monotonic() - started)
                return
            results[index] = BranchResult(
                model, completion.content, None, time.monotonic() - started
            )

        max_workers = max(1, min(self.max_workers, len(models)))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(_ask, index, model) for index, model in enumerate(models)]
            for future in as_completed(futures):
                future.result()
        return [result for result in results if result is not None]

    def run(self, question: str, tier: str | None = None) -> BranchOutcome:
        tier = tier or choose_tier(question)
        brainstormers, consolidator = select_branch_models(self.ladder, tier)
        logger.info(
            "Branch flow on %s: brainstorming with %s, consolidating with %s",
            tier,
            ", ".join(brainstormers),
            consolidator,
        )
        branches = self.scatter(brainstormers, BRAINSTORM_PROMPT.format(question=question))
        usable = [branch for branch in branches if branch.ok]
        if not usable:
            errors = "; ".join(f"{branch.model}: {branch.error}" for branch in branches)
            raise LLMResponseError(f"every branch failed ({errors})")

        suggestions = "\n\n".join(
            f"## Advisor {chr(ord('A') + index)}'s Suggestions\n{branch.content}"
            for index, branch in enumerate(usable)
        )
        final = self.llm.complete(
            consolidator,
            [
                {
                    "role": "user",
                    "content": CONSOLIDATION_PROMPT.format(
                        question=question, suggestions=suggestions
                    ),
                }
            ],
        )
        return BranchOutcome(
            response=final.content, model=consolidator, tier=tier, branches=branches
        )
