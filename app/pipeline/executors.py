"""Step executors: the work behind each pipeline step.

The sequencer never does step work itself; it looks up a StepExecutor per
step key. The simulated executors stand in for real schema detection,
translation, de-identification and so on: they wait a bounded random time
and report a log line.

To plug in real work for a step:
1. Subclass StepExecutor
2. Set step_key and implement execute()
3. Register the instance on the ExecutorRegistry passed to the sequencer
"""

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from app.jobs.models import PRECOMPLETED_STEP, PIPELINE_STEPS, PipelineJob, PipelineStep


@dataclass
class StepContext:
    """What an executor gets to see about the step it runs."""
    job: PipelineJob
    step: PipelineStep


@dataclass
class StepOutcome:
    logs: str


class StepExecutionError(Exception):
    """Raised by an executor when its step cannot complete."""


class StepExecutor(ABC):
    """Abstract base class for the work of one pipeline step."""

    step_key: str = ""

    @abstractmethod
    async def execute(self, ctx: StepContext) -> StepOutcome:
        """Do the step's work. Raise to fail the step."""
        ...


def _describe(step_key: str, job: PipelineJob) -> str:
    settings = job.settings or {}
    if step_key == "glossary" and settings.get("glossaryEnabled") is False:
        return "Glossary application skipped (disabled in settings)."
    if step_key == "glossary":
        glossary = job.glossary_id or "project default"
        return f"Glossary '{glossary}' applied to source terms."
    if step_key == "deid" and "deidLevel" in settings:
        return f"De-identification applied at level {settings['deidLevel']}."
    return (
        f"Step {step_key} completed successfully. "
        "Processed data according to configuration."
    )


class SimulatedStepExecutor(StepExecutor):
    """Waits a random duration in ``delay_range`` seconds, then succeeds."""

    def __init__(
        self,
        step_key: str,
        delay_range: Tuple[float, float] = (2.0, 5.0),
        rng: Optional[random.Random] = None,
    ):
        low, high = delay_range
        if low < 0 or high < low:
            raise ValueError(f"Invalid delay range {delay_range}")
        self.step_key = step_key
        self._delay_range = (low, high)
        self._rng = rng or random.Random()

    async def execute(self, ctx: StepContext) -> StepOutcome:
        await asyncio.sleep(self._rng.uniform(*self._delay_range))
        return StepOutcome(logs=_describe(self.step_key, ctx.job))


class ExecutorRegistry:
    """Maps step keys to executors. Every runnable step must have one."""

    def __init__(self):
        self._executors: Dict[str, StepExecutor] = {}

    @classmethod
    def simulated(
        cls,
        delay_range: Tuple[float, float] = (2.0, 5.0),
        rng: Optional[random.Random] = None,
    ) -> "ExecutorRegistry":
        """Registry with a simulated executor for every runnable step."""
        registry = cls()
        rng = rng or random.Random()
        for key in runnable_step_keys():
            registry.register(SimulatedStepExecutor(key, delay_range, rng))
        return registry

    def register(self, executor: StepExecutor) -> None:
        if executor.step_key not in runnable_step_keys():
            raise ValueError(f"Unknown pipeline step '{executor.step_key}'")
        self._executors[executor.step_key] = executor

    def get(self, step_key: str) -> StepExecutor:
        executor = self._executors.get(step_key)
        if executor is None:
            raise ValueError(f"No executor registered for step '{step_key}'")
        return executor


def runnable_step_keys() -> List[str]:
    """Step keys the sequencer executes, in order."""
    return [key for key, _ in PIPELINE_STEPS if key != PRECOMPLETED_STEP]
