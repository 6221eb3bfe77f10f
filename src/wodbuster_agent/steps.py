"""Declarative automation steps and the runner that executes them against a page."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .errors import AutomationError

LOGGER = structlog.get_logger(__name__)


class StepAction(str, Enum):
    NONE = "none"
    GOTO = "goto"
    CLICK = "click"
    FILL = "fill"
    EVALUATE = "evaluate"


@dataclass(frozen=True)
class Step:
    """
    One unit of browser work.

    ``wait_for`` must be visible before the action runs, ``wait_gone`` must be
    detached afterwards, and ``settle_ms`` is a fixed pause once both hold.
    ``intent`` is a human description of what the selectors are looking for and
    ends up in any :class:`AutomationError` raised by the step.
    """

    stage: str
    intent: str
    action: StepAction = StepAction.NONE
    target: str = ""
    value: Optional[str] = None
    wait_for: Optional[str] = None
    wait_gone: Optional[str] = None
    settle_ms: int = 0


class StepRunner:
    """Run steps in order against one page, bounded by a per-wait timeout and an overall deadline."""

    def __init__(
        self,
        page: Page,
        *,
        timeout_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._page = page
        self._timeout_ms = timeout_ms
        self._clock = clock

    async def run(self, steps: Iterable[Step], *, deadline: Optional[float] = None) -> None:
        """
        Execute ``steps`` sequentially.

        ``deadline`` is an absolute value of the runner's clock. It is checked
        between steps and every wait is clamped to the time left, so a step
        never outlives the deadline by more than one browser call.
        """
        for step in steps:
            await self.run_step(step, deadline=deadline)

    async def run_step(self, step: Step, *, deadline: Optional[float] = None) -> None:
        timeout = self._budget(step, deadline)
        LOGGER.debug("automation.step.start", stage=step.stage, intent=step.intent, action=step.action.value)
        try:
            if step.wait_for:
                await self._page.wait_for_selector(step.wait_for, state="visible", timeout=timeout)
            await self._perform(step, timeout)
            if step.wait_gone:
                await self._page.wait_for_selector(step.wait_gone, state="detached", timeout=timeout)
            if step.settle_ms:
                await self._page.wait_for_timeout(step.settle_ms)
        except PlaywrightTimeoutError as exc:
            LOGGER.warning("automation.step.timeout", stage=step.stage, intent=step.intent, timeout_ms=timeout)
            raise AutomationError(step.stage, step.intent, f"timed out after {timeout}ms") from exc
        except PlaywrightError as exc:
            LOGGER.warning("automation.step.failed", stage=step.stage, intent=step.intent, error=str(exc))
            raise AutomationError(step.stage, step.intent, str(exc)) from exc

    async def _perform(self, step: Step, timeout: int) -> None:
        if step.action is StepAction.GOTO:
            await self._page.goto(step.target, wait_until="domcontentloaded", timeout=timeout)
        elif step.action is StepAction.CLICK:
            await self._page.click(step.target, timeout=timeout)
        elif step.action is StepAction.FILL:
            await self._page.fill(step.target, step.value or "", timeout=timeout)
        elif step.action is StepAction.EVALUATE:
            await self._page.evaluate(step.target)

    def _budget(self, step: Step, deadline: Optional[float]) -> int:
        if deadline is None:
            return self._timeout_ms
        remaining_ms = int((deadline - self._clock()) * 1000)
        if remaining_ms <= 0:
            raise AutomationError(step.stage, step.intent, "deadline exceeded")
        return min(self._timeout_ms, remaining_ms)
