from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional

from pydantic import BaseModel, Field

from siteflow.routing.rules import Destination
from siteflow.workflow.actions import Action

logger = logging.getLogger(__name__)

SubmitFn = Callable[[Destination], Action]


class DestinationOutcome(BaseModel):
    destination: Destination
    action: Optional[Action] = None
    error: Optional[str] = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.action is not None and self.error is None


class FanOutResult(BaseModel):
    site_code: str = ""
    issue: str = ""
    outcomes: List[DestinationOutcome] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def created(self) -> List[Action]:
        return [o.action for o in self.outcomes if o.ok and o.action is not None]

    @property
    def failed(self) -> List[DestinationOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def complete(self) -> bool:
        return not self.failed


def _attempt(destination: Destination, submit: SubmitFn, site_code: str, attempts: int) -> DestinationOutcome:
    try:
        action = submit(destination)
    except Exception as exc:
        logger.warning(
            "Submission to %s failed for site %s (attempt=%s): %s",
            destination.label,
            site_code,
            attempts,
            exc,
        )
        return DestinationOutcome(destination=destination, error=str(exc), attempts=attempts)
    return DestinationOutcome(destination=destination, action=action, attempts=attempts)


def fan_out(
    destinations: Iterable[Destination],
    submit: SubmitFn,
    *,
    site_code: str = "",
    issue: str = "",
    warnings: Optional[List[str]] = None,
) -> FanOutResult:
    """Submits to every destination independently; one failure never undoes another."""
    result = FanOutResult(site_code=site_code, issue=issue, warnings=list(warnings or []))
    for destination in destinations:
        result.outcomes.append(_attempt(destination, submit, site_code, 1))
    return result


def retry_failed(result: FanOutResult, submit: SubmitFn) -> FanOutResult:
    """Retries only the destinations whose submission failed."""
    retried = result.model_copy(deep=True)
    for index, outcome in enumerate(retried.outcomes):
        if outcome.ok:
            continue
        retried.outcomes[index] = _attempt(outcome.destination, submit, result.site_code, outcome.attempts + 1)
    return retried
