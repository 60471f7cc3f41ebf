"""Fallback policies applied when a generated candidate is rejected."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from rebase_pilot.resolution.languages import SyntaxCheckResult
from rebase_pilot.resolution.models import CheckOutcome, Conflict, RenderedFile, ResolutionMethod


class FallbackPolicy(str, Enum):
    PREFER_OURS = "prefer_ours"
    PREFER_THEIRS = "prefer_theirs"
    MANUAL_ONLY = "manual_only"


@dataclass(frozen=True, slots=True)
class FallbackChoice:
    method: ResolutionMethod
    text: str | None
    syntax: CheckOutcome
    rationale: str

    @property
    def resolved(self) -> bool:
        return self.method != ResolutionMethod.MANUAL_REQUIRED


RenderSide = Callable[[str], RenderedFile]
CheckSyntax = Callable[[Conflict, RenderedFile], SyntaxCheckResult]


class FallbackStrategy(Protocol):
    policy: FallbackPolicy

    def choose(
        self,
        conflict: Conflict,
        *,
        render: RenderSide,
        check_syntax: CheckSyntax,
    ) -> FallbackChoice: ...


_SIDE_METHODS = {
    "ours": ResolutionMethod.FALLBACK_OURS,
    "theirs": ResolutionMethod.FALLBACK_THEIRS,
}


class SideOrderStrategy:
    """Take the first side, in order, whose rendering passes the syntax check."""

    def __init__(self, policy: FallbackPolicy, sides: tuple[str, ...]) -> None:
        unknown = set(sides) - set(_SIDE_METHODS)
        if unknown:
            raise ValueError(f"Unknown conflict sides: {sorted(unknown)}")
        self.policy = policy
        self.sides = sides

    def choose(
        self,
        conflict: Conflict,
        *,
        render: RenderSide,
        check_syntax: CheckSyntax,
    ) -> FallbackChoice:
        reasons: list[str] = []
        for side in self.sides:
            text = conflict.ours if side == "ours" else conflict.theirs
            result = check_syntax(conflict, render(text))
            if result.outcome != CheckOutcome.FAIL:
                return FallbackChoice(
                    method=_SIDE_METHODS[side],
                    text=text,
                    syntax=result.outcome,
                    rationale=f"kept {side} side ({result.outcome.value} syntax)",
                )
            reasons.append(f"{side}: {result.detail}")
        return FallbackChoice(
            method=ResolutionMethod.MANUAL_REQUIRED,
            text=None,
            syntax=CheckOutcome.FAIL,
            rationale="no side is syntactically valid; " + "; ".join(reasons),
        )


class ManualOnlyStrategy:
    policy = FallbackPolicy.MANUAL_ONLY

    def choose(
        self,
        conflict: Conflict,  # noqa: ARG002
        *,
        render: RenderSide,  # noqa: ARG002
        check_syntax: CheckSyntax,  # noqa: ARG002
    ) -> FallbackChoice:
        return FallbackChoice(
            method=ResolutionMethod.MANUAL_REQUIRED,
            text=None,
            syntax=CheckOutcome.SKIPPED,
            rationale="fallback policy requires manual resolution",
        )


def strategy_for(policy: FallbackPolicy | str) -> FallbackStrategy:
    resolved = FallbackPolicy(policy)
    if resolved == FallbackPolicy.PREFER_OURS:
        return SideOrderStrategy(resolved, ("ours", "theirs"))
    if resolved == FallbackPolicy.PREFER_THEIRS:
        return SideOrderStrategy(resolved, ("theirs", "ours"))
    return ManualOnlyStrategy()
