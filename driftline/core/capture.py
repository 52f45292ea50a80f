"""
Trace capture.

A scenario runner is any callable (scenario, RunnerContext) -> events. The
agent host stays behind that seam: the core never drives an agent itself.
synthetic_scenario_runner is the deterministic default used when no adapter
is wired in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .canon import drop_none
from .determinism import Clock, DeterminismConfig, now_ms
from .normalize import normalize_options_for, normalize_trace_events
from .scenario import Scenario
from .types import (
    AuthorizationResult,
    AuthOutcome,
    EventType,
    ProfileArtifacts,
    ScenarioRunArtifact,
    TerminalSurface,
    TraceEvent,
)

STEP_INTERVAL_MS = 25
OUTCOME_INTERVAL_MS = 10

AUTH_REASON_BY_OUTCOME = {
    AuthOutcome.ALLOWED: "allowlist_match",
    AuthOutcome.ALLOWED_WITH_WARNING: "interactive_warning",
    AuthOutcome.BLOCKED: "policy_block",
}


@dataclass(frozen=True)
class RunnerContext:
    """What a runner knows about the capture it is part of."""

    profile: str
    run_id: str
    determinism: Optional[DeterminismConfig] = None


ScenarioRunner = Callable[[Scenario, RunnerContext], Sequence[Union[TraceEvent, Mapping[str, Any]]]]


@dataclass(frozen=True)
class SurfaceSelection:
    requested_surface: TerminalSurface
    selected_surface: TerminalSurface
    selection_reason: str


def resolve_selected_surface(scenario: Scenario, tool: Optional[str]) -> SurfaceSelection:
    """Pick the terminal surface a tool step would land on."""
    requested = scenario.runtime.terminal_surface
    normalized_tool = (tool or "").strip().lower()

    if requested != TerminalSurface.AUTO:
        return SurfaceSelection(requested, requested, "explicit_runtime_surface")
    if normalized_tool in (TerminalSurface.MEMORY_TERMINAL_INTERACTIVE.value, TerminalSurface.MEMORY_TERMINAL.value):
        return SurfaceSelection(requested, TerminalSurface(normalized_tool), "auto_tool_surface_preference")
    if normalized_tool == "memory_terminal_vscode":
        return SurfaceSelection(
            requested, TerminalSurface.MEMORY_TERMINAL_INTERACTIVE, "auto_policy_vscode_maps_to_interactive"
        )
    if scenario.runtime.mode == "interactive":
        return SurfaceSelection(
            requested, TerminalSurface.MEMORY_TERMINAL_INTERACTIVE, "auto_runtime_mode_interactive"
        )
    return SurfaceSelection(requested, TerminalSurface.MEMORY_TERMINAL, "auto_runtime_mode_headless_default")


def _authorization(outcome: AuthOutcome) -> AuthorizationResult:
    return AuthorizationResult(outcome=outcome.value, reason_class=AUTH_REASON_BY_OUTCOME[outcome])


def synthetic_scenario_runner(
    scenario: Scenario, context: RunnerContext, clock: Optional[Clock] = None
) -> List[TraceEvent]:
    """Deterministically expand scenario steps into a plausible trace.

    Apart from the wall-clock start (removed again by normalization) the
    output depends only on the scenario and the profile name.
    """
    timestamp = now_ms(clock)
    sid = scenario.scenario_id
    events: List[TraceEvent] = []

    for step in scenario.steps:
        timestamp += STEP_INTERVAL_MS

        if step.kind == "user":
            events.append(
                TraceEvent(
                    event_type=EventType.USER_PROMPT.value,
                    timestamp_ms=timestamp,
                    scenario_id=sid,
                    step_id=step.id,
                    payload={"prompt": step.prompt, "profile": context.profile},
                )
            )
            continue

        if step.kind == "wait":
            events.append(
                TraceEvent(
                    event_type=EventType.WAIT.value,
                    timestamp_ms=timestamp,
                    scenario_id=sid,
                    step_id=step.id,
                    payload={"wait_ms": step.wait_ms if step.wait_ms is not None else 100},
                )
            )
            continue

        outcome = step.expect_auth or AuthOutcome.ALLOWED
        surface = resolve_selected_surface(scenario, step.tool)
        events.append(
            TraceEvent(
                event_type=EventType.TOOL_CALL.value,
                timestamp_ms=timestamp,
                scenario_id=sid,
                step_id=step.id,
                tool_name=step.tool,
                action_raw=step.action,
                authorization=_authorization(outcome),
                payload=drop_none(
                    {
                        "args": step.args,
                        "profile": context.profile,
                        "requested_terminal_surface": surface.requested_surface.value,
                        "selected_terminal_surface": surface.selected_surface.value,
                        "selected_surface_reason": surface.selection_reason,
                    }
                ),
            )
        )
        events.extend(_follow_up_events(scenario, step, surface, outcome, timestamp))

    for signature in scenario.expectations.success_signature.must_include:
        timestamp += OUTCOME_INTERVAL_MS
        events.append(
            TraceEvent(
                event_type=EventType.OUTCOME.value,
                timestamp_ms=timestamp,
                scenario_id=sid,
                success_signature=signature,
                phase="final",
            )
        )

    return events


def _follow_up_events(
    scenario: Scenario,
    step: Any,
    surface: SurfaceSelection,
    outcome: AuthOutcome,
    timestamp: int,
) -> List[TraceEvent]:
    sid = scenario.scenario_id
    key: Tuple[Optional[str], Optional[str]] = (step.tool, step.action)

    if key == ("memory_plan", "run_build_script"):
        interactive = surface.selected_surface == TerminalSurface.MEMORY_TERMINAL_INTERACTIVE
        return [
            TraceEvent(
                event_type=EventType.BUILD_SCRIPT_RESOLVED.value,
                timestamp_ms=timestamp + 1,
                scenario_id=sid,
                step_id=step.id,
                payload={
                    "selected_terminal_surface": surface.selected_surface.value,
                    "requested_terminal_surface": surface.requested_surface.value,
                    "selected_surface_reason": surface.selection_reason,
                    "source_tool": "memory_plan.run_build_script",
                },
            ),
            TraceEvent(
                event_type=EventType.TOOL_CALL.value,
                timestamp_ms=timestamp + 2,
                scenario_id=sid,
                step_id=f"{step.id}_launch",
                tool_name=surface.selected_surface.value,
                action_raw="execute" if interactive else "run",
                authorization=_authorization(outcome),
                payload={
                    "source_tool": "memory_plan.run_build_script",
                    "launch_surface": surface.selected_surface.value,
                    "requested_terminal_surface": surface.requested_surface.value,
                },
            ),
        ]

    if key in (("memory_agent", "handoff"), ("memory_agent", "complete")):
        args: Dict[str, Any] = step.args or {}
        return [
            TraceEvent(
                event_type=step.action,
                timestamp_ms=timestamp + 1,
                scenario_id=sid,
                step_id=step.id,
                payload=drop_none({"to_agent": args.get("to_agent"), "from_agent": args.get("from_agent")}),
            )
        ]

    if key == ("memory_plan", "confirm"):
        return [TraceEvent(EventType.CONFIRMATION.value, timestamp + 1, sid, step_id=step.id)]

    if key == ("memory_steps", "update"):
        return [TraceEvent(EventType.PLAN_STEP_UPDATE.value, timestamp + 1, sid, step_id=step.id)]

    return []


def _coerce_event(event: Union[TraceEvent, Mapping[str, Any]]) -> TraceEvent:
    if isinstance(event, TraceEvent):
        return event
    return TraceEvent.from_dict(event)


def capture_scenario_artifact(
    scenario: Scenario,
    context: RunnerContext,
    runner: ScenarioRunner,
    workspace_path: Optional[str] = None,
) -> ScenarioRunArtifact:
    """Run one scenario and normalize its trace.

    Runner exceptions propagate to the caller.
    """
    raw_events = [_coerce_event(e) for e in runner(scenario, context)]
    normalized = normalize_trace_events(
        raw_events, workspace_path=workspace_path, **normalize_options_for(scenario)
    )
    return ScenarioRunArtifact(
        scenario_id=scenario.scenario_id,
        profile=context.profile,
        raw_events=raw_events,
        normalized_events=normalized,
        success=any(e.event_type == EventType.OUTCOME for e in normalized),
    )


def create_raw_trace_event_envelopes(run_id: str, artifacts: ProfileArtifacts) -> List[Dict[str, Any]]:
    """One {run_id, profile, scenario_id, event} row per raw event."""
    return [
        {
            "run_id": run_id,
            "profile": artifacts.profile,
            "scenario_id": scenario.scenario_id,
            "event": event.to_dict(),
        }
        for scenario in artifacts.scenarios
        for event in scenario.raw_events
    ]
