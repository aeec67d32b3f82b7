import pytest

from termpilot.agent.termination import (
    AgentLoopSettings,
    LoopState,
    RoundOutcome,
    TerminationDetector,
    TerminationReason,
    TextSignal,
    call_signature,
    classify_text,
)
from termpilot.config import AgentConfig
from termpilot.llm import ToolCall
from termpilot.tools.registry import ToolResult


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def call(name: str, **arguments) -> ToolCall:
    return ToolCall(id=f"call-{name}", name=name, arguments=arguments)


def run_round(
    detector: TerminationDetector,
    state: LoopState,
    text: str = "",
    calls: list[ToolCall] | None = None,
    successes: list[bool] | None = None,
    task_complete: bool = False,
):
    calls = calls or []
    successes = successes if successes is not None else [True] * len(calls)
    outcome = RoundOutcome(
        number=state.rounds + 1,
        text=text,
        tool_calls=calls,
        results=[ToolResult(success=ok, error=None if ok else "boom") for ok in successes],
        task_complete=task_complete,
        completion_summary="All done" if task_complete else None,
    )
    state.record(outcome)
    return detector.evaluate(outcome, state)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("", TextSignal.NEUTRAL),
        ("k", TextSignal.NEUTRAL),
        ("I will check the logs now", TextSignal.INCOMPLETE),
        ("Let me look at the config.", TextSignal.INCOMPLETE),
        ("让我查看一下日志", TextSignal.INCOMPLETE),
        ("I should call mcp_fs_read_file next", TextSignal.INCOMPLETE),
        ("In summary, the build passes.", TextSignal.SUMMARY),
        ("The deployment is finished.", TextSignal.SUMMARY),
        ("任务已完成", TextSignal.SUMMARY),
        ('<invoke name="write_to_terminal">', TextSignal.FAKE_TOOL_CALL),
        ("The sky is blue.", TextSignal.NEUTRAL),
    ],
)
def test_classify_text(text, expected):
    assert classify_text(text) == expected


def test_fake_markup_wins_over_other_signals():
    assert classify_text("Let me run it: <invoke name=\"x\"></invoke> done") == TextSignal.FAKE_TOOL_CALL


def test_call_signature_is_order_independent():
    assert call_signature("ls", {"a": 1, "b": 2}) == call_signature("ls", {"b": 2, "a": 1})
    assert call_signature("ls", {"a": 1}) != call_signature("ls", {"a": 2})


def test_settings_validation_and_config_mapping():
    with pytest.raises(ValueError):
        AgentLoopSettings(max_rounds=0)

    settings = AgentLoopSettings.from_config(AgentConfig(max_rounds=12, timeout_seconds=30))
    assert settings.max_rounds == 12
    assert settings.timeout_seconds == 30
    assert AgentLoopSettings(max_rounds=3).max_rounds == 3


def test_tool_calls_continue_and_text_only_rounds_stop():
    detector = TerminationDetector(AgentLoopSettings(), clock=FakeClock())
    state = LoopState(started_at=0.0)

    assert not run_round(detector, state, calls=[call("ls", path=".")]).should_stop

    incomplete = run_round(detector, state, text="I will check the logs now")
    assert not incomplete.should_stop
    assert incomplete.signal is TextSignal.INCOMPLETE

    summary = run_round(detector, state, text="In summary, the logs are clean.")
    assert summary.should_stop
    assert summary.reason is TerminationReason.SUMMARIZING

    neutral = run_round(detector, LoopState(started_at=0.0), text="The sky is blue.")
    assert neutral.reason is TerminationReason.NO_TOOLS


def test_fake_tool_markup_continues_with_signal():
    detector = TerminationDetector(AgentLoopSettings(), clock=FakeClock())
    decision = run_round(detector, LoopState(started_at=0.0), text="<function_calls><invoke name=\"ls\">")

    assert not decision.should_stop
    assert decision.signal is TextSignal.FAKE_TOOL_CALL


def test_task_complete_beats_every_other_condition():
    detector = TerminationDetector(AgentLoopSettings(max_rounds=1), clock=FakeClock(1000))
    decision = run_round(
        detector,
        LoopState(started_at=0.0),
        calls=[call("task_complete", summary="All done", success=True)],
        successes=[False],
        task_complete=True,
    )

    assert decision.reason is TerminationReason.TASK_COMPLETE
    assert decision.message == "All done"


def test_max_rounds_checked_before_repeats():
    detector = TerminationDetector(AgentLoopSettings(max_rounds=3, repeat_threshold=3), clock=FakeClock())
    state = LoopState(started_at=0.0)

    assert not run_round(detector, state, calls=[call("ls")]).should_stop
    assert not run_round(detector, state, calls=[call("ls")]).should_stop
    decision = run_round(detector, state, calls=[call("ls")])

    assert decision.reason is TerminationReason.MAX_ROUNDS
    assert "3 rounds" in decision.message


def test_repeated_identical_call_stops_loop():
    detector = TerminationDetector(AgentLoopSettings(repeat_threshold=3), clock=FakeClock())
    state = LoopState(started_at=0.0)

    run_round(detector, state, calls=[call("cat", path="a.txt"), call("ls", path="x")])
    run_round(detector, state, calls=[call("cat", path="a.txt"), call("ls", path="y")])
    decision = run_round(detector, state, calls=[call("cat", path="a.txt")])

    assert decision.reason is TerminationReason.REPEATED_TOOL
    assert "Tool cat" in decision.message


def test_changing_arguments_are_not_repeats():
    detector = TerminationDetector(AgentLoopSettings(repeat_threshold=3), clock=FakeClock())
    state = LoopState(started_at=0.0)

    for page in range(5):
        decision = run_round(detector, state, calls=[call("fetch", page=page)])
    assert not decision.should_stop


def test_failure_rate_needs_full_window_and_strict_excess():
    settings = AgentLoopSettings(failure_window=4, max_failure_rate=0.5)
    detector = TerminationDetector(settings, clock=FakeClock())

    state = LoopState(started_at=0.0)
    decision = run_round(detector, state, calls=[call("a"), call("b"), call("c")], successes=[False] * 3)
    assert not decision.should_stop

    half = LoopState(started_at=0.0)
    decision = run_round(
        detector,
        half,
        calls=[call("a"), call("b"), call("c"), call("d")],
        successes=[False, True, False, True],
    )
    assert not decision.should_stop

    decision = run_round(detector, state, calls=[call("d")], successes=[False])
    assert decision.reason is TerminationReason.HIGH_FAILURE_RATE
    assert "100%" in decision.message


def test_timeout_uses_injected_clock():
    clock = FakeClock(0.0)
    detector = TerminationDetector(AgentLoopSettings(timeout_seconds=10), clock=clock)
    state = LoopState(started_at=0.0)

    clock.now = 10.0
    assert not run_round(detector, state, calls=[call("ls", n=1)]).should_stop

    clock.now = 10.5
    decision = run_round(detector, state, calls=[call("ls", n=2)])
    assert decision.reason is TerminationReason.TIMEOUT
