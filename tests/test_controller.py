import pytest

from planwright.controller import (
    BILLING_HINT,
    Controller,
    MissingHandlerWarning,
    PlanState,
    UserCancelled,
)
from planwright.handlers import StepSkipped
from planwright.history import RunHistory
from planwright.interceptors import PlanGate, PlanVerdict
from planwright.oracle import BillingError
from planwright.planner import InterceptorUse, Plan, Step

from conftest import EchoHandler, FakeOracle, ScriptedPrompter
from test_registry import make_interceptor


def plan_of(*steps):
    return Plan(steps=[Step(description=d, handler_name=h, priority=p) for d, h, p in steps])


@pytest.fixture
def echo(registry, engine, config, oracle):
    handler = EchoHandler(oracle, engine, config)
    registry.register_handler(handler)
    return handler


def controller_for(repo, config, registry, responses, prompter, **kwargs):
    oracle = FakeOracle(responses=responses)
    return Controller(
        repo_path=repo, config=config, oracle=oracle, registry=registry, prompter=prompter, **kwargs,
    ), oracle


def test_approved_plan_runs_in_priority_order(repo, config, registry, echo):
    plan = plan_of(("second", "echo", 2), ("first", "echo", 1))
    controller, _ = controller_for(repo, config, registry, [plan], ScriptedPrompter(confirms=[True]))

    result = controller.run("do two things")

    assert result.state is PlanState.DONE
    assert [c.step_description for c in echo.seen] == ["first", "second"]
    assert [s.description for s in result.executed] == ["first", "second"]
    assert [e.description for e in RunHistory(repo).recent(5)] == ["second", "first"]


def test_missing_handler_is_skipped_with_warning(repo, config, registry, echo):
    plan = plan_of(("ghost step", "ghost", 1), ("real step", "echo", 2))
    controller, _ = controller_for(repo, config, registry, [plan], ScriptedPrompter(confirms=[True]))

    with pytest.warns(MissingHandlerWarning):
        result = controller.run("haunt me")

    assert result.state is PlanState.DONE
    assert [c.step_description for c in echo.seen] == ["real step"]


def test_three_rejections_abort_without_more_oracle_calls(repo, config, registry, echo):
    plans = [plan_of((f"attempt {i}", "echo", 1)) for i in range(5)]
    prompter = ScriptedPrompter(confirms=[False, False, False], answers=["smaller", "even smaller"])
    controller, oracle = controller_for(repo, config, registry, plans, prompter)

    result = controller.run("something")

    assert result.state is PlanState.ABORTED
    assert len(oracle.calls) == 3
    assert len(oracle.responses) == 2
    assert echo.seen == []


def test_feedback_regenerates_and_then_executes(repo, config, registry, echo):
    plans = [plan_of(("too big", "echo", 1)), plan_of(("just right", "echo", 1))]
    prompter = ScriptedPrompter(confirms=[False, True], answers=["make it smaller"])
    controller, oracle = controller_for(repo, config, registry, plans, prompter)

    result = controller.run("something")

    assert result.state is PlanState.DONE
    assert [c.step_description for c in echo.seen] == ["just right"]
    feedback = oracle.calls[1][2][-1]["content"]
    assert "make it smaller" in feedback


def test_cancel_at_approval(repo, config, registry, echo):
    controller, _ = controller_for(
        repo, config, registry, [plan_of(("x", "echo", 1))], ScriptedPrompter(confirms=[UserCancelled()]),
    )

    result = controller.run("something")

    assert result.state is PlanState.CANCELLED
    assert result.ok
    assert echo.seen == []


def test_empty_plan_is_a_no_op(repo, config, registry, echo):
    prompter = ScriptedPrompter()
    controller, _ = controller_for(repo, config, registry, [Plan()], prompter)

    result = controller.run("nothing to do")

    assert result.state is PlanState.DONE
    assert result.message == "No actions to execute"
    assert prompter.questions == []


def test_auto_approve_skips_the_prompt(repo, config, registry, echo):
    prompter = ScriptedPrompter()
    controller, _ = controller_for(
        repo, config, registry, [plan_of(("x", "echo", 1))], prompter, auto_approve=True,
    )

    assert controller.run("go").state is PlanState.DONE
    assert prompter.questions == []


def test_billing_error_fails_with_actionable_message(repo, config, registry, echo):
    controller, _ = controller_for(
        repo, config, registry, [BillingError("credit balance is too low")], ScriptedPrompter(),
    )

    result = controller.run("anything")

    assert result.state is PlanState.FAILED
    assert result.message == BILLING_HINT


def test_skipped_step_does_not_stop_the_run(repo, config, registry, engine, oracle, echo):
    class Skipper(EchoHandler):
        def execute(self, ctx):
            raise StepSkipped("not today")

    registry.register_handler(Skipper(oracle, engine, config, name="skipper"))
    plan = plan_of(("skip me", "skipper", 1), ("run me", "echo", 2))
    controller, _ = controller_for(repo, config, registry, [plan], ScriptedPrompter(confirms=[True]))

    result = controller.run("mixed")

    assert result.state is PlanState.DONE
    assert [s.description for s in result.executed] == ["run me"]


def test_before_plan_veto_cancels(repo, config, registry, echo):
    interceptor = make_interceptor("gatekeeper")
    interceptor.before_plan = lambda: PlanGate(proceed=False, message="not now")
    registry.register_interceptor(interceptor)
    controller, oracle = controller_for(repo, config, registry, [], ScriptedPrompter())

    result = controller.run("anything")

    assert result.state is PlanState.CANCELLED
    assert result.message == "not now"
    assert oracle.calls == []


def test_after_plan_decline_removes_interceptor_from_every_step(repo, config, registry, echo):
    interceptor = make_interceptor("shout")
    interceptor.after_plan = lambda plan: PlanVerdict(keep=False, message="dropping shout")
    registry.register_interceptor(interceptor)
    use = InterceptorUse(name="shout", confidence=0.9)
    plan = Plan(steps=[
        Step(description="one", handler_name="echo", priority=1, interceptors=[use]),
        Step(description="two", handler_name="echo", priority=2, interceptors=[use]),
    ])
    matches = {"matches": [{"name": "shout", "confidence": 0.9, "reason": "loud"}], "has_general_intent": True}
    controller, _ = controller_for(repo, config, registry, [matches, plan], ScriptedPrompter(confirms=[True]))

    result = controller.run("SHOUT")

    assert result.state is PlanState.DONE
    assert all(s.interceptors == [] for s in result.plan.steps)
    assert all("shout rule" not in m["content"] for r in echo.rendered for m in r)


def test_kept_interceptor_reaches_the_handler_prompt(repo, config, registry, echo):
    registry.register_interceptor(make_interceptor("shout"))
    plan = Plan(steps=[Step(
        description="one", handler_name="echo", priority=1,
        interceptors=[InterceptorUse(name="shout", confidence=0.9)],
    )])
    matches = {"matches": [{"name": "shout", "confidence": 0.9, "reason": "loud"}]}
    controller, _ = controller_for(repo, config, registry, [matches, plan], ScriptedPrompter(confirms=[True]))

    controller.run("SHOUT")

    system = echo.rendered[0][0]["content"]
    assert "- shout rule" in system


def test_illegal_transition_raises(repo, config, registry):
    controller, _ = controller_for(repo, config, registry, [], ScriptedPrompter())
    with pytest.raises(RuntimeError):
        controller._transition(PlanState.EXECUTING)


class DirtyWorkspace:
    def __init__(self, repo_path):
        pass

    def is_git_repo(self):
        return True

    def dirty_paths(self):
        return [" M src/app.ts"]


def test_dirty_tree_refused_unless_forced(repo, config, registry, echo, monkeypatch):
    import planwright.controller as controller_module

    monkeypatch.setattr(controller_module, "Workspace", DirtyWorkspace)

    refused, oracle = controller_for(repo, config, registry, [], ScriptedPrompter())
    result = refused.run("anything")
    assert result.state is PlanState.FAILED
    assert "--force" in result.message
    assert oracle.calls == []

    forced, _ = controller_for(
        repo, config, registry, [plan_of(("x", "echo", 1))], ScriptedPrompter(confirms=[True]), force=True,
    )
    assert forced.run("anything").state is PlanState.DONE


def test_run_emits_lifecycle_events(repo, config, registry, echo):
    from planwright.event_bus import EventBus

    bus = EventBus()
    seen: list[str] = []
    bus.subscribe(lambda e: seen.append(e.event_type), event_types=["run_started", "plan_ready", "step_completed", "run_finished"])
    controller = Controller(
        repo_path=repo, config=config, oracle=FakeOracle(responses=[plan_of(("x", "echo", 1))]),
        registry=registry, prompter=ScriptedPrompter(confirms=[True]), bus=bus,
    )

    controller.run("go")

    assert seen == ["run_started", "plan_ready", "step_completed", "run_finished"]
