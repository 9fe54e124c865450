import itertools
import json

from planwright.planner import (
    InterceptorUse,
    Plan,
    Planner,
    Step,
    enforce_confidence_gate,
    enforce_version_control_last,
    sort_steps,
)
from planwright.registry import MatchEntry, MatchRecord

from conftest import EchoHandler, FakeOracle
from test_registry import make_interceptor


def steps_for(handlers_and_priorities):
    return [Step(description=f"{h} #{i}", handler_name=h, priority=p)
            for i, (h, p) in enumerate(handlers_and_priorities)]


def with_handlers(registry, engine, config, oracle):
    registry.register_handler(EchoHandler(oracle, engine, config))
    registry.register_handler(EchoHandler(oracle, engine, config, name="git-operations", vcs=True))
    return registry


def test_version_control_always_sorted_last(registry, engine, config, oracle):
    with_handlers(registry, engine, config, oracle)
    layouts = [
        [("git-operations", 1), ("echo", 2), ("git-operations", 2), ("echo", 5)],
        [("echo", 3), ("git-operations", 0)],
        [("git-operations", 10), ("echo", 1)],
    ]
    for layout in layouts:
        for order in itertools.permutations(layout):
            plan = enforce_version_control_last(Plan(steps=steps_for(order)), registry)
            names = [s.handler_name for s in sort_steps(plan.steps)]
            first_vcs = names.index("git-operations")
            assert "echo" not in names[first_vcs:]


def test_version_control_keeps_relative_order(registry, engine, config, oracle):
    with_handlers(registry, engine, config, oracle)
    plan = Plan(steps=steps_for([("git-operations", 1), ("git-operations", 2), ("echo", 3)]))

    ordered = sort_steps(enforce_version_control_last(plan, registry).steps)

    assert [s.description for s in ordered] == ["echo #2", "git-operations #0", "git-operations #1"]


def test_sort_is_stable():
    steps = steps_for([("a", 1), ("b", 0), ("c", 1), ("d", 0)])
    assert [s.handler_name for s in sort_steps(steps)] == ["b", "d", "a", "c"]


def test_confidence_gate_drops_weak_uses(registry, engine, config, oracle):
    registry.register_handler(EchoHandler(oracle, engine, config))
    registry.register_interceptor(make_interceptor("strong"))
    registry.register_interceptor(make_interceptor("weak"))
    record = MatchRecord(entries={"strong": MatchEntry(0.8), "weak": MatchEntry(0.3)})
    plan = Plan(steps=[Step(
        description="do it",
        handler_name="echo",
        priority=1,
        interceptors=[
            InterceptorUse(name="strong", confidence=0.1),
            InterceptorUse(name="weak", confidence=0.99),
            InterceptorUse(name="invented", confidence=1.0),
        ],
    )])

    gated = enforce_confidence_gate(plan, registry, record)

    uses = gated.steps[0].interceptors
    assert [u.name for u in uses] == ["strong"]
    assert uses[0].confidence == 0.8
    assert all(u.confidence >= 0.5 for s in gated.steps for u in s.interceptors or [])


def test_regeneration_messages_carry_previous_plan_and_feedback(registry, engine, config, oracle):
    with_handlers(registry, engine, config, oracle)
    previous = Plan(steps=steps_for([("echo", 1), ("git-operations", 2)]), analysis="first try")
    fake = FakeOracle(responses=[Plan(steps=steps_for([("echo", 1)]))])
    planner = Planner(fake, registry)

    plan = planner.regenerate(previous, "drop the Git_Operations step", "add a button", ["src/a.ts"], MatchRecord())

    assert [s.handler_name for s in plan.steps] == ["echo"]
    role, schema, messages = fake.calls[0]
    assert role == "planner"
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user", "user"]
    assert json.dumps(previous.model_dump(), indent=2) in messages[2]["content"]
    assert "<user_request>\nadd a button\n</user_request>" == messages[3]["content"]
    assert "drop the Git_Operations step" in messages[4]["content"]
    assert "naming convention" in messages[2]["content"]


def test_catalog_lists_handlers_and_active_interceptors(registry, engine, config, oracle):
    registry.register_handler(EchoHandler(oracle, engine, config))
    registry.register_interceptor(make_interceptor("shout"))
    registry.register_interceptor(make_interceptor("quiet"))
    record = MatchRecord(entries={"shout": MatchEntry(0.9)})

    messages = Planner(FakeOracle(), registry).build_messages("hi", ["a.ts"], record, history="<history/>")

    system = messages[0]["content"]
    assert '<handler name="echo">' in system
    assert '<interceptor name="shout">' in system
    assert "quiet" not in system
    assert "<file>a.ts</file>" in messages[1]["content"]
    assert "<history/>" in messages[1]["content"]
