"""Traversal driver behavior over small scripted graphs."""

import asyncio
import itertools
import logging

from fakes import ScriptedSubmitter, action_for, fails, rejected, returns, stalls, succeeds

from statecheck.common.logging import ContextFilter
from statecheck.engine.context import Context
from statecheck.engine.driver import TraversalDriver
from statecheck.engine.graph import StateGraph, StateNode, TransitionSpec
from statecheck.engine.resolver import resolve_dependencies
from statecheck.engine.verifier import expect_equal


def run(graph, submitter=None, timeout=None, **kwargs):
    driver = TraversalDriver(graph, submitter or ScriptedSubmitter(), **kwargs)
    return asyncio.run(driver.run(timeout=timeout))


def sum_is_three():
    async def expectation(ctx, receipt, next_ctx):
        return [expect_equal("a + b", ctx["a"] + ctx["b"], 3)]

    return expectation


def test_dependencies_then_transition_reports_successful_path():
    """Resolved dependencies are visible to the expectation of the next edge."""

    graph = StateGraph(
        "simple",
        [
            StateNode(
                name="root",
                dependencies={"a": returns(1), "b": returns(2)},
                transitions={
                    "X": TransitionSpec(
                        action=action_for(succeeds()),
                        expectation=sum_is_three(),
                        label="toX",
                    )
                },
            ),
            StateNode(name="X"),
        ],
        root="root",
    )

    report = run(graph)

    assert report.passed
    assert len(report.paths) == 1
    assert report.paths[0].status == "completed"
    assert report.paths[0].trail == ["root", "toX", "X"]


def test_context_length_counts_dependencies_and_subjects():
    seen = {}

    async def capture(ctx):
        seen["final"] = ctx
        return "done"

    graph = StateGraph(
        "counting",
        [
            StateNode(
                name="root",
                dependencies={"a": returns(1), "b": returns(2)},
                transitions={
                    "mid": TransitionSpec(action=action_for(succeeds(), subject="thing", subject_key="obj")),
                },
            ),
            StateNode(
                name="mid",
                dependencies={"c": returns(3)},
                transitions={
                    "leaf": TransitionSpec(action=action_for(succeeds(), subject="other", subject_key="obj2")),
                },
            ),
            StateNode(name="leaf", dependencies={"probe": capture}),
        ],
        root="root",
    )

    report = run(graph)

    assert report.passed
    final = seen["final"]
    # a, b, c from dependencies; obj, obj2 from transitions; leaf sees them all before adding "probe"
    assert len(final) == 5
    assert final.state == "leaf"
    assert final["obj"] == "thing"


def test_invalid_transition_that_succeeds_is_reported():
    """An accepted 'should fail' edge is an UnexpectedSuccessError for that node only."""

    graph = StateGraph(
        "probe",
        [
            StateNode(
                name="node",
                transitions={"next": TransitionSpec(action=action_for(succeeds()))},
                invalid_transitions={
                    "early": TransitionSpec(action=action_for(succeeds())),
                    "guarded": TransitionSpec(action=action_for(rejected("too soon"))),
                },
            ),
            StateNode(name="next"),
        ],
        root="node",
    )

    report = run(graph)

    assert not report.passed
    assert [p.status for p in report.paths] == ["completed"]
    by_label = {probe.label: probe for probe in report.probes}
    assert by_label["early"].outcome == "unexpected_success"
    assert by_label["early"].error.kind == "UnexpectedSuccessError"
    assert by_label["early"].error.state == "node"
    assert by_label["guarded"].outcome == "rejected"
    assert "too soon" in by_label["guarded"].rejection


def test_failed_confirmation_skips_expectation():
    calls = []

    async def expectation(ctx, receipt, next_ctx):
        calls.append(receipt)
        return []

    graph = StateGraph(
        "broken",
        [
            StateNode(
                name="root",
                transitions={
                    "Y": TransitionSpec(action=action_for(rejected()), expectation=expectation, label="toY"),
                },
            ),
            StateNode(name="Y"),
        ],
        root="root",
    )

    report = run(graph)

    path = report.paths[0]
    assert path.status == "failed"
    assert path.error.kind == "TransitionError"
    assert path.error.edge == "toY"
    assert path.error.details["phase"] == "confirm"
    assert path.failed_step == 0
    assert calls == []


def test_sibling_failure_does_not_affect_successful_sibling():
    leaf_contexts = {}

    def record(name):
        async def resolver(ctx):
            leaf_contexts[name] = ctx
            return name

        return resolver

    async def wrong(ctx, receipt, next_ctx):
        return [expect_equal("subject", next_ctx["subject"], "expected"), expect_equal("always", 1, 2)]

    graph = StateGraph(
        "siblings",
        [
            StateNode(
                name="root",
                transitions={
                    "good": TransitionSpec(action=action_for(succeeds(), subject="g")),
                    "bad": TransitionSpec(action=action_for(succeeds(), subject="b"), expectation=wrong),
                },
            ),
            StateNode(name="good", dependencies={"seen": record("good")}),
            StateNode(name="bad", dependencies={"seen": record("bad")}),
        ],
        root="root",
    )

    report = run(graph)

    statuses = {p.path_id: p.status for p in report.paths}
    assert statuses == {"0.0": "completed", "0.1": "failed"}
    failed = report.paths[1]
    assert failed.error.kind == "ExpectationError"
    assert len(failed.error.details["failures"]) == 2
    assert "bad" not in leaf_contexts
    assert leaf_contexts["good"]["subject"] == "g"


def test_dependency_failure_aborts_only_that_path():
    graph = StateGraph(
        "deps",
        [
            StateNode(
                name="root",
                transitions={
                    "ok": TransitionSpec(action=action_for(succeeds())),
                    "broken": TransitionSpec(action=action_for(succeeds())),
                },
            ),
            StateNode(name="ok"),
            StateNode(name="broken", dependencies={"first": fails("one"), "second": fails("two")}),
        ],
        root="root",
    )

    report = run(graph)

    by_id = {p.path_id: p for p in report.paths}
    assert by_id["0.0"].status == "completed"
    error = by_id["0.1"].error
    assert error.kind == "DependencyResolutionError"
    assert error.details["name"] == "first"
    assert set(error.details["failed"]) == {"first", "second"}
    assert by_id["0.1"].steps[-1].successor == "broken"


def test_precondition_failure_is_fatal_to_path():
    async def bad_setup(ctx):
        raise RuntimeError("price feed down")

    graph = StateGraph(
        "pre",
        [
            StateNode(
                name="root",
                transitions={"next": TransitionSpec(action=action_for(succeeds()), precondition=bad_setup)},
            ),
        ],
        root="root",
    )

    report = run(graph)

    assert report.paths[0].error.kind == "PreconditionError"
    assert "price feed down" in report.paths[0].error.message


def test_probes_never_touch_valid_subtree_context():
    seen = {}

    async def mutating_setup(ctx):
        seen["probe_ctx"] = ctx
        try:
            ctx.bindings["leak"] = True
        except TypeError:
            seen["immutable"] = True

    async def capture(ctx):
        seen["child_ctx"] = ctx

    graph = StateGraph(
        "isolation",
        [
            StateNode(
                name="root",
                dependencies={"a": returns(1)},
                transitions={"child": TransitionSpec(action=action_for(succeeds(), subject="s"))},
                invalid_transitions={
                    "bad": TransitionSpec(action=action_for(rejected()), precondition=mutating_setup),
                },
            ),
            StateNode(name="child", dependencies={"capture": capture}),
        ],
        root="root",
    )

    report = run(graph)

    assert report.passed
    assert seen["immutable"]
    assert "subject" not in seen["probe_ctx"]
    assert "leak" not in seen["child_ctx"]
    assert seen["child_ctx"]["subject"] == "s"


def test_dependency_resolution_shape_is_stable():
    counter = itertools.count()

    async def ticking(ctx):
        return next(counter)

    deps = {"tick": ticking, "fixed": returns("x")}
    base = Context({"seed": 1}, "root")

    first = asyncio.run(resolve_dependencies("root", deps, base))
    second = asyncio.run(resolve_dependencies("root", deps, base))

    assert set(first) == set(second) == {"seed", "tick", "fixed"}
    assert first["tick"] != second["tick"]
    assert set(base) == {"seed"}


def test_cycle_stops_when_state_reappears_on_path():
    graph = StateGraph(
        "cycle",
        [
            StateNode(name="active", transitions={"courtesy": TransitionSpec(action=action_for(succeeds()))}),
            StateNode(name="courtesy", transitions={"active": TransitionSpec(action=action_for(succeeds()))}),
        ],
        root="active",
    )

    report = run(graph)

    assert report.passed
    path = report.paths[0]
    assert path.trail == ["active", "courtesy", "active"]
    assert path.revisited == "active"


def test_self_loop_is_warned_and_taken_once():
    graph = StateGraph(
        "loop",
        [StateNode(name="active", transitions={"active": TransitionSpec(action=action_for(succeeds()))})],
        root="active",
    )

    report = run(graph)

    assert report.warnings == ("self_loop_edge state=active",)
    assert report.passed
    assert report.paths[0].revisited == "active"
    assert len(report.paths[0].steps) == 1


def test_timeout_reports_pending_paths_and_probes():
    graph = StateGraph(
        "slow",
        [
            StateNode(
                name="root",
                transitions={
                    "fast": TransitionSpec(action=action_for(succeeds())),
                    "slow": TransitionSpec(action=action_for(stalls(5))),
                },
                invalid_transitions={"stuck": TransitionSpec(action=action_for(stalls(5)))},
            ),
            StateNode(name="fast"),
            StateNode(name="slow"),
        ],
        root="root",
    )

    report = run(graph, timeout=0.2)

    by_id = {p.path_id: p for p in report.paths}
    assert by_id["0.0"].status == "completed"
    assert by_id["0.1"].status == "timeout"
    assert by_id["0.1"].error.kind == "TraversalTimeoutError"
    assert report.probes[0].outcome == "timeout"
    assert not report.passed


def test_sibling_submissions_are_serialized():
    branches = {f"leaf{i}": TransitionSpec(action=action_for(succeeds())) for i in range(4)}
    graph = StateGraph("fanout", [StateNode(name="root", transitions=branches)], root="root")
    submitter = ScriptedSubmitter(submit_delay=0.01)

    report = run(graph, submitter=submitter)

    assert report.passed
    assert len(report.paths) == 4
    assert len(submitter.submitted) == 4
    assert submitter.max_in_flight == 1


def test_paths_are_reported_in_declared_order():
    branches = {name: TransitionSpec(action=action_for(succeeds())) for name in ["c", "a", "b"]}
    graph = StateGraph("order", [StateNode(name="root", transitions=branches)], root="root")

    report = run(graph, max_concurrency=2)

    assert [p.steps[0].edge for p in report.paths] == ["c", "a", "b"]


def test_isolation_reverts_between_siblings():
    class Recorder:
        def __init__(self):
            self.events = []

        async def snapshot(self):
            self.events.append("snapshot")
            return len(self.events)

        async def revert(self, snapshot_id):
            self.events.append(f"revert:{snapshot_id}")

    isolation = Recorder()
    graph = StateGraph(
        "isolated",
        [
            StateNode(
                name="root",
                transitions={
                    "a": TransitionSpec(action=action_for(succeeds())),
                    "b": TransitionSpec(action=action_for(succeeds())),
                },
                invalid_transitions={"x": TransitionSpec(action=action_for(rejected()))},
            ),
        ],
        root="root",
    )

    report = run(graph, isolation=isolation)

    assert report.passed
    assert isolation.events == ["snapshot", "revert:1", "snapshot", "revert:3", "snapshot", "revert:5"]


def test_send_fixture_goes_through_the_gate():
    submitter = ScriptedSubmitter()

    async def setup(ctx):
        receipt = await ctx.send(succeeds(("Primed", {"ok": True}), tx_hash="0xsetup"))
        assert receipt.tx_hash == "0xsetup"

    graph = StateGraph(
        "setup",
        [
            StateNode(
                name="root",
                transitions={"next": TransitionSpec(action=action_for(succeeds()), precondition=setup)},
            )
        ],
        root="root",
    )

    report = run(graph, submitter=submitter)

    assert report.passed
    assert len(submitter.submitted) == 2


class FlakyIsolation:
    def __init__(self, fail_snapshot=(), fail_revert=()):
        self.fail_snapshot = set(fail_snapshot)
        self.fail_revert = set(fail_revert)
        self.snapshots = 0

    async def snapshot(self):
        self.snapshots += 1
        if self.snapshots in self.fail_snapshot:
            raise RuntimeError("evm_snapshot unavailable")
        return self.snapshots

    async def revert(self, snapshot_id):
        if snapshot_id in self.fail_revert:
            raise RuntimeError(f"evm_revert refused snapshot {snapshot_id}")


def two_leaves():
    return StateGraph(
        "pair",
        [
            StateNode(
                name="root",
                transitions={
                    "a": TransitionSpec(action=action_for(succeeds())),
                    "b": TransitionSpec(action=action_for(succeeds())),
                },
            ),
        ],
        root="root",
    )


def test_refused_revert_fails_remaining_siblings_not_the_run():
    report = run(two_leaves(), isolation=FlakyIsolation(fail_revert={1}))

    by_id = {p.path_id: p for p in report.paths}
    assert by_id["0.0"].status == "completed"
    assert by_id["0.1"].status == "failed"
    assert by_id["0.1"].error.kind == "IsolationError"
    assert by_id["0.1"].error.details == {"phase": "revert"}
    assert "refused snapshot 1" in by_id["0.1"].error.message
    assert any(w.startswith("revert_failed snapshot_id=1") for w in report.warnings)
    assert not report.passed


def test_failed_snapshot_fails_only_that_branch():
    report = run(two_leaves(), isolation=FlakyIsolation(fail_snapshot={1}))

    by_id = {p.path_id: p for p in report.paths}
    assert by_id["0.0"].error.kind == "IsolationError"
    assert by_id["0.0"].error.details == {"phase": "snapshot"}
    assert by_id["0.0"].steps == ()
    assert by_id["0.1"].status == "completed"


def test_refused_revert_fails_pending_invalid_attempts_too():
    graph = StateGraph(
        "with_invalid_edge",
        [
            StateNode(
                name="root",
                transitions={"a": TransitionSpec(action=action_for(succeeds()))},
                invalid_transitions={"early": TransitionSpec(action=action_for(rejected()))},
            ),
        ],
        root="root",
    )

    report = run(graph, isolation=FlakyIsolation(fail_revert={1}))

    assert report.paths[0].status == "completed"
    assert report.probes[0].outcome == "error"
    assert report.probes[0].error.kind == "IsolationError"


def test_sync_resolvers_fail_per_name():
    def plain(ctx):
        return 1

    def raises_immediately(ctx):
        raise ValueError("no price feed")

    seen = {}

    async def capture(ctx):
        seen["ctx"] = ctx

    graph = StateGraph(
        "sync",
        [
            StateNode(
                name="root",
                dependencies={"plain": plain},
                transitions={
                    "ok": TransitionSpec(action=action_for(succeeds())),
                    "bad": TransitionSpec(action=action_for(succeeds())),
                },
            ),
            StateNode(name="ok", dependencies={"capture": capture}),
            StateNode(name="bad", dependencies={"price": raises_immediately, "plain": plain}),
        ],
        root="root",
    )

    report = run(graph)

    by_id = {p.path_id: p for p in report.paths}
    assert by_id["0.0"].status == "completed"
    assert seen["ctx"]["plain"] == 1
    assert by_id["0.1"].error.kind == "DependencyResolutionError"
    assert by_id["0.1"].error.details["name"] == "price"
    assert list(by_id["0.1"].error.details["failed"]) == ["price"]


def test_unexpected_crash_ends_only_its_own_path():
    class HauntedGraph(StateGraph):
        armed = False

        def node_for(self, name):
            if self.armed and name == "cursed":
                raise RuntimeError("lookup exploded")
            return super().node_for(name)

    graph = HauntedGraph(
        "haunted",
        [
            StateNode(
                name="root",
                transitions={
                    "fine": TransitionSpec(action=action_for(succeeds())),
                    "cursed": TransitionSpec(action=action_for(succeeds())),
                },
            ),
            StateNode(name="fine"),
        ],
        root="root",
    )
    graph.armed = True

    report = run(graph)

    by_id = {p.path_id: p for p in report.paths}
    assert by_id["0.0"].status == "completed"
    assert by_id["0.1"].status == "failed"
    assert by_id["0.1"].error.kind == "TraversalError"
    assert "lookup exploded" in by_id["0.1"].error.message


def test_rejection_logs_carry_their_own_path_id(caplog):
    graph = StateGraph(
        "logged",
        [
            StateNode(
                name="root",
                transitions={"a": TransitionSpec(action=action_for(succeeds()))},
                invalid_transitions={"early": TransitionSpec(action=action_for(rejected()))},
            ),
        ],
        root="root",
    )
    caplog.handler.addFilter(ContextFilter())

    with caplog.at_level(logging.INFO, logger="statecheck"):
        run(graph, isolation=FlakyIsolation())

    records = [r for r in caplog.records if "reason=" in r.getMessage()]
    assert [r.path_id for r in records] == ["0!early"]
