"""
Tests for WorkflowEngine.execute().

Covers the happy path, dependency ordering, branch selection, timeouts,
cancellation and failure reporting.
"""

import asyncio

import pytest

from nodeflow.config import EngineConfig
from nodeflow.graph.edge import ConnectionSpec, GraphSpec
from nodeflow.graph.executor import WorkflowEngine
from nodeflow.graph.node import NodeSpec, NodeTypeRegistry
from nodeflow.runtime.event_bus import EventBus, EventType
from nodeflow.schemas.run import RunStatus


# ---- Graph helpers ----
def conn(source: str, target: str, source_port: str = "output", target_port: str = "input"):
    return ConnectionSpec(
        source_node_id=source,
        target_node_id=target,
        source_port=source_port,
        target_port=target_port,
    )


def linear_graph(middle_type: str = "double") -> GraphSpec:
    return GraphSpec(
        id="linear",
        name="start -> transform -> end",
        nodes=[
            NodeSpec(id="S", type="start"),
            NodeSpec(id="T", type=middle_type),
            NodeSpec(id="E", type="end"),
        ],
        connections=[conn("S", "T"), conn("T", "E")],
    )


# ---- Fake node types ----
async def double(inputs, properties, ctx):
    return {"output": inputs["input"]["x"] * 2}


async def hang(inputs, properties, ctx):
    await asyncio.Event().wait()


async def boom(inputs, properties, ctx):
    raise ValueError("bad input")


def make_engine(config: EngineConfig | None = None, **node_types) -> WorkflowEngine:
    registry = NodeTypeRegistry.with_builtins()
    registry.register_function("double", double)
    for type_key, func in node_types.items():
        registry.register_function(type_key, func)
    return WorkflowEngine(
        node_registry=registry,
        config=config or EngineConfig(node_timeout_seconds=5, max_execution_seconds=30),
    )


def record_events(engine: WorkflowEngine) -> list:
    events = []
    engine.event_bus.subscribe(event_types=list(EventType), handler=events.append)
    return events


# ---- Happy path ----
@pytest.mark.asyncio
async def test_linear_graph_doubles_input():
    engine = make_engine()

    result = await engine.execute(linear_graph(), {"x": 1})

    assert result.success is True
    assert result.status == RunStatus.COMPLETED
    assert result.result == 2
    assert result.node_states == {"S": "completed", "T": "completed", "E": "completed"}
    assert result.node_outputs["T"] == {"output": 2}
    assert result.error is None
    assert result.run_id.startswith("run_")
    assert result.duration_ms >= 0


@pytest.mark.asyncio
async def test_events_follow_run_lifecycle():
    engine = make_engine()
    events = record_events(engine)

    result = await engine.execute(linear_graph(), {"x": 1})

    assert [(e.type, e.node_id) for e in events] == [
        (EventType.RUN_STARTED, None),
        (EventType.NODE_STARTED, "S"),
        (EventType.NODE_COMPLETED, "S"),
        (EventType.NODE_STARTED, "T"),
        (EventType.NODE_COMPLETED, "T"),
        (EventType.NODE_STARTED, "E"),
        (EventType.NODE_COMPLETED, "E"),
        (EventType.RUN_COMPLETED, None),
    ]
    assert all(e.run_id == result.run_id for e in events)
    assert events[-1].data["result"] == 2


@pytest.mark.asyncio
async def test_graph_definition_is_not_mutated():
    engine = make_engine()
    graph = linear_graph()
    before = graph.model_dump()

    await engine.execute(graph, {"x": 3})
    await engine.execute(graph, {"x": 4})

    assert graph.model_dump() == before


@pytest.mark.asyncio
async def test_initial_variables_are_copied_and_shared_between_nodes():
    async def writer(inputs, properties, ctx):
        ctx.variables["seen"] = ctx.node_id
        return {"output": inputs["input"]}

    async def reader(inputs, properties, ctx):
        return {"output": ctx.variables.get("seen")}

    engine = make_engine(writer=writer, reader=reader)
    graph = GraphSpec(
        id="vars",
        nodes=[
            NodeSpec(id="S", type="start"),
            NodeSpec(id="W", type="writer"),
            NodeSpec(id="R", type="reader"),
            NodeSpec(id="E", type="end"),
        ],
        connections=[conn("S", "W"), conn("W", "R"), conn("R", "E")],
    )
    initial = {"x": 1}

    result = await engine.execute(graph, initial)

    assert result.result == "W"
    assert result.variables == {"x": 1, "seen": "W"}
    assert initial == {"x": 1}


@pytest.mark.asyncio
async def test_non_mapping_output_is_stored_on_output_port():
    async def scalar(inputs, properties, ctx):
        return 42

    engine = make_engine(scalar=scalar)

    result = await engine.execute(linear_graph("scalar"))

    assert result.node_outputs["T"] == {"output": 42}
    assert result.result == 42


@pytest.mark.asyncio
async def test_sync_node_functions_are_supported():
    def upper(inputs, properties, ctx):
        return {"output": properties["text"].upper()}

    engine = make_engine(upper=upper)
    graph = linear_graph("upper")
    graph.nodes[1].properties["text"] = "hello"

    result = await engine.execute(graph)

    assert result.result == "HELLO"


@pytest.mark.asyncio
async def test_inputs_are_gathered_by_port_name():
    captured = {}

    async def produce(inputs, properties, ctx):
        return {"left": "L", "right": "R"}

    async def combine(inputs, properties, ctx):
        captured.update(inputs)
        return {"output": f"{inputs['a']}{inputs['b']}"}

    engine = make_engine(produce=produce, combine=combine)
    graph = GraphSpec(
        id="ports",
        nodes=[
            NodeSpec(id="S", type="start"),
            NodeSpec(id="P", type="produce"),
            NodeSpec(id="C", type="combine"),
            NodeSpec(id="E", type="end"),
        ],
        connections=[
            conn("S", "P"),
            conn("P", "C", source_port="right", target_port="a"),
            conn("P", "C", source_port="left", target_port="b"),
            conn("C", "E"),
        ],
    )

    result = await engine.execute(graph)

    assert captured == {"a": "R", "b": "L"}
    assert result.result == "RL"


# ---- Dependencies ----
@pytest.mark.asyncio
async def test_fan_in_waits_for_every_upstream_node():
    seen_at_join: dict = {}

    async def slow(inputs, properties, ctx):
        await asyncio.sleep(0.02)
        return {"output": "slow"}

    async def fast(inputs, properties, ctx):
        return {"output": "fast"}

    async def join(inputs, properties, ctx):
        seen_at_join.update(inputs)
        return {"output": sorted(inputs.values())}

    engine = make_engine(slow=slow, fast=fast, join=join)
    events = record_events(engine)
    graph = GraphSpec(
        id="fan-in",
        nodes=[
            NodeSpec(id="S", type="start"),
            NodeSpec(id="X", type="slow"),
            NodeSpec(id="Y", type="fast"),
            NodeSpec(id="J", type="join"),
            NodeSpec(id="E", type="end"),
        ],
        connections=[
            conn("S", "X"),
            conn("S", "Y"),
            conn("X", "J", target_port="x"),
            conn("Y", "J", target_port="y"),
            conn("J", "E"),
        ],
    )

    result = await engine.execute(graph)

    assert result.success is True
    assert seen_at_join == {"x": "slow", "y": "fast"}
    order = [(e.type, e.node_id) for e in events]
    join_started = order.index((EventType.NODE_STARTED, "J"))
    assert order.index((EventType.NODE_COMPLETED, "X")) < join_started
    assert order.index((EventType.NODE_COMPLETED, "Y")) < join_started


@pytest.mark.asyncio
async def test_node_reachable_by_two_paths_runs_once():
    calls = []

    async def passthrough(inputs, properties, ctx):
        calls.append(ctx.node_id)
        return {"output": ctx.node_id}

    engine = make_engine(passthrough=passthrough)
    graph = GraphSpec(
        id="diamond",
        nodes=[
            NodeSpec(id="S", type="start"),
            NodeSpec(id="A", type="passthrough"),
            NodeSpec(id="B", type="passthrough"),
            NodeSpec(id="J", type="passthrough"),
        ],
        connections=[
            conn("S", "A"),
            conn("S", "B"),
            conn("A", "J", target_port="a"),
            conn("B", "J", target_port="b"),
        ],
    )

    result = await engine.execute(graph)

    assert calls == ["A", "B", "J"]
    assert result.node_states["J"] == "completed"
    assert result.result is None


@pytest.mark.asyncio
async def test_downstream_nodes_run_in_declaration_order():
    calls = []

    async def record(inputs, properties, ctx):
        calls.append(ctx.node_id)
        return {"output": None}

    engine = make_engine(record=record)
    graph = GraphSpec(
        id="fan-out",
        nodes=[
            NodeSpec(id="S", type="start"),
            NodeSpec(id="C", type="record"),
            NodeSpec(id="A", type="record"),
            NodeSpec(id="B", type="record"),
        ],
        connections=[conn("S", "B"), conn("S", "A"), conn("S", "C")],
    )

    await engine.execute(graph)

    assert calls == ["B", "A", "C"]


# ---- Branching ----
def branch_graph(with_join: bool = False) -> GraphSpec:
    nodes = [
        NodeSpec(id="S", type="start"),
        NodeSpec(id="P", type="pick"),
        NodeSpec(
            id="C",
            type="condition",
            properties={"condition_type": "equals", "compare_value": "yes"},
        ),
        NodeSpec(id="A", type="label"),
        NodeSpec(id="B", type="label"),
    ]
    connections = [
        conn("S", "P"),
        conn("P", "C"),
        conn("C", "A", source_port="true"),
        conn("C", "B", source_port="false"),
    ]
    if with_join:
        nodes.append(NodeSpec(id="E", type="end"))
        connections += [conn("A", "E"), conn("B", "E")]
    return GraphSpec(id="branch", nodes=nodes, connections=connections)


def make_branch_engine() -> WorkflowEngine:
    async def pick(inputs, properties, ctx):
        return {"output": ctx.variables["answer"]}

    async def label(inputs, properties, ctx):
        return {"output": f"{ctx.node_id}:{inputs['input']}"}

    return make_engine(pick=pick, label=label)


@pytest.mark.asyncio
@pytest.mark.parametrize(("answer", "taken", "skipped"), [("yes", "A", "B"), ("no", "B", "A")])
async def test_condition_takes_exactly_one_branch(answer, taken, skipped):
    engine = make_branch_engine()

    result = await engine.execute(branch_graph(), {"answer": answer})

    assert result.success is True
    assert result.node_states[taken] == "completed"
    assert result.node_states[skipped] == "pending"
    assert skipped not in result.node_outputs
    assert result.node_outputs[taken] == {"output": f"{taken}:{answer}"}


@pytest.mark.asyncio
async def test_join_behind_untaken_branch_is_reported_blocked():
    engine = make_branch_engine()

    result = await engine.execute(branch_graph(with_join=True), {"answer": "yes"})

    assert result.success is True
    assert result.blocked_nodes == ["E"]
    assert result.node_states["E"] == "pending"
    assert result.result is None


# ---- Timeouts ----
@pytest.mark.asyncio
async def test_hanging_node_times_out():
    engine = make_engine(
        EngineConfig(node_timeout_seconds=0.1, max_execution_seconds=30),
        hang=hang,
    )
    events = record_events(engine)

    result = await engine.execute(linear_graph("hang"), {"x": 1})

    assert result.success is False
    assert result.status == RunStatus.FAILED
    assert result.failed_node == "T"
    assert "timed out" in result.error
    assert result.node_states == {"S": "completed", "T": "error", "E": "pending"}
    assert 80 <= result.duration_ms < 2000
    node_errors = [e for e in events if e.type == EventType.NODE_FAILED]
    assert [e.node_id for e in node_errors] == ["T"]
    assert events[-1].type == EventType.RUN_FAILED


@pytest.mark.asyncio
async def test_timeout_property_overrides_engine_default():
    engine = make_engine(
        EngineConfig(node_timeout_seconds=30, max_execution_seconds=60),
        hang=hang,
    )
    graph = linear_graph("hang")
    graph.nodes[1].properties["timeout"] = 0.05

    result = await engine.execute(graph, {"x": 1})

    assert result.success is False
    assert "timed out after 0.05s" in result.error
    assert result.duration_ms < 5000


@pytest.mark.asyncio
async def test_global_time_budget_stops_run():
    async def slow(inputs, properties, ctx):
        await asyncio.sleep(0.3)
        return {"output": "late"}

    engine = make_engine(
        EngineConfig(node_timeout_seconds=5, max_execution_seconds=0.1),
        slow=slow,
    )
    events = record_events(engine)
    graph = GraphSpec(
        id="budget",
        nodes=[
            NodeSpec(id="S", type="start"),
            NodeSpec(id="W", type="slow"),
            NodeSpec(id="after", type="slow"),
        ],
        connections=[conn("S", "W"), conn("W", "after")],
    )

    result = await engine.execute(graph)

    assert result.success is False
    assert result.status == RunStatus.TIMED_OUT
    assert "timed out" in result.error
    assert result.node_states["after"] == "pending"
    failures = [e for e in events if e.type == EventType.RUN_FAILED]
    # One when the budget runs out, one when the run has stopped
    tripped, final = failures
    assert "timed out" in tripped.data["error"]
    assert "result" not in tripped.data
    assert final is events[-1]
    assert final.data["error"] == result.error
    assert final.data["result"]["status"] == "timed_out"
    assert final.data["result"]["node_outputs"]["W"] == {"output": "late"}
    assert final.data["result"]["duration_ms"] == result.duration_ms
    assert not [e for e in events if e.type == EventType.RUN_COMPLETED]


# ---- Cancellation ----
@pytest.mark.asyncio
async def test_abort_during_node_stops_before_next_node():
    started = asyncio.Event()
    calls = []

    async def slow(inputs, properties, ctx):
        calls.append(ctx.node_id)
        started.set()
        await asyncio.sleep(0.05)
        return {"output": ctx.is_cancelled}

    engine = make_engine(slow=slow)
    events = record_events(engine)
    graph = GraphSpec(
        id="abortable",
        nodes=[
            NodeSpec(id="S", type="start"),
            NodeSpec(id="W", type="slow"),
            NodeSpec(id="after", type="slow"),
        ],
        connections=[conn("S", "W"), conn("W", "after")],
    )

    task = asyncio.create_task(engine.execute(graph))
    await started.wait()
    (run_id,) = engine.get_active_runs()
    assert engine.abort(run_id) is True
    result = await task

    assert result.success is False
    assert result.status == RunStatus.ABORTED
    assert result.aborted is True
    assert calls == ["W"]
    # The in-flight node finishes and sees the signal
    assert result.node_outputs["W"] == {"output": True}
    assert result.node_states["after"] == "pending"
    assert engine.get_active_runs() == []
    aborted = [e for e in events if e.type == EventType.RUN_ABORTED]
    assert aborted == [events[-1]]
    assert aborted[0].data["status"] == "aborted"
    assert aborted[0].data["node_outputs"]["W"] == {"output": True}
    assert aborted[0].data["duration_ms"] == result.duration_ms
    assert not [e for e in events if e.type == EventType.RUN_COMPLETED]


@pytest.mark.asyncio
async def test_abort_unknown_run_returns_false():
    engine = make_engine()

    assert engine.abort("run_missing") is False


@pytest.mark.asyncio
async def test_abort_all_trips_every_active_run():
    started = []
    both_started = asyncio.Event()

    async def slow(inputs, properties, ctx):
        started.append(ctx.run_id)
        if len(started) == 2:
            both_started.set()
        await asyncio.sleep(0.05)
        return {"output": "done"}

    engine = make_engine(slow=slow)
    graph = GraphSpec(
        id="parallel-runs",
        nodes=[
            NodeSpec(id="S", type="start"),
            NodeSpec(id="W", type="slow"),
            NodeSpec(id="after", type="slow"),
        ],
        connections=[conn("S", "W"), conn("W", "after")],
    )

    tasks = [asyncio.create_task(engine.execute(graph)) for _ in range(2)]
    await both_started.wait()
    assert engine.abort_all() == 2
    results = await asyncio.gather(*tasks)

    assert {r.status for r in results} == {RunStatus.ABORTED}
    assert results[0].run_id != results[1].run_id
    assert engine.get_active_runs() == []


# ---- Failures ----
@pytest.mark.asyncio
async def test_node_error_fails_run_and_keeps_partial_state():
    engine = make_engine(boom=boom)
    events = record_events(engine)

    result = await engine.execute(linear_graph("boom"), {"x": 1})

    assert result.success is False
    assert result.status == RunStatus.FAILED
    assert result.error == "Node 'T' failed: bad input"
    assert result.failed_node == "T"
    assert result.node_errors == {"T": "bad input"}
    assert result.node_outputs["S"] == {"output": {"x": 1}}
    assert result.node_states == {"S": "completed", "T": "error", "E": "pending"}
    failed = events[-1]
    assert failed.type == EventType.RUN_FAILED
    assert failed.node_id == "T"
    assert failed.data["result"]["success"] is False


@pytest.mark.asyncio
async def test_unknown_node_type_is_a_node_error():
    engine = make_engine()

    result = await engine.execute(linear_graph("not-registered"), {"x": 1})

    assert result.success is False
    assert result.failed_node == "T"
    assert "Unknown node type" in result.error
    assert result.node_states["T"] == "error"


@pytest.mark.asyncio
async def test_missing_start_node_refuses_to_run():
    engine = make_engine()
    events = record_events(engine)
    graph = GraphSpec(
        id="headless",
        nodes=[NodeSpec(id="T", type="double"), NodeSpec(id="E", type="end")],
        connections=[conn("T", "E")],
    )

    result = await engine.execute(graph)

    assert result.success is False
    assert result.error == "Workflow has no start node"
    assert result.node_states == {"T": "pending", "E": "pending"}
    assert events[-1].type == EventType.RUN_FAILED
    assert engine.get_active_runs() == []


@pytest.mark.asyncio
async def test_multiple_start_nodes_refuse_to_run():
    engine = make_engine()
    graph = linear_graph()
    graph.nodes.append(NodeSpec(id="S2", type="start"))

    result = await engine.execute(graph, {"x": 1})

    assert result.success is False
    assert "exactly one is required" in result.error


@pytest.mark.asyncio
async def test_failing_listener_does_not_abort_run():
    bus = EventBus()
    registry = NodeTypeRegistry.with_builtins()
    registry.register_function("double", double)
    engine = WorkflowEngine(node_registry=registry, event_bus=bus)

    def broken(event):
        raise RuntimeError("listener exploded")

    bus.subscribe(event_types=[EventType.NODE_COMPLETED], handler=broken)

    result = await engine.execute(linear_graph(), {"x": 5})

    assert result.success is True
    assert result.result == 10


@pytest.mark.asyncio
async def test_dangling_connection_is_skipped():
    engine = make_engine()
    graph = linear_graph()
    graph.connections.append(conn("ghost", "T", target_port="extra"))
    graph.connections.append(conn("T", "nowhere"))

    result = await engine.execute(graph, {"x": 2})

    assert result.success is True
    assert result.result == 4
    assert result.blocked_nodes == []


@pytest.mark.asyncio
async def test_separate_engines_do_not_share_active_runs():
    started = asyncio.Event()

    async def slow(inputs, properties, ctx):
        started.set()
        await asyncio.sleep(0.05)
        return {"output": "done"}

    first = make_engine(slow=slow)
    second = make_engine(slow=slow)

    task = asyncio.create_task(first.execute(linear_graph("slow")))
    await started.wait()

    assert len(first.get_active_runs()) == 1
    assert second.get_active_runs() == []
    assert second.abort_all() == 0

    result = await task
    assert result.success is True


@pytest.mark.asyncio
async def test_timeout_error_raised_by_node_is_an_ordinary_failure():
    async def gives_up(inputs, properties, ctx):
        raise TimeoutError("upstream API gave up")

    engine = make_engine(gives_up=gives_up)

    result = await engine.execute(linear_graph("gives_up"), {"x": 1})

    assert result.status == RunStatus.FAILED
    assert result.node_errors == {"T": "upstream API gave up"}
