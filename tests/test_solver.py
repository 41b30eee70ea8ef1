import io

import pytest
from cpgflow.errors import (
    GraphInvariantError,
    SessionStateError,
    SolverError,
    UnknownPositionError,
)
from cpgflow.estimator import CpgEstimator
from cpgflow.graph import CpgOffset, FlowGraph, Read
from cpgflow.solver import CONSISTENCY_FACTOR, CpgSolver, SessionState


def single_read_session() -> CpgSolver:
    """One unmethylated CpG at position 100, arc to the sink of length 1.5."""
    graph = FlowGraph()
    graph.add_node("v", read=Read(start=100, cpgs=[CpgOffset(1, False)]))
    graph.set_sink("sink")
    graph.add_arc("v", "sink", length=1.5)
    estimator = CpgEstimator.from_counts({100: (2.0, 0.0)})
    return CpgSolver(graph, estimator, margin=0.1)


def two_read_graph() -> FlowGraph:
    graph = FlowGraph()
    graph.add_node("v", read=Read(10, [CpgOffset(1, True), CpgOffset(3, False)]))
    graph.add_node("u", read=Read(12, [CpgOffset(1, True)]))
    graph.set_sink("sink")
    graph.add_arc("v", "u")
    graph.add_arc("u", "sink", length=2.0)
    graph.add_arc("v", "sink", length=1.0)
    return graph


def built(solver: CpgSolver) -> CpgSolver:
    solver.add_cols()
    solver.add_constraints()
    return solver


def test_add_cols() -> None:
    """Every position gets four distinct [0, 1] columns."""
    graph = two_read_graph()
    estimator = CpgEstimator(graph)
    estimator.compute_normalized()
    solver = CpgSolver(graph, estimator)
    solver.add_cols()

    assert solver.state is SessionState.COLUMNS_ADDED
    assert set(solver.alpha_y) == {10, 12}

    deviation_cols = set()
    for pos in estimator.normalized_map:
        cols = {
            solver.alpha_y[pos],
            solver.beta_y[pos],
            solver.alpha_m[pos],
            solver.beta_m[pos],
        }
        assert len(cols) == 4
        deviation_cols |= cols
    assert len(deviation_cols) == 8

    assert set(solver.alpha_lambda) == {"u", "v"}
    assert set(solver.nu) == {"u", "v"}
    # 2 potentials + 8 deviation + 4 lambda slacks
    assert solver.lp.num_cols == 14
    for col in list(deviation_cols) + list(solver.nu.values()):
        assert solver.lp.col_bounds(col) == (0.0, 1.0)
    for v in solver.alpha_lambda:
        assert solver.lp.col_bounds(solver.alpha_lambda[v]) == (0.0, 1.0)
        assert solver.lp.col_bounds(solver.beta_lambda[v]) == (0.0, 1.0)


def test_add_cols_twice_raises_error() -> None:
    """Test that columns are added only once per session."""
    solver = single_read_session()
    solver.add_cols()
    with pytest.raises(SessionStateError, match="add columns"):
        solver.add_cols()
    assert solver.lp.num_cols == 1 + 4 + 2


def test_invalid_margin() -> None:
    """Test that a non-positive margin raises ValueError."""
    graph = two_read_graph()
    with pytest.raises(ValueError, match="strictly positive"):
        CpgSolver(graph, CpgEstimator(graph), margin=0.0)


def test_sink_row_uses_arc_length() -> None:
    """A single read feeding the sink with length 1.5."""
    solver = built(single_read_session())
    solver.solve(1.0)

    v = "v"
    row = solver.lp.row(solver.sink_rows[("v", "sink")])
    assert row.sense == "<="
    assert row.bound == pytest.approx(-0.1)
    assert row.as_dict() == {
        solver.beta_lambda[v].id: 1.5,
        solver.alpha_lambda[v].id: -1.5,
        solver.nu[v].id: -1.0,
    }


def test_length_mult_scales_sink_rows() -> None:
    """Test that length_mult scales sink row coefficients."""
    graph = two_read_graph()
    estimator = CpgEstimator(graph, length_mult=2.0)
    estimator.compute_normalized()
    solver = built(CpgSolver(graph, estimator))

    row = solver.lp.row(solver.sink_rows[("u", "sink")])
    assert row.as_dict()[solver.beta_lambda["u"].id] == 4.0


def test_modify_lambda_constraints() -> None:
    """Sink rows take lambda in place of the length, keeping columns and bound."""
    solver = built(single_read_session())
    solver.solve(1.0)
    before = solver.lp.row(solver.sink_rows[("v", "sink")])
    interior_before = solver.lp.row(solver.interior_rows[("v", "sink")])

    solver.modify_lambda_constraints(0.5)

    assert solver.state is SessionState.LAMBDA_MODIFIED
    after = solver.lp.row(solver.sink_rows[("v", "sink")])
    assert after.as_dict() == {
        solver.beta_lambda["v"].id: 0.5,
        solver.alpha_lambda["v"].id: -0.5,
        solver.nu["v"].id: -1.0,
    }
    assert after.bound == before.bound
    assert after.columns() == before.columns()
    assert solver.lp.row(solver.interior_rows[("v", "sink")]) == interior_before
    assert solver.lp.num_cols == 7


def test_interior_rows() -> None:
    """Coverage terms for every touched CpG, methylation terms only when methylated."""
    graph = two_read_graph()
    estimator = CpgEstimator(graph)
    estimator.compute_normalized()
    solver = built(CpgSolver(graph, estimator))

    assert set(solver.interior_rows) == {("v", "u"), ("v", "sink"), ("u", "sink")}

    row = solver.lp.row(solver.interior_rows[("v", "u")])
    assert row.bound == pytest.approx(-CONSISTENCY_FACTOR)
    assert row.as_dict() == {
        solver.beta_y[10].id: 1.0,
        solver.alpha_y[10].id: -1.0,
        solver.beta_m[10].id: 1.0,
        solver.alpha_m[10].id: -1.0,
        solver.beta_y[12].id: 1.0,
        solver.alpha_y[12].id: -1.0,
        solver.nu["u"].id: 1.0,
        solver.nu["v"].id: -1.0,
    }

    # The sink has no potential column
    row = solver.lp.row(solver.interior_rows[("u", "sink")])
    assert row.as_dict() == {
        solver.beta_y[12].id: 1.0,
        solver.alpha_y[12].id: -1.0,
        solver.beta_m[12].id: 1.0,
        solver.alpha_m[12].id: -1.0,
        solver.nu["u"].id: -1.0,
    }

    # Interior rows never replace sink rows
    assert solver.sink_rows[("v", "sink")] != solver.interior_rows[("v", "sink")]
    assert solver.lp.num_rows == 5


def test_childless_node_has_no_interior_rows() -> None:
    """Test that childless nodes emit no interior rows."""
    graph = FlowGraph()
    graph.add_node("v", read=Read(10, [CpgOffset(1, True)]), childless=True)
    graph.add_node("u", read=Read(10, [CpgOffset(1, False)]))
    graph.set_sink("sink")
    graph.add_arc("v", "u")
    graph.add_arc("v", "sink")
    graph.add_arc("u", "sink")
    estimator = CpgEstimator(graph)
    estimator.compute_normalized()
    solver = built(CpgSolver(graph, estimator))

    assert ("v", "u") not in solver.interior_rows
    assert ("v", "sink") not in solver.interior_rows
    assert ("u", "sink") in solver.interior_rows
    assert set(solver.sink_rows) == {("v", "sink"), ("u", "sink")}


def test_node_without_read_has_no_interior_rows() -> None:
    """Test that nodes without a read emit no interior rows."""
    graph = FlowGraph()
    graph.add_node("v")
    graph.add_node("u")
    graph.set_sink("sink")
    graph.add_arc("v", "u")
    graph.add_arc("u", "sink")
    solver = built(CpgSolver(graph, CpgEstimator.from_counts({})))

    assert solver.interior_rows == {}
    assert solver.lp.num_rows == 1


def test_fake_node_has_no_interior_rows() -> None:
    """Test that fake nodes emit no interior rows."""
    graph = FlowGraph()
    graph.add_node("s", read=Read(10, [CpgOffset(1, True)]), fake=True)
    graph.add_node("v", read=Read(10, [CpgOffset(1, True)]))
    graph.set_sink("sink")
    graph.add_arc("s", "v")
    graph.add_arc("v", "sink")
    estimator = CpgEstimator(graph)
    estimator.compute_normalized()
    solver = built(CpgSolver(graph, estimator))

    assert set(solver.interior_rows) == {("v", "sink")}


class DanglingFlowGraph(FlowGraph):
    """A flow graph whose arc a -> b has lost its target."""

    def target(self, arc):
        if arc == ("a", "b"):
            return None
        return super().target(arc)


def test_unresolved_target_fails_session() -> None:
    """Test that an unresolvable arc target stops add_constraints."""
    graph = DanglingFlowGraph()
    graph.add_node("a", read=Read(10, [CpgOffset(1, True)]))
    graph.add_node("b", read=Read(10, [CpgOffset(1, False)]))
    graph.set_sink("sink")
    graph.add_arc("a", "b")
    graph.add_arc("a", "sink")
    graph.add_arc("b", "sink")
    estimator = CpgEstimator(graph)
    estimator.compute_normalized()
    solver = CpgSolver(graph, estimator)
    solver.add_cols()

    with pytest.raises(GraphInvariantError, match="Cannot resolve the target"):
        solver.add_constraints()

    assert solver.state is SessionState.FAILED
    assert solver.interior_rows == {}
    # Only the sink rows built before the failure remain
    assert solver.lp.num_rows == len(solver.sink_rows) == 2

    with pytest.raises(SessionStateError, match="must be discarded"):
        solver.solve(1.0)


def test_unknown_position_is_fatal() -> None:
    """Test that a read outside the statistics fails the session."""
    graph = FlowGraph()
    graph.add_node("v", read=Read(100, [CpgOffset(1, False), CpgOffset(5, True)]))
    graph.set_sink("sink")
    graph.add_arc("v", "sink")
    solver = CpgSolver(graph, CpgEstimator.from_counts({100: (1.0, 0.0)}))
    solver.add_cols()

    with pytest.raises(UnknownPositionError, match="104") as excinfo:
        solver.add_constraints()

    assert isinstance(excinfo.value, KeyError)
    assert excinfo.value.position == 104
    assert excinfo.value.node == "v"
    assert solver.state is SessionState.FAILED


def test_deviance_objective() -> None:
    """Test the deviance and lambda objective terms."""
    solver = single_read_session()
    solver.add_cols()
    obj = solver.make_deviance_objective()
    assert obj.terms == {
        solver.beta_y[100]: 2.0,
        solver.alpha_y[100]: -2.0,
        solver.beta_m[100]: 0.0,
        solver.alpha_m[100]: -0.0,
    }

    obj = solver.make_lambda_objective(0.25, obj)
    assert obj.terms[solver.beta_lambda["v"]] == 0.25
    assert obj.terms[solver.alpha_lambda["v"]] == -0.25


def test_objective_is_independent_of_input_order() -> None:
    """Building the objective from the same statistics in any order gives the same terms."""
    graph = two_read_graph()
    counts = {10: (0.5, 0.5), 12: (1.0, 0.5)}
    objectives = []
    for items in (list(counts.items()), list(reversed(counts.items()))):
        solver = CpgSolver(graph, CpgEstimator.from_counts(dict(items)))
        solver.add_cols()
        first = solver.make_deviance_objective()
        second = solver.make_deviance_objective()
        assert sorted((c.id, w) for c, w in first.items()) == sorted(
            (c.id, w) for c, w in second.items()
        )
        objectives.append(sorted((c.id, w) for c, w in first.items()))
    assert objectives[0] == objectives[1]


def test_solve_and_score() -> None:
    """max 2*(by - ay) + (bl - al): the sink row binds with dual 1/1.5."""
    solver = built(single_read_session())

    objective = solver.solve(1.0)
    assert solver.state is SessionState.SOLVED
    assert objective == pytest.approx(2.4)
    assert solver.lp.primal(solver.nu["v"]) == pytest.approx(1.0)

    score = solver.score(1.0)
    assert solver.state is SessionState.SCORED
    assert score == pytest.approx(2.4 - 1.0 / 1.5)
    # Scoring again against the same solution gives the same value
    assert solver.score(1.0) == score


def test_run_rewrites_and_rescores() -> None:
    """Test run at new lambda values."""
    solver = built(single_read_session())
    solver.solve(1.0)
    solver.score(1.0)

    # lambda * (bl - al) <= nu - 0.1 no longer binds at lambda = 0.5
    assert solver.run(0.5) == pytest.approx(2.3)
    assert solver.run(1.0) == pytest.approx(1.7)
    assert solver.state is SessionState.SCORED


def test_session_order_is_enforced() -> None:
    """Test the session state machine."""
    solver = single_read_session()
    with pytest.raises(SessionStateError, match="add constraints"):
        solver.add_constraints()
    solver.add_cols()
    solver.add_constraints()
    with pytest.raises(SessionStateError, match="score"):
        solver.score(1.0)
    solver.modify_lambda_constraints(0.5)
    assert solver.state is SessionState.CONSTRAINTS_ADDED
    solver.solve(0.5)
    solver.modify_lambda_constraints(0.7)
    with pytest.raises(SessionStateError, match="score"):
        solver.score(0.7)


def test_infeasible_session_fails() -> None:
    """A chain of eleven read-less-CpG nodes needs a potential above 1."""
    graph = FlowGraph()
    nodes = [f"n{i}" for i in range(11)]
    for node in nodes:
        graph.add_node(node, read=Read(1, []))
    graph.set_sink("sink")
    for source, target in zip(nodes, nodes[1:] + ["sink"]):
        graph.add_arc(source, target)
    solver = built(CpgSolver(graph, CpgEstimator.from_counts({})))

    with pytest.raises(SolverError):
        solver.solve(1.0)
    assert solver.state is SessionState.FAILED
    with pytest.raises(SessionStateError):
        solver.score(1.0)
    with pytest.raises(SessionStateError):
        solver.modify_lambda_constraints(1.0)


def test_print_primal(capsys) -> None:
    """Test print_primal before and after solving."""
    solver = built(single_read_session())
    solver.print_primal()
    assert "No LP solution available." in capsys.readouterr().out

    solver.solve(1.0)
    stream = io.StringIO()
    solver.print_primal(stream)
    output = stream.getvalue()
    assert output.startswith("100: ay=")
    assert "y=2 my=0" in output
    assert "v: nu=1" in output


def test_verbose_output(capsys) -> None:
    """Test verbose and debug output."""
    graph = two_read_graph()
    estimator = CpgEstimator(graph)
    estimator.compute_normalized()
    solver = CpgSolver(graph, estimator, verbose=True, debug=True)
    built(solver)
    solver.solve(1.0)

    captured = capsys.readouterr()
    assert "Added 14 columns" in captured.out
    assert "Added 2 sink rows and 3 interior rows" in captured.out
    assert "interior row ('v', 'u')" in captured.out
    assert "Solved at lambda = 1" in captured.out


def test_invalid_graph_fails_session() -> None:
    """A graph without a sink cannot be built, and the session is discarded."""
    graph = FlowGraph()
    graph.add_node("v", read=Read(100, [CpgOffset(1, False)]))
    solver = CpgSolver(graph, CpgEstimator.from_counts({100: (2.0, 0.0)}))

    with pytest.raises(GraphInvariantError, match="no sink"):
        solver.add_cols()
    assert solver.state is SessionState.FAILED
    assert solver.lp.num_cols == 0
    with pytest.raises(SessionStateError, match="must be discarded"):
        solver.add_cols()
