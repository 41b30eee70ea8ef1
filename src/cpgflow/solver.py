"""Parametric LP for CpG methylation consistency over a read flow graph.

The model has, per CpG position, two pairs of [0, 1] slack columns encoding
the L1 deviation of coverage (``alpha_y``/``beta_y``) and of methylated count
(``alpha_m``/``beta_m``); per node feeding the sink, a pair of lambda slacks;
and one potential ``nu`` per non-sink node. Every row has the form
``expr <= -margin``.
"""

import enum
import sys
from typing import Hashable, Optional, TextIO

from tqdm import tqdm
from cpgflow.errors import (
    CpgFlowError,
    GraphInvariantError,
    SessionStateError,
    SolverError,
    UnknownPositionError,
)
from cpgflow.estimator import CpgEstimator
from cpgflow.graph import Arc, FlowGraph, Read
from cpgflow.lp import Col, LinearExpr, LPEngine, Row

# Uniform gap enforced by every row
CONSISTENCY_FACTOR = 0.1


class SessionState(enum.Enum):
    CREATED = "created"
    COLUMNS_ADDED = "columns_added"
    CONSTRAINTS_ADDED = "constraints_added"
    SOLVED = "solved"
    LAMBDA_MODIFIED = "lambda_modified"
    SCORED = "scored"
    FAILED = "failed"


class CpgSolver:
    """Builds the consistency LP once, then re-solves it across lambda values.

    A session is driven as::

        solver = CpgSolver(graph, estimator)
        solver.add_cols()
        solver.add_constraints()
        solver.solve(lambda_)
        solver.score(lambda_)
        solver.modify_lambda_constraints(next_lambda)   # then solve again

    Any failure moves the session to ``SessionState.FAILED``; a failed
    session must be discarded.
    """

    def __init__(
        self,
        graph: FlowGraph,
        estimator: CpgEstimator,
        margin: float = CONSISTENCY_FACTOR,
        length_mult: Optional[float] = None,
        verbose: bool = False,
        debug: bool = False,
    ):
        """Initialize an empty LP session.

        Args
        ----------
        graph : FlowGraph
            The read flow graph. Must have a sink.
        estimator : CpgEstimator
            Normalized per-position statistics.
        margin : float, optional
            Right-hand side gap of every row, must be strictly positive.
        length_mult : float, optional
            Sink arc length multiplier, defaults to the estimator's.
        verbose : bool, optional
            Verbose output.
        debug : bool, optional
            Print every row as it is added.

        Raises
        -------
        ValueError
            If margin or length_mult is not positive.
        """
        if margin <= 0:
            raise ValueError("The consistency margin must be strictly positive")
        if length_mult is None:
            length_mult = estimator.length_mult
        if length_mult <= 0:
            raise ValueError("length_mult must be positive")

        self.graph = graph
        self.estimator = estimator
        self.margin = float(margin)
        self.length_mult = float(length_mult)
        self.verbose = verbose
        self.debug = debug

        self.lp = LPEngine()
        self.state = SessionState.CREATED

        self.nu: dict[Hashable, Col] = {}
        self.alpha_y: dict[int, Col] = {}
        self.beta_y: dict[int, Col] = {}
        self.alpha_m: dict[int, Col] = {}
        self.beta_m: dict[int, Col] = {}
        self.alpha_lambda: dict[Hashable, Col] = {}
        self.beta_lambda: dict[Hashable, Col] = {}

        # Kept apart so an interior row on a sink arc never shadows its sink row
        self.sink_rows: dict[Arc, Row] = {}
        self.interior_rows: dict[Arc, Row] = {}

    def _require(self, action: str, *states: SessionState) -> None:
        if self.state is SessionState.FAILED:
            raise SessionStateError(
                f"Cannot {action}: this session failed and must be discarded"
            )
        if self.state not in states:
            raise SessionStateError(f"Cannot {action} in state {self.state.name}")

    def _unit_col(self) -> Col:
        col = self.lp.add_col()
        self.lp.col_lower_bound(col, 0.0)
        self.lp.col_upper_bound(col, 1.0)
        return col

    def add_nu_cols(self) -> None:
        """Add one potential column per non-sink node."""
        for v in self.graph.nodes():
            if v == self.graph.sink:
                continue
            self.nu[v] = self._unit_col()

    def add_cols(self) -> None:
        """Add potential, deviation and lambda-slack columns, all bounded to [0, 1]."""
        self._require("add columns", SessionState.CREATED)
        try:
            self.graph.validate()
        except GraphInvariantError:
            self.state = SessionState.FAILED
            raise

        self.add_nu_cols()

        for pos in tqdm(self.estimator.normalized_map, disable=not self.verbose):
            self.alpha_y[pos] = self._unit_col()
            self.beta_y[pos] = self._unit_col()
            self.alpha_m[pos] = self._unit_col()
            self.beta_m[pos] = self._unit_col()

        # now add alpha and beta for lambda nodes
        for arc in self.graph.sink_arcs():
            v = self.graph.source(arc)
            self.alpha_lambda[v] = self._unit_col()
            self.beta_lambda[v] = self._unit_col()

        self.state = SessionState.COLUMNS_ADDED
        if self.verbose:
            print(
                f"\tAdded {self.lp.num_cols:,} columns "
                f"({len(self.estimator):,} CpGs, {len(self.alpha_lambda):,} sink-adjacent nodes)"
            )

    def potential(self, node: Hashable):
        """The potential column of ``node``; the sink's potential is zero."""
        if node == self.graph.sink:
            return 0.0
        return self.nu[node]

    def scaled_length(self, arc: Arc) -> float:
        return self.graph.length(arc) * self.length_mult

    def make_deviance_objective(self, obj: Optional[LinearExpr] = None) -> LinearExpr:
        """Add the data-fit term to ``obj`` (a new expression if omitted)."""
        self._require(
            "build the objective",
            SessionState.COLUMNS_ADDED,
            SessionState.CONSTRAINTS_ADDED,
            SessionState.SOLVED,
            SessionState.LAMBDA_MODIFIED,
            SessionState.SCORED,
        )
        if obj is None:
            obj = LinearExpr()
        for pos, entry in self.estimator.normalized_map.items():
            obj += entry.cov * (self.beta_y[pos] - self.alpha_y[pos])
            obj += entry.meth * (self.beta_m[pos] - self.alpha_m[pos])
        return obj

    def make_lambda_objective(
        self, lambda_: float, obj: Optional[LinearExpr] = None
    ) -> LinearExpr:
        """Add the lambda-weighted regularization term to ``obj``."""
        self._require(
            "build the objective",
            SessionState.COLUMNS_ADDED,
            SessionState.CONSTRAINTS_ADDED,
            SessionState.SOLVED,
            SessionState.LAMBDA_MODIFIED,
            SessionState.SCORED,
        )
        if obj is None:
            obj = LinearExpr()
        lambda_ = float(lambda_)
        for arc in self.graph.sink_arcs():
            v = self.graph.source(arc)
            obj += lambda_ * (self.beta_lambda[v] - self.alpha_lambda[v])
        return obj

    def add_constraints(self) -> None:
        """Add the sink rows and the interior consistency rows.

        Raises
        -------
        GraphInvariantError
            If an out-arc's target cannot be resolved. No further rows are
            added and the session fails.
        UnknownPositionError
            If a read touches a position missing from the statistics.
        """
        self._require("add constraints", SessionState.COLUMNS_ADDED)
        try:
            self._add_sink_constraints()
            self._add_interior_constraints()
        except CpgFlowError:
            self.state = SessionState.FAILED
            raise

        self.state = SessionState.CONSTRAINTS_ADDED
        if self.verbose:
            print(
                f"\tAdded {len(self.sink_rows):,} sink rows and "
                f"{len(self.interior_rows):,} interior rows"
            )

    def _add_sink_constraints(self) -> None:
        for arc in self.graph.sink_arcs():
            v = self.graph.source(arc)
            length = self.scaled_length(arc)
            expr = (
                length * self.beta_lambda[v]
                - length * self.alpha_lambda[v]
                - self.nu[v]
            )
            self.sink_rows[arc] = self.lp.add_row(expr <= -self.margin)
            if self.debug:
                print(f"sink row {arc}: {expr} <= {-self.margin}")

    def _read_expr(self, v: Hashable, read: Read) -> LinearExpr:
        expr = LinearExpr()
        for pos, methyl in read.positions():
            if pos not in self.estimator:
                raise UnknownPositionError(pos, node=v)
            expr += self.beta_y[pos] - self.alpha_y[pos]
            if methyl:
                expr += self.beta_m[pos] - self.alpha_m[pos]
        return expr

    def _add_interior_constraints(self) -> None:
        for v in self.graph.real_nodes():
            if self.graph.is_childless(v):
                continue

            for arc in self.graph.out_arcs(v):
                u = self.graph.target(arc)
                if u is None:
                    raise GraphInvariantError(f"Cannot resolve the target of arc {arc}")

                read = self.graph.read(v)
                if read is None:
                    continue

                expr = self._read_expr(v, read)
                expr += self.potential(u)
                expr -= self.nu[v]
                self.interior_rows[arc] = self.lp.add_row(expr <= -self.margin)
                if self.debug:
                    print(f"interior row {arc}: {expr} <= {-self.margin}")

    def solve(self, lambda_: float, time_limit: Optional[float] = None) -> float:
        """Maximize deviance + lambda objective and return the objective value.

        Raises
        -------
        SolverError
            If the engine finds no optimal solution. The session fails.
        """
        self._require(
            "solve",
            SessionState.CONSTRAINTS_ADDED,
            SessionState.SOLVED,
            SessionState.LAMBDA_MODIFIED,
            SessionState.SCORED,
        )
        obj = self.make_deviance_objective()
        obj = self.make_lambda_objective(lambda_, obj)
        self.lp.set_objective(obj)
        # Minimizing would be trivial: alpha = 1, beta = 0 relaxes every row
        self.lp.maximize()

        try:
            self.lp.solve(time_limit=time_limit)
        except SolverError:
            self.state = SessionState.FAILED
            raise

        self.state = SessionState.SOLVED
        objective = self.lp.primal()
        if self.verbose:
            print(f"\tSolved at lambda = {lambda_:g}, objective = {objective:.6g}")
        return objective

    def score(self, lambda_: float) -> float:
        """Objective value minus ``lambda_`` times the dual of every sink row."""
        self._require("score", SessionState.SOLVED, SessionState.SCORED)
        obj = self.lp.primal()
        for row in self.sink_rows.values():
            obj -= lambda_ * self.lp.dual(row)
        self.state = SessionState.SCORED
        return obj

    def modify_lambda_constraints(self, lambda_: float) -> None:
        """Rewrite every sink row with ``lambda_`` in place of the arc lengths."""
        self._require(
            "modify lambda constraints",
            SessionState.CONSTRAINTS_ADDED,
            SessionState.SOLVED,
            SessionState.LAMBDA_MODIFIED,
            SessionState.SCORED,
        )
        lambda_ = float(lambda_)
        for arc, row in self.sink_rows.items():
            v = self.graph.source(arc)
            expr = (
                lambda_ * self.beta_lambda[v]
                - lambda_ * self.alpha_lambda[v]
                - self.nu[v]
            )
            self.lp.set_row(row, expr <= -self.margin)
        # Before the first solve there is nothing to re-solve from
        if self.state is not SessionState.CONSTRAINTS_ADDED:
            self.state = SessionState.LAMBDA_MODIFIED

    def run(self, lambda_: float, time_limit: Optional[float] = None) -> float:
        """Re-parameterize, re-solve and score the session at ``lambda_``."""
        self.modify_lambda_constraints(lambda_)
        self.solve(lambda_, time_limit=time_limit)
        return self.score(lambda_)

    def print_nus(self, stream: Optional[TextIO] = None) -> None:
        stream = stream or sys.stdout
        if not self.lp.solved:
            print("No LP solution available.", file=stream)
            return
        for v, col in self.nu.items():
            print(f"{v}: nu={self.lp.primal(col):g}", file=stream)

    def print_primal(self, stream: Optional[TextIO] = None) -> None:
        """Dump deviation slacks next to the observed statistics, then potentials."""
        stream = stream or sys.stdout
        if not self.lp.solved:
            print("No LP solution available.", file=stream)
            return
        for pos, entry in self.estimator.normalized_map.items():
            print(
                f"{pos}: ay={self.lp.primal(self.alpha_y[pos]):g}"
                f" by={self.lp.primal(self.beta_y[pos]):g}"
                f" am={self.lp.primal(self.alpha_m[pos]):g}"
                f" bm={self.lp.primal(self.beta_m[pos]):g}"
                f" y={entry.cov:g} my={entry.meth:g}",
                file=stream,
            )
        self.print_nus(stream)
