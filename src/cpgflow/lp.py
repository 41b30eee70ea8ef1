"""A small linear-programming engine on top of scipy's HiGHS interface.

Columns and rows are addressed by integer handles. Inequalities are immutable
values (terms, sense, bound), so rewriting a row replaces the stored value
wholesale and never touches any other row or column.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Union

# Third party modules
import numpy as np
import scipy.optimize
import scipy.sparse

from cpgflow.errors import SolverError


Number = Union[int, float]

# scipy.optimize.linprog status codes
LINPROG_STATUS = {
    0: "optimal",
    1: "iteration or time limit reached",
    2: "infeasible",
    3: "unbounded",
    4: "numerical difficulties",
}


@dataclass(frozen=True)
class Col:
    """Handle to an LP column (variable)."""

    id: int

    # Let numpy scalars defer to our reflected operators
    __array_ufunc__ = None

    def _expr(self) -> "LinearExpr":
        return LinearExpr({self: 1.0})

    def __add__(self, other):
        return self._expr() + other

    def __radd__(self, other):
        return self._expr() + other

    def __sub__(self, other):
        return self._expr() - other

    def __rsub__(self, other):
        return -self._expr() + other

    def __neg__(self):
        return self._expr() * -1.0

    def __mul__(self, other):
        return self._expr() * other

    def __rmul__(self, other):
        return self._expr() * other

    def __le__(self, other):
        return self._expr() <= other

    def __ge__(self, other):
        return self._expr() >= other


@dataclass(frozen=True)
class Row:
    """Handle to an LP row (constraint)."""

    id: int


class LinearExpr:
    """A linear combination of columns plus a constant.

    Terms are kept in insertion order and a column appearing twice has its
    coefficients merged.
    """

    __array_ufunc__ = None

    def __init__(self, terms: Optional[dict] = None, constant: Number = 0.0):
        self.terms: dict[Col, float] = {}
        self.constant = float(constant)
        if terms:
            for col, coef in terms.items():
                self._add_term(col, coef)

    @staticmethod
    def coerce(other) -> "LinearExpr":
        """Turn a column, number or expression into a (new) expression."""
        if isinstance(other, LinearExpr):
            return LinearExpr(other.terms, other.constant)
        if isinstance(other, Col):
            return LinearExpr({other: 1.0})
        if isinstance(other, (int, float, np.integer, np.floating)):
            return LinearExpr(constant=float(other))
        raise TypeError(f"Cannot use {type(other).__name__} in a linear expression")

    def _add_term(self, col: Col, coef: Number) -> None:
        self.terms[col] = self.terms.get(col, 0.0) + float(coef)

    def items(self) -> list[tuple[Col, float]]:
        return list(self.terms.items())

    def __iadd__(self, other):
        other = LinearExpr.coerce(other)
        for col, coef in other.terms.items():
            self._add_term(col, coef)
        self.constant += other.constant
        return self

    def __isub__(self, other):
        self += LinearExpr.coerce(other) * -1.0
        return self

    def __add__(self, other):
        result = LinearExpr.coerce(self)
        result += other
        return result

    __radd__ = __add__

    def __sub__(self, other):
        result = LinearExpr.coerce(self)
        result -= other
        return result

    def __rsub__(self, other):
        return (self * -1.0) + other

    def __neg__(self):
        return self * -1.0

    def __mul__(self, other):
        if not isinstance(other, (int, float, np.integer, np.floating)):
            raise TypeError("Linear expressions can only be scaled by a number")
        scale = float(other)
        return LinearExpr(
            {col: coef * scale for col, coef in self.terms.items()},
            self.constant * scale,
        )

    __rmul__ = __mul__

    def __le__(self, other) -> "Inequality":
        rhs = LinearExpr.coerce(other)
        lhs = self - rhs
        return Inequality(tuple(lhs.terms.items()), "<=", -lhs.constant)

    def __ge__(self, other) -> "Inequality":
        rhs = LinearExpr.coerce(other)
        lhs = rhs - self
        return Inequality(tuple(lhs.terms.items()), "<=", -lhs.constant)

    def __repr__(self) -> str:
        body = " + ".join(f"{coef:g}*x{col.id}" for col, coef in self.terms.items())
        return f"LinearExpr({body or '0'} + {self.constant:g})"


@dataclass(frozen=True)
class Inequality:
    """An immutable linear inequality ``sum(coef * col) <sense> bound``."""

    terms: tuple[tuple[Col, float], ...]
    sense: str
    bound: float

    def as_dict(self) -> dict[int, float]:
        """Column id -> coefficient, for order-independent comparison."""
        return {col.id: coef for col, coef in self.terms}

    def columns(self) -> set[Col]:
        return {col for col, _ in self.terms}


class LPEngine:
    """Column/row bookkeeping plus a solve step through ``scipy.optimize.linprog``.

    The solution of the last successful :meth:`solve` is kept until the next
    call to :meth:`solve`, regardless of intermediate row rewrites.
    """

    def __init__(self, method: str = "highs"):
        self.method = method
        self._lower: list[float] = []
        self._upper: list[float] = []
        self._rows: list[Inequality] = []
        self._objective = LinearExpr()
        self._maximize = False
        self._result = None
        self.status: Optional[int] = None

    @property
    def num_cols(self) -> int:
        return len(self._lower)

    @property
    def num_rows(self) -> int:
        return len(self._rows)

    def add_col(self) -> Col:
        """Add an unbounded column and return its handle."""
        self._lower.append(-np.inf)
        self._upper.append(np.inf)
        return Col(len(self._lower) - 1)

    def _check_col(self, col: Col) -> None:
        if not 0 <= col.id < self.num_cols:
            raise ValueError(f"Column {col.id} does not exist in this LP")

    def col_lower_bound(self, col: Col, value: Number) -> None:
        self._check_col(col)
        self._lower[col.id] = float(value)

    def col_upper_bound(self, col: Col, value: Number) -> None:
        self._check_col(col)
        self._upper[col.id] = float(value)

    def col_bounds(self, col: Col) -> tuple[float, float]:
        self._check_col(col)
        return self._lower[col.id], self._upper[col.id]

    def _check_inequality(self, inequality: Inequality) -> None:
        if inequality.sense != "<=":
            raise ValueError(f"Unsupported row sense: {inequality.sense}")
        for col, _ in inequality.terms:
            self._check_col(col)

    def add_row(self, inequality: Inequality) -> Row:
        """Add a row and return its handle.

        Raises
        -------
        ValueError
            If the row references a column that was never added.
        """
        self._check_inequality(inequality)
        self._rows.append(inequality)
        return Row(len(self._rows) - 1)

    def set_row(self, row: Row, inequality: Inequality) -> None:
        """Replace the inequality stored at ``row``."""
        if not 0 <= row.id < self.num_rows:
            raise ValueError(f"Row {row.id} does not exist in this LP")
        self._check_inequality(inequality)
        self._rows[row.id] = inequality

    def row(self, row: Row) -> Inequality:
        return self._rows[row.id]

    def rows(self) -> Iterable[Inequality]:
        return iter(self._rows)

    def set_objective(self, expr: LinearExpr) -> None:
        expr = LinearExpr.coerce(expr)
        for col in expr.terms:
            self._check_col(col)
        self._objective = expr

    def objective(self) -> LinearExpr:
        return self._objective

    def maximize(self) -> None:
        self._maximize = True

    def minimize(self) -> None:
        self._maximize = False

    def _constraint_matrix(self):
        coo_row = []
        coo_col = []
        coo_data = []
        for row_id, inequality in enumerate(self._rows):
            for col, coef in inequality.terms:
                coo_row.append(row_id)
                coo_col.append(col.id)
                coo_data.append(coef)

        a_ub = scipy.sparse.coo_matrix(
            (coo_data, (coo_row, coo_col)),
            shape=(self.num_rows, self.num_cols),
        ).tocsc()
        b_ub = np.array([inequality.bound for inequality in self._rows], dtype=float)
        return a_ub, b_ub

    def solve(self, time_limit: Optional[float] = None) -> None:
        """Solve the current model.

        Args
        -------
            time_limit: Wall-clock limit in seconds handed to HiGHS.

        Raises
        -------
            SolverError: If no optimal solution was found.
        """
        if self.num_cols == 0:
            raise SolverError("Cannot solve an LP without columns")

        c = np.zeros(self.num_cols)
        for col, coef in self._objective.terms.items():
            c[col.id] += coef
        if self._maximize:
            c = -c

        a_ub, b_ub = (None, None)
        if self.num_rows > 0:
            a_ub, b_ub = self._constraint_matrix()

        options = {}
        if time_limit is not None:
            options["time_limit"] = float(time_limit)

        self._result = None
        result = scipy.optimize.linprog(
            c,
            A_ub=a_ub,
            b_ub=b_ub,
            bounds=list(zip(self._lower, self._upper)),
            method=self.method,
            options=options,
        )
        self.status = result.status
        if result.status != 0:
            reason = LINPROG_STATUS.get(result.status, "unknown status")
            raise SolverError(
                f"LP solve failed ({reason}): {result.message}", status=result.status
            )
        self._result = result

    @property
    def solved(self) -> bool:
        return self._result is not None

    def _solution(self):
        if self._result is None:
            raise SolverError("The LP has not been solved")
        return self._result

    def primal(self, col: Optional[Col] = None) -> float:
        """Objective value, or the value of ``col`` if one is given."""
        result = self._solution()
        if col is None:
            value = -result.fun if self._maximize else result.fun
            return float(value + self._objective.constant)
        self._check_col(col)
        return float(result.x[col.id])

    def dual(self, row: Row) -> float:
        """Shadow price of ``row`` with respect to the objective's own sense."""
        result = self._solution()
        marginal = float(result.ineqlin.marginals[row.id])
        return -marginal if self._maximize else marginal
