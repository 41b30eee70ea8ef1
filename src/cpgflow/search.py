"""Lambda search over a single solver session."""

from typing import Iterable, Iterator, NamedTuple, Optional

# Third party modules
import scipy.optimize

from tqdm import tqdm
from cpgflow.solver import CpgSolver


class PathPoint(NamedTuple):
    """One step of a regularization path."""

    lambda_: float
    objective: float
    score: float


def iter_regularization_path(
    solver: CpgSolver,
    lambdas: Iterable[float],
    time_limit: Optional[float] = None,
    verbose: bool = False,
) -> Iterator[PathPoint]:
    """Solve and score ``solver`` at each lambda, yielding each point as it is solved.

    The session's sink rows are rewritten in place between steps, so the
    columns and interior rows are built only once. A failing lambda raises
    from the generator after every earlier point has been yielded.

    Args
    -------
        solver: A session with its columns and constraints added.
        lambdas: Regularization weights to visit.
        time_limit: Per-solve time limit in seconds.
        verbose: Show a progress bar.
    """
    lambdas = [float(lambda_) for lambda_ in lambdas]
    for lambda_ in tqdm(lambdas, disable=not verbose):
        score = solver.run(lambda_, time_limit=time_limit)
        point = PathPoint(lambda_, solver.lp.primal(), score)
        if verbose:
            tqdm.write(
                f"\tlambda = {point.lambda_:g}: objective = {point.objective:.6g}, score = {point.score:.6g}"
            )
        yield point


def regularization_path(
    solver: CpgSolver,
    lambdas: Iterable[float],
    time_limit: Optional[float] = None,
    verbose: bool = False,
) -> list[PathPoint]:
    """A PathPoint per lambda, see iter_regularization_path()."""
    return list(
        iter_regularization_path(solver, lambdas, time_limit=time_limit, verbose=verbose)
    )


def bisect_lambda(
    solver: CpgSolver,
    target: float,
    lower: float,
    upper: float,
    xtol: float = 1e-4,
    maxiter: int = 100,
    time_limit: Optional[float] = None,
) -> float:
    """Find the lambda in [lower, upper] where the session score crosses ``target``.

    On return the session is solved and scored at the lambda returned.

    Raises
    -------
    ValueError
        If the bracket is empty or the score does not change sign across it.
    """
    if not lower < upper:
        raise ValueError("lower must be smaller than upper")

    def objective(lambda_: float) -> float:
        return solver.run(lambda_, time_limit=time_limit) - target

    at_lower = objective(lower)
    at_upper = objective(upper)
    if at_lower == 0:
        result = lower
    elif at_upper == 0:
        result = upper
    elif (at_lower > 0) == (at_upper > 0):
        raise ValueError(
            f"Score does not cross {target:g} between lambda = {lower:g} and {upper:g}"
        )
    else:
        result = float(
            scipy.optimize.bisect(objective, lower, upper, xtol=xtol, maxiter=maxiter)
        )

    # bisect() leaves the session at the last lambda it tried
    solver.run(result, time_limit=time_limit)
    return result
