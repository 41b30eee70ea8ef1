# Import modules
import click
import time

from cpgflow.errors import CpgFlowError
from cpgflow.estimator import CpgEstimator
from cpgflow.graph import load_flow_graph
from cpgflow.search import bisect_lambda, iter_regularization_path
from cpgflow.solver import CONSISTENCY_FACTOR, CpgSolver


def parse_lambdas(lambdas: str) -> list[float]:
    """Parse a comma-separated list of lambda values.

    Raises
    ----------
    ValueError: If the list is empty or holds a non-numeric value.
    """
    values = [value.strip() for value in lambdas.split(",") if value.strip()]
    if not values:
        raise ValueError("At least one lambda value is required.")
    try:
        return [float(value) for value in values]
    except ValueError as exc:
        raise ValueError(f"Invalid lambda list: {lambdas}") from exc


@click.command(
    help="Fit the CpG consistency LP on a flow graph instance and trace its lambda regularization path."
)
@click.version_option()
@click.option(
    "--input-path",
    help="Flow graph instance (.json or .json.gz).",
    required=True,
    type=click.Path(exists=True, file_okay=True, dir_okay=False, readable=True),
)
@click.option(
    "--lambdas",
    help="Comma-separated lambda values to visit, in order (default = 0.1,0.5,1,2).",
    default="0.1,0.5,1,2",
    type=str,
)
@click.option(
    "--target-score",
    help="If set, bisect for the lambda where the score crosses this value.",
    default=None,
    type=float,
)
@click.option(
    "--lambda-lower", help="Lower lambda bracket for bisection.", default=0.0, type=float
)
@click.option(
    "--lambda-upper", help="Upper lambda bracket for bisection.", default=10.0, type=float
)
@click.option(
    "--margin",
    help=f"Consistency margin of every row (default = {CONSISTENCY_FACTOR}).",
    default=CONSISTENCY_FACTOR,
    type=float,
)
@click.option(
    "--length-mult", help="Sink arc length multiplier (default = 1).", default=1.0, type=float
)
@click.option(
    "--time-limit", help="Per-solve time limit in seconds.", default=None, type=float
)
@click.option("--print-primal", help="Print the final primal solution.", is_flag=True)
@click.option("--verbose", help="Verbose output.", is_flag=True)
@click.option(
    "--debug",
    help="Debug mode (print every LP row as it is built).",
    is_flag=True,
    type=bool,
)
def main(
    input_path: str,
    lambdas: str,
    target_score: float,
    lambda_lower: float,
    lambda_upper: float,
    margin: float,
    length_mult: float,
    time_limit: float,
    print_primal: bool,
    verbose: bool,
    debug: bool,
) -> None:
    """CpgFlow."""
    time_start = time.time()
    print(f"Input path: {input_path}")
    print(f"Margin: {margin}")
    print(f"Length multiplier: {length_mult}")

    #################################################
    # Load the instance and build the LP once
    #################################################

    try:
        lambda_values = parse_lambdas(lambdas)
        flow_graph, stats = load_flow_graph(input_path)
        if stats is not None:
            estimator = CpgEstimator.from_counts(
                stats, length_mult=length_mult, verbose=verbose
            )
        else:
            estimator = CpgEstimator(
                flow_graph, length_mult=length_mult, verbose=verbose
            )
            estimator.compute_normalized()

        print(
            f"\nLoaded {len(flow_graph.nodes()):,} nodes, {len(flow_graph.arcs()):,} arcs "
            f"and {len(estimator):,} CpG positions"
        )

        solver = CpgSolver(
            flow_graph,
            estimator,
            margin=margin,
            verbose=verbose,
            debug=debug,
        )
        solver.add_cols()
        solver.add_constraints()
    except (ValueError, FileNotFoundError, CpgFlowError) as e:
        raise click.ClickException(str(e)) from e

    print(f"\nTime elapsed: {time.time() - time_start:.2f} seconds")

    #################################################
    # Trace the regularization path
    #################################################

    errors_list = []
    print("\n" + "=" * 80)
    print(f"Tracing {len(lambda_values)} lambda value(s)")
    try:
        for point in iter_regularization_path(
            solver, lambda_values, time_limit=time_limit, verbose=verbose
        ):
            print(
                f"\tlambda={point.lambda_:g}\tobjective={point.objective:.6g}\tscore={point.score:.6g}"
            )
    except CpgFlowError as e:
        print(f"Error: {e}")
        errors_list.append(e)

    if target_score is not None and not errors_list:
        print(f"\nBisecting lambda for target score {target_score:g}")
        try:
            best_lambda = bisect_lambda(
                solver,
                target_score,
                lambda_lower,
                lambda_upper,
                time_limit=time_limit,
            )
            print(f"\tlambda = {best_lambda:.6g}")
        except (ValueError, CpgFlowError) as e:
            print(f"Error: {e}")
            errors_list.append(e)

    if print_primal:
        print("\nPrimal solution:")
        solver.print_primal()

    if errors_list:
        print(f"\n{len(errors_list)} errors occurred during processing:")
        for error in errors_list:
            print(f"\t{error}")

    print(f"\nTotal time elapsed: {time.time() - time_start:.2f} seconds")
    print("\nRun complete.")


if __name__ == "__main__":
    main(prog_name="cpgflow")  # pylint: disable=no-value-for-parameter
