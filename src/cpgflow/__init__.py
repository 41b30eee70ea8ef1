"""cpgflow: Estimate CpG methylation from overlapping reads with a parametric LP.

cpgflow takes a directed acyclic graph of overlapping reads, aggregates the
CpG calls of those reads into per-position coverage and methylation
statistics, and builds a linear program whose rows force node potentials to
fall along the graph by at least the deviation each read contributes. A
regularization weight (lambda) on the nodes feeding the sink trades data fit
against sparsity; the model is built once and re-solved in place across
lambda values.

Main Components:
    FlowGraph: The read DAG, with structural flags and a single sink.
    CpgEstimator: Normalized per-position coverage/methylation statistics.
    CpgSolver: Builds the LP, re-parameterizes it by lambda and scores it.
    regularization_path, bisect_lambda: Lambda search over one session.

Example:
    Command-line usage::

        $ cpgflow --input-path instance.json --lambdas 0.1,0.5,1

    Python API usage::

        from cpgflow.estimator import CpgEstimator
        from cpgflow.graph import CpgOffset, FlowGraph, Read
        from cpgflow.solver import CpgSolver

        graph = FlowGraph()
        graph.add_node("r1", read=Read(start=100, cpgs=[CpgOffset(1, True)]))
        graph.set_sink("sink")
        graph.add_arc("r1", "sink", length=1.5)

        estimator = CpgEstimator(graph)
        estimator.compute_normalized()

        solver = CpgSolver(graph, estimator)
        solver.add_cols()
        solver.add_constraints()
        solver.solve(0.5)
        print(solver.score(0.5))
"""

__version__ = "0.3"
