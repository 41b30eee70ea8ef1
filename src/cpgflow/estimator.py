"""Per-position coverage and methylation statistics."""

from typing import NamedTuple, Optional

# Third party modules
import numpy as np

from tqdm import tqdm
from cpgflow.graph import FlowGraph


class CpgEntry(NamedTuple):
    """Coverage and methylated count at one CpG position."""

    cov: float
    meth: float


class CpgEstimator:
    """Aggregates read-level CpG calls into normalized per-position statistics.

    ``normalized_map`` is a dict of position -> CpgEntry, ordered by
    position. It is the table the solver builds its deviation columns from.
    """

    def __init__(
        self,
        graph: Optional[FlowGraph] = None,
        length_mult: float = 1.0,
        verbose: bool = False,
    ):
        """Initialize the estimator.

        Args
        ----------
        graph : FlowGraph, optional
            The flow graph whose reads are aggregated by compute_normalized().
        length_mult : float, optional
            Multiplier applied to sink arc lengths by the solver.
        verbose : bool, optional
            Verbose output.
        """
        if length_mult <= 0:
            raise ValueError("length_mult must be positive")
        self.graph = graph
        self.length_mult = length_mult
        self.verbose = verbose
        self.normalized_map: dict[int, CpgEntry] = {}

    @classmethod
    def from_counts(
        cls, counts: dict, length_mult: float = 1.0, verbose: bool = False
    ) -> "CpgEstimator":
        """Wrap an already normalized {position: (coverage, methylated)} mapping.

        Raises
        -------
        ValueError
            If a value is negative or a methylated count exceeds its coverage.
        """
        estimator = cls(graph=None, length_mult=length_mult, verbose=verbose)
        normalized = {}
        for pos, (cov, meth) in counts.items():
            cov, meth = float(cov), float(meth)
            if cov < 0 or meth < 0:
                raise ValueError(f"Negative statistics at position {pos}")
            if meth > cov:
                raise ValueError(
                    f"Methylated count exceeds coverage at position {pos}"
                )
            normalized[int(pos)] = CpgEntry(cov, meth)
        estimator.normalized_map = dict(sorted(normalized.items()))
        return estimator

    def compute_normalized(self) -> dict[int, CpgEntry]:
        """Count coverage and methylation per position, scaled to [0, 1].

        Every touched CpG of every read-carrying, non-fake node adds one to
        the coverage at its position, and one to the methylated count if the
        call is methylated. Both counts are then divided by the largest
        coverage seen.
        """
        if self.graph is None:
            raise ValueError("No flow graph to compute statistics from")

        raw: dict[int, list[int]] = {}
        for node in tqdm(self.graph.real_nodes(), disable=not self.verbose):
            read = self.graph.read(node)
            if read is None:
                continue
            for pos, methyl in read.positions():
                counts = raw.setdefault(pos, [0, 0])
                counts[0] += 1
                if methyl:
                    counts[1] += 1

        if not raw:
            self.normalized_map = {}
            return self.normalized_map

        positions = sorted(raw)
        counts_array = np.array([raw[pos] for pos in positions], dtype=float)
        counts_array /= counts_array[:, 0].max()

        self.normalized_map = {
            pos: CpgEntry(float(cov), float(meth))
            for pos, (cov, meth) in zip(positions, counts_array)
        }

        if self.verbose:
            print(f"\tNormalized statistics for {len(self.normalized_map):,} CpGs")

        return self.normalized_map

    def __contains__(self, pos: int) -> bool:
        return pos in self.normalized_map

    def __len__(self) -> int:
        return len(self.normalized_map)
