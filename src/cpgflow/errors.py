"""Exceptions raised by cpgflow."""

from typing import Optional


class CpgFlowError(Exception):
    """Base exception for cpgflow failures."""


class GraphInvariantError(CpgFlowError):
    """The flow graph is malformed, e.g. an arc's target cannot be resolved."""


class UnknownPositionError(CpgFlowError, KeyError):
    """A read touches a CpG position absent from the statistics table."""

    def __init__(self, position: int, node=None):
        self.position = position
        self.node = node
        message = f"CpG position {position} is not in the statistics table"
        if node is not None:
            message += f" (read attached to node {node!r})"
        super().__init__(message)

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])


class SolverError(CpgFlowError):
    """The LP engine could not produce an optimal solution."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SessionStateError(CpgFlowError):
    """A solver session was driven out of order, or after it failed."""
