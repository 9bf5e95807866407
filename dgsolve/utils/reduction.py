"""
Injected distributed reductions.

All norms, inner products and the reference-cell search go through a
reduction object, so numerical routines never talk to a transport directly.
Every participating process must call the same reductions in the same
order; a process that skips one hangs the others.
"""

from typing import Optional

import numpy as np


class SerialReduction:
    """Single-process reduction: every operation is the identity."""

    rank = 0
    size = 1

    def sum(self, value):
        return value

    def max(self, value):
        return value

    def min(self, value):
        return value

    def exscan(self, value: int) -> int:
        """Exclusive prefix sum over ranks (0 on the first rank)."""
        return 0

    def inner(self, a: np.ndarray, b: np.ndarray) -> float:
        return float(self.sum(float(np.dot(a, b))))

    def norm(self, a: np.ndarray) -> float:
        return float(np.sqrt(self.inner(a, a)))


class MPIReduction(SerialReduction):
    """Reductions over an mpi4py communicator.

    Parameters
    ----------
    comm : mpi4py.MPI.Comm, optional
        Communicator to reduce over. Defaults to ``MPI.COMM_WORLD``.
    """

    def __init__(self, comm=None):
        try:
            from mpi4py import MPI
        except ImportError as exc:
            raise RuntimeError(
                "mpi4py is required for MPIReduction (pip install dgsolve[mpi])"
            ) from exc
        self._MPI = MPI
        self.comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()

    def _allreduce(self, value, op):
        if np.ndim(value) == 0:
            return self.comm.allreduce(value, op=op)
        send = np.ascontiguousarray(value, dtype=np.float64)
        recv = np.empty_like(send)
        self.comm.Allreduce(send, recv, op=op)
        return recv

    def sum(self, value):
        return self._allreduce(value, self._MPI.SUM)

    def max(self, value):
        return self._allreduce(value, self._MPI.MAX)

    def min(self, value):
        return self._allreduce(value, self._MPI.MIN)

    def exscan(self, value: int) -> int:
        result = self.comm.exscan(int(value), op=self._MPI.SUM)
        return 0 if result is None else int(result)


_DEFAULT = SerialReduction()


def default_reduction(reduction: Optional[SerialReduction] = None) -> SerialReduction:
    """Return ``reduction`` or the shared serial instance."""
    return _DEFAULT if reduction is None else reduction
