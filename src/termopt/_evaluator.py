from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Literal

import numpy as onp
import scipy.sparse
from loguru import logger

from ._errors import (
    ConcurrentEvaluationError,
    ConfigurationError,
    DimensionMismatchError,
    UnsupportedOperationError,
)
from ._sparse_matrices import (
    SparseCooCoordinates,
    assemble_dense,
    assemble_sparse,
    gather_block_values,
)

if TYPE_CHECKING:
    from ._term_graph import AddedTerm, TermGraph


type HessianMode = Literal["dense", "sparse"]


@dataclass
class _WorkerScratch:
    """Buffers private to one worker for the duration of an evaluation."""

    gradient: onp.ndarray
    """Global-size gradient accumulator, shape `(num_scalars,)`."""
    term_gradient: onp.ndarray
    """Per-term gradient scratch, shape `(max_arity, max_user_dimension)`."""


@dataclass
class _WorkerOutcome:
    value: float
    error: Exception | None


@dataclass
class _ScratchPool:
    """Everything derived from the graph structure and the worker count.

    Rebuilt whenever either changes."""

    structure_version: int
    workers: list[_WorkerScratch]
    partitions: list[range]
    """Contiguous chunk of term indices handled by each worker."""
    hessian_coords: SparseCooCoordinates | None
    supports_hessian: bool
    """False when a term touches a reparameterized variable."""


class Evaluator:
    """Fork-join evaluation of a `TermGraph`.

    Terms are split into one contiguous chunk per worker. Each worker writes
    only to its own gradient accumulator and to the Hessian blocks of its own
    terms, so no locking is needed; accumulators are reduced after all workers
    have joined.
    """

    def __init__(self, graph: TermGraph, num_workers: int = 1) -> None:
        self._graph = graph
        self._num_workers = 1
        self._pool: _ScratchPool | None = None
        self.num_workers = num_workers

        self.num_value_evaluations = 0
        self.num_derivative_evaluations = 0

    @property
    def num_workers(self) -> int:
        return self._num_workers

    @num_workers.setter
    def num_workers(self, num_workers: int) -> None:
        if num_workers < 1:
            raise ConfigurationError(f"Invalid number of workers: {num_workers}.")
        self._num_workers = num_workers
        self._pool = None

    def value(self, x: onp.ndarray) -> float:
        """Evaluate the objective at solver-space state `x`."""
        x = onp.asarray(x, dtype=onp.float64)
        self._check_state(x)
        pool = self._get_pool()
        self._graph.registry.copy_global_to_local(x)
        return self._value_from_local(pool)

    def value_user(self) -> float:
        """Evaluate the objective at the values currently in user storage."""
        pool = self._get_pool()
        self._graph.registry.copy_user_to_local()
        return self._value_from_local(pool)

    def value_gradient_hessian(
        self,
        x: onp.ndarray,
        hessian: HessianMode | None = None,
        out: onp.ndarray | None = None,
    ) -> tuple[float, onp.ndarray, onp.ndarray | scipy.sparse.csr_matrix | None]:
        """Evaluate the objective, its gradient and optionally its Hessian.

        Args:
            x: Solver-space state, shape `(num_scalars,)`.
            hessian: `"dense"` for an ndarray, `"sparse"` for a CSR matrix with
                duplicate entries summed, or None to skip the Hessian.
            out: Optional buffer for the gradient.

        Returns:
            Tuple of (value, gradient, hessian). Hessian is None if not requested.
        """
        x = onp.asarray(x, dtype=onp.float64)
        self._check_state(x)
        num_scalars = self._graph.num_scalars
        if out is not None and out.shape != (num_scalars,):
            raise DimensionMismatchError(
                f"Gradient buffer has shape {out.shape}, expected ({num_scalars},)."
            )
        if hessian is not None and not self._graph.hessian_enabled:
            raise UnsupportedOperationError("Hessian computation is not enabled.")
        if hessian not in (None, "dense", "sparse"):
            raise ConfigurationError(f"Unknown Hessian mode: {hessian}.")

        pool = self._get_pool()
        if hessian is not None and not pool.supports_hessian:
            raise UnsupportedOperationError(
                "Hessians are not supported for reparameterized variables."
            )

        self.num_derivative_evaluations += 1
        self._graph.registry.copy_global_to_local(x)
        for worker in pool.workers:
            worker.gradient.fill(0.0)

        terms = self._graph.terms
        with_hessian = hessian is not None

        def work(worker: _WorkerScratch, added: AddedTerm) -> float:
            return _accumulate_term(added, worker, x, with_hessian)

        value = self._run(pool, terms, work)

        gradient = onp.zeros(num_scalars) if out is None else out
        gradient.fill(0.0)
        for worker in pool.workers:
            gradient += worker.gradient

        if hessian == "dense":
            return value, gradient, assemble_dense(terms, num_scalars)
        elif hessian == "sparse":
            assert pool.hessian_coords is not None
            values = gather_block_values(
                terms, onp.empty(pool.hessian_coords.num_entries)
            )
            return value, gradient, assemble_sparse(pool.hessian_coords, values)
        else:
            return value, gradient, None

    def sparsity_pattern(self) -> scipy.sparse.csr_matrix:
        """Sparse matrix with the structure of the Hessian. Each stored value
        counts the Hessian blocks that overlap at that entry."""
        if not self._graph.hessian_enabled:
            raise UnsupportedOperationError("Hessian computation is not enabled.")
        pool = self._get_pool()
        if not pool.supports_hessian:
            raise UnsupportedOperationError(
                "Hessians are not supported for reparameterized variables."
            )
        assert pool.hessian_coords is not None
        return assemble_sparse(
            pool.hessian_coords, onp.ones(pool.hessian_coords.num_entries)
        )

    def _check_state(self, x: onp.ndarray) -> None:
        num_scalars = self._graph.num_scalars
        if onp.shape(x) != (num_scalars,):
            raise DimensionMismatchError(
                f"State has shape {onp.shape(x)}, expected ({num_scalars},)."
            )

    def _value_from_local(self, pool: _ScratchPool) -> float:
        self.num_value_evaluations += 1
        return self._run(
            pool,
            self._graph.terms,
            lambda worker, added: float(added.term.evaluate(added.args)),
        )

    def _get_pool(self) -> _ScratchPool:
        """Rebuild per-worker storage if the graph or worker count changed."""
        graph = self._graph
        if self._pool is not None and self._pool.structure_version == (
            graph.structure_version
        ):
            return self._pool

        terms = graph.terms
        num_scalars = graph.num_scalars
        max_arity = max((len(t.variables) for t in terms), default=1)
        max_arity = max(max_arity, 1)
        max_dim = graph.registry.max_user_dimension

        # Static schedule: one contiguous chunk of terms per worker.
        bounds = onp.linspace(0, len(terms), self._num_workers + 1).astype(int)
        partitions = [
            range(bounds[w], bounds[w + 1]) for w in range(self._num_workers)
        ]

        logger.info(
            "Allocating evaluation storage for {} workers: {} terms, {} variables, {} scalars",
            self._num_workers,
            len(terms),
            graph.num_variables,
            num_scalars,
        )
        self._pool = _ScratchPool(
            structure_version=graph.structure_version,
            workers=[
                _WorkerScratch(
                    gradient=onp.zeros(num_scalars),
                    term_gradient=onp.zeros((max_arity, max_dim)),
                )
                for _ in range(self._num_workers)
            ],
            partitions=partitions,
            hessian_coords=SparseCooCoordinates.make(terms, num_scalars)
            if graph.hessian_enabled
            else None,
            supports_hessian=not any(
                var.change_of_variables is not None
                for added in terms
                for var in added.variables
            ),
        )
        return self._pool

    def _run(
        self,
        pool: _ScratchPool,
        terms: tuple[AddedTerm, ...],
        work: Callable[[_WorkerScratch, AddedTerm], float],
    ) -> float:
        """Run `work` on every term and sum the results.

        Errors are captured per worker and re-raised once every worker has
        finished. If several workers fail, the lowest worker index wins."""

        def run_partition(w: int) -> _WorkerOutcome:
            worker = pool.workers[w]
            value = 0.0
            for i in pool.partitions[w]:
                try:
                    value += work(worker, terms[i])
                except Exception as e:
                    return _WorkerOutcome(value=value, error=e)
            return _WorkerOutcome(value=value, error=None)

        num_workers = len(pool.workers)
        if num_workers == 1:
            outcomes = [run_partition(0)]
        else:
            with ThreadPoolExecutor(max_workers=num_workers) as executor:
                outcomes = list(executor.map(run_partition, range(num_workers)))

        for outcome in outcomes:
            if outcome.error is not None:
                raise ConcurrentEvaluationError(str(outcome.error)) from outcome.error

        # Summed in worker order, so repeated calls are bit-identical.
        value = 0.0
        for outcome in outcomes:
            value += outcome.value
        return value


def _accumulate_term(
    added: AddedTerm,
    worker: _WorkerScratch,
    x: onp.ndarray,
    with_hessian: bool,
) -> float:
    """Evaluate one term and add its gradient into the worker's accumulator."""
    variables = added.variables
    term_gradient = [
        worker.term_gradient[i, : var.user_dimension] for i, var in enumerate(variables)
    ]
    for g in term_gradient:
        g.fill(0.0)

    if with_hessian:
        for block_row in added.hessian:
            for block in block_row:
                block.fill(0.0)
        value = added.term.evaluate_hessian(added.args, term_gradient, added.hessian)
    else:
        value = added.term.evaluate_gradient(added.args, term_gradient)

    for var, g in zip(variables, term_gradient):
        if var.change_of_variables is None:
            worker.gradient[var.solver_slice] += g
        else:
            # Chain rule back to solver space.
            var.change_of_variables.update_gradient(
                worker.gradient[var.solver_slice], x[var.solver_slice], g
            )
    return float(value)
