from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Literal, Protocol

import jax_dataclasses as jdc
import numpy as onp
import scipy.optimize
from loguru import logger

from ._evaluator import HessianMode

if TYPE_CHECKING:
    from ._term_graph import TermGraph


type ExitCondition = Literal[
    "function_tolerance", "gradient_tolerance", "no_convergence", "internal_error"
]


@dataclass
class SolverResults:
    """Outcome of a solve. Non-convergence is reported here, not raised."""

    exit_condition: ExitCondition = "internal_error"
    iterations: int = 0
    function_evaluations: int = 0
    function_value: float = float("nan")
    message: str = ""


class UnconstrainedSolver(Protocol):
    """Anything that can minimize a `TermGraph`.

    Implementations read the start point from user storage, minimize, and
    write the final point back to user storage."""

    log_function: Callable[[str], None] | None
    """Optional sink for single-line status messages."""

    def solve(self, function: TermGraph, results: SolverResults) -> None: ...


@jdc.pytree_dataclass
class ScipySolver:
    """Unconstrained solver backed by `scipy.optimize.minimize()`.

    Values and gradients come from the graph's evaluator. Set `hessian` when
    using a method that needs second derivatives, such as `"trust-exact"`
    (dense) or `"Newton-CG"` (dense or sparse)."""

    method: jdc.Static[str] = "BFGS"
    """Any method accepted by `scipy.optimize.minimize()`."""
    max_iterations: jdc.Static[int] = 1000
    """Maximum number of iterations for a single solve."""
    gradient_tolerance: float = 1e-12
    """Forwarded as `tol`; for gradient-based methods this is the gradient
    norm at which we terminate."""
    hessian: jdc.Static[HessianMode | None] = None
    """Hessian representation to pass to scipy. None for first-order methods."""
    log_function: jdc.Static[Callable[[str], None] | None] = None
    """Optional sink for single-line status messages."""

    def solve(self, function: TermGraph, results: SolverResults) -> None:
        evaluator = function.evaluator
        if function.num_scalars == 0:
            results.exit_condition = "function_tolerance"
            results.function_value = evaluator.value_user()
            return

        def fun(x: onp.ndarray) -> tuple[float, onp.ndarray]:
            value, gradient, _ = evaluator.value_gradient_hessian(x)
            return value, gradient

        hess = None
        if self.hessian is not None:
            hessian_mode = self.hessian

            def hess(x: onp.ndarray):
                return evaluator.value_gradient_hessian(x, hessian=hessian_mode)[2]

        x0 = function.copy_user_to_global()
        result = scipy.optimize.minimize(
            fun,
            x0,
            method=self.method,
            jac=True,
            hess=hess,
            tol=self.gradient_tolerance,
            options={"maxiter": self.max_iterations},
        )

        results.iterations = int(getattr(result, "nit", 0))
        results.function_evaluations = int(getattr(result, "nfev", 0))
        results.message = str(result.message)

        if not onp.all(onp.isfinite(result.x)) or not onp.isfinite(result.fun):
            results.exit_condition = "internal_error"
        else:
            function.copy_global_to_user(result.x)
            results.function_value = float(result.fun)
            if result.success:
                results.exit_condition = "gradient_tolerance"
            elif result.status == 1:
                results.exit_condition = "no_convergence"
            elif result.status == 2:
                # Precision loss: no further decrease was possible.
                results.exit_condition = "function_tolerance"
            else:
                results.exit_condition = "internal_error"

        line = (
            f"{self.method}: {results.message} ({results.iterations} iterations,"
            f" f={results.function_value:.6e})"
        )
        logger.debug(line)
        if self.log_function is not None:
            self.log_function(line)
