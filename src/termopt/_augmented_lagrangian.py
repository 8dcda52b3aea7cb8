"""Inequality-constrained minimization with an augmented Lagrangian.

We minimize `f(x)` subject to `c_i(x) <= 0` by repeatedly minimizing

    f(x) + sum_i phi(c_i(x), lambda_i, mu)

with an unconstrained solver, then updating the dual variables `lambda_i` and
the penalty parameter `mu`. `phi` is the smoothed exact-penalty function of
Nocedal & Wright, "Numerical Optimization", equation 17.65, written for
`c(x) <= 0` rather than `c(x) >= 0`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import jax_dataclasses as jdc
import numpy as onp
from loguru import logger
from overrides import overrides

from ._errors import DuplicateConstraintError, UnsupportedOperationError
from ._solvers import SolverResults, UnconstrainedSolver
from ._term import ChangeOfVariables, Term
from ._term_graph import TermGraph
from ._variables import VariableId, VariableRef

_PENALTY_INITIAL = 10.0
_PENALTY_FACTOR = 100.0
_FEASIBILITY_TOLERANCE_EXPONENT = 0.1
_FEASIBILITY_TOLERANCE_SHRINK_EXPONENT = 0.9
_MAX_VIOLATION_AT_CONVERGENCE = 1e-8
_FEASIBILITY_THRESHOLD = 1e-12
_MAX_LOGGED_DUALS = 10


@jdc.pytree_dataclass
class AugmentedLagrangianConfig:
    """Configuration for the augmented Lagrangian outer loop."""

    max_iterations: jdc.Static[int] = 100
    """Maximum number of outer iterations. Each one runs the unconstrained
    solver once."""
    function_improvement_tolerance: float = 1e-12
    """We terminate if `|f - f_prev| / (|f| + tol) < tol`."""
    dual_change_tolerance: float = 1e-8
    """We terminate if `max|delta lambda| / (max|lambda| + tol) < tol` and the
    maximum constraint violation is below 1e-8."""
    verbose: jdc.Static[bool] = False
    """Log outer iterations with loguru."""


@dataclass
class AugmentedLagrangianState:
    """Penalty parameter and outer-loop bookkeeping.

    Only modified between outer iterations; penalty terms read it while the
    unconstrained solver runs."""

    mu: float = _PENALTY_INITIAL
    """Penalty parameter, shared by all constraints."""
    nu: float = _PENALTY_INITIAL**-_FEASIBILITY_TOLERANCE_EXPONENT
    """Constraint violation we accept before updating dual variables."""
    iterations: int = 0
    f_prev: float = float("nan")


@dataclass(eq=False)
class Constraint:
    """A single inequality constraint `c(x) <= 0`."""

    name: str
    function: TermGraph
    dual: float = 0.0
    value: float = 0.0
    """Value of `c(x)` from the most recent evaluation."""

    def evaluate(self) -> float:
        """Evaluate `c(x)` at the current user storage and cache it."""
        self.value = self.function.evaluator.value_user()
        return self.value


class PenaltyTerm(Term):
    """Smoothed exact penalty for one constraint term."""

    def __init__(
        self, term: Term, constraint: Constraint, state: AugmentedLagrangianState
    ) -> None:
        self.term = term
        self.constraint = constraint
        self.state = state

    @overrides
    def arity(self) -> int:
        return self.term.arity()

    @overrides
    def dimension(self, index: int) -> int:
        return self.term.dimension(index)

    def _is_active(self, t: float) -> bool:
        return -t - self.constraint.dual / self.state.mu <= 0

    def _inactive_value(self) -> float:
        return -(self.constraint.dual**2) / (2.0 * self.state.mu)

    @overrides
    def evaluate(self, args: Sequence[onp.ndarray]) -> float:
        t = self.term.evaluate(args)
        if self._is_active(t):
            return self.constraint.dual * t + (self.state.mu / 2.0) * t * t
        return self._inactive_value()

    @overrides
    def evaluate_gradient(
        self, args: Sequence[onp.ndarray], gradient: list[onp.ndarray]
    ) -> float:
        t = self.term.evaluate_gradient(args, gradient)
        if self._is_active(t):
            scale = self.constraint.dual + self.state.mu * t
            for g in gradient:
                g *= scale
            return self.constraint.dual * t + (self.state.mu / 2.0) * t * t

        for g in gradient:
            g.fill(0.0)
        return self._inactive_value()

    @overrides
    def evaluate_hessian(
        self,
        args: Sequence[onp.ndarray],
        gradient: list[onp.ndarray],
        hessian: list[list[onp.ndarray]],
    ) -> float:
        raise UnsupportedOperationError("Penalty terms do not provide a Hessian.")


class AugmentedLagrangianSolver:
    """Minimize a sum of terms subject to `c_i(x) <= 0`.

    Three kinds of graphs share the same user storage and term instances:

    - `objective`: the terms of `f`.
    - One graph per constraint, holding the terms of `c_i`.
    - `augmented_lagrangian`: the terms of `f` plus one `PenaltyTerm` per
      constraint. This is what the unconstrained solver minimizes.
    """

    def __init__(
        self,
        config: AugmentedLagrangianConfig = AugmentedLagrangianConfig(),
        num_workers: int = 1,
    ) -> None:
        self.config = config
        self._num_workers = num_workers
        self._objective = TermGraph(hessian_enabled=False, num_workers=num_workers)
        self._augmented_lagrangian = TermGraph(
            hessian_enabled=False, num_workers=num_workers
        )
        self._constraints: dict[str, Constraint] = {}
        self._state = AugmentedLagrangianState()

    @property
    def objective(self) -> TermGraph:
        return self._objective

    @property
    def augmented_lagrangian(self) -> TermGraph:
        return self._augmented_lagrangian

    @property
    def constraints(self) -> dict[str, Constraint]:
        return dict(self._constraints)

    @property
    def state(self) -> AugmentedLagrangianState:
        return self._state

    def add_variable(
        self,
        values: onp.ndarray,
        dimension: int | None = None,
        change_of_variables: ChangeOfVariables | None = None,
    ) -> VariableId:
        """Register caller-owned storage. Must be called before the variable is
        used in a term or constraint."""
        var_id = self._objective.add_variable(values, dimension, change_of_variables)
        self._augmented_lagrangian.add_variable(values, dimension, change_of_variables)
        return var_id

    def add_term(self, term: Term, arguments: Sequence[VariableRef]) -> None:
        """Add a term to the objective."""
        storages = self._resolve_storage(arguments)
        self._objective.add_term(term, storages)
        self._augmented_lagrangian.add_term(term, storages)

    def add_constraint_term(
        self, name: str, term: Term, arguments: Sequence[VariableRef]
    ) -> Constraint:
        """Add the constraint `term(arguments) <= 0`."""
        if name in self._constraints:
            raise DuplicateConstraintError(f"Constraint {name!r} already exists.")
        storages = self._resolve_storage(arguments)

        function = TermGraph(hessian_enabled=False, num_workers=self._num_workers)
        for storage in storages:
            var = self._objective.registry.resolve(storage)
            function.add_variable(
                var.storage, var.user_dimension, var.change_of_variables
            )
        function.add_term(term, storages)

        constraint = Constraint(name=name, function=function)
        self._augmented_lagrangian.add_term(
            PenaltyTerm(term, constraint, self._state), storages
        )
        self._constraints[name] = constraint
        return constraint

    def is_feasible(self) -> bool:
        """Evaluate every constraint at the current user storage."""
        feasible = True
        for constraint in self._constraints.values():
            if constraint.evaluate() > _FEASIBILITY_THRESHOLD:
                feasible = False
        return feasible

    def solve(
        self, solver: UnconstrainedSolver, results: SolverResults | None = None
    ) -> SolverResults:
        """Run the outer loop. The solution is written to user storage."""
        if results is None:
            results = SolverResults()
        results.exit_condition = "internal_error"

        if self._augmented_lagrangian.num_variables == 0:
            results.exit_condition = "function_tolerance"
            return results

        config = self.config
        state = self._state
        state.mu = _PENALTY_INITIAL
        state.nu = state.mu**-_FEASIBILITY_TOLERANCE_EXPONENT
        state.iterations = 0
        state.f_prev = float("nan")
        for constraint in self._constraints.values():
            constraint.dual = 0.0

        ftol = config.function_improvement_tolerance
        dtol = config.dual_change_tolerance

        while True:
            # Minimize the smoothed Lagrangian for fixed duals and penalty.
            inner_results = SolverResults()
            solver.solve(self._augmented_lagrangian, inner_results)
            f = self._objective.evaluator.value_user()
            results.iterations = state.iterations + 1

            infeasibility = -math.inf
            max_violation = 0.0
            for constraint in self._constraints.values():
                c_x = constraint.evaluate()
                infeasibility = max(infeasibility, c_x * constraint.dual)
                max_violation = max(max_violation, c_x)

            self._log(
                solver,
                f"mu={state.mu:7.1e} nu={state.nu:7.1e} objective={f:+.6e}"
                f" infeasibility={infeasibility:10.3e}"
                f" max_violation={max_violation:10.3e}"
                f" inner={inner_results.exit_condition}",
            )
            results.function_value = f
            results.function_evaluations += inner_results.function_evaluations

            if abs(f - state.f_prev) / (abs(f) + ftol) < ftol:
                results.exit_condition = "function_tolerance"
                break

            if max_violation <= state.nu:
                # Violation is small enough; explicit dual update.
                max_change = 0.0
                max_lambda = 0.0
                for constraint in self._constraints.values():
                    prev = constraint.dual
                    if constraint.value + constraint.dual / state.mu <= 0:
                        constraint.dual = 0.0
                    else:
                        constraint.dual = constraint.dual + state.mu * constraint.value
                    max_change = max(max_change, abs(prev - constraint.dual))
                    max_lambda = max(max_lambda, abs(constraint.dual))
                logger.debug(
                    "Updated dual variables, maximum change {:.3e}", max_change
                )
                self._log(
                    solver, f"Updating dual variables. Maximum change: {max_change:.3e}."
                )

                if (
                    max_change / (max_lambda + dtol) < dtol
                    and max_violation < _MAX_VIOLATION_AT_CONVERGENCE
                ):
                    results.exit_condition = "gradient_tolerance"
                    break

                state.nu = state.nu / state.mu**_FEASIBILITY_TOLERANCE_SHRINK_EXPONENT
            else:
                # Violation too large; increase the penalty.
                state.mu *= _PENALTY_FACTOR
                state.nu = state.mu**-_FEASIBILITY_TOLERANCE_EXPONENT
                logger.debug("Increased penalty parameter to {:.1e}", state.mu)
                self._log(solver, "Updating penalty parameter.")

            self._log_duals(solver)

            state.f_prev = f
            state.iterations += 1
            if state.iterations >= config.max_iterations:
                results.exit_condition = "no_convergence"
                break

        return results

    def _log(self, solver: UnconstrainedSolver, line: str) -> None:
        if self.config.verbose:
            logger.info(line)
        log_function = getattr(solver, "log_function", None)
        if log_function is not None:
            log_function(line)

    def _log_duals(self, solver: UnconstrainedSolver) -> None:
        num_logged = 0
        for constraint in self._constraints.values():
            if constraint.dual == 0:
                continue
            if num_logged >= _MAX_LOGGED_DUALS:
                self._log(solver, "Not printing more dual variables.")
                break
            line = f"lambda[{constraint.name}]".ljust(25, ".") + f": {constraint.dual:<10g}"
            if constraint.value > 0:
                line += f" Violation : {constraint.value:g}"
            self._log(solver, line)
            num_logged += 1

    def _resolve_storage(self, arguments: Sequence[VariableRef]) -> list[onp.ndarray]:
        """Map arguments to storage arrays, which every graph accepts."""
        return [self._objective.registry.resolve(arg).storage for arg in arguments]
