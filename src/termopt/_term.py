from __future__ import annotations

import abc
from typing import Sequence

import numpy as onp
from overrides import EnforceOverrides

from ._errors import UnsupportedOperationError


class Term(abc.ABC, EnforceOverrides):
    """A scalar contribution to an objective function.

    A term is defined over a fixed number of arguments (its arity), each of
    which is a vector with a fixed dimension. Terms compute their own
    derivatives; nothing here differentiates automatically.

    Derivative buffers are preallocated by the caller and must be written in
    place:

    - `gradient[i]` has shape `(dimension(i),)`.
    - `hessian[i][j]` has shape `(dimension(i), dimension(j))` and holds the
      second derivative with respect to arguments `i` and `j`.

    The same term instance may be bound into several graphs and may be called
    from several threads at once, so implementations should not mutate
    themselves during evaluation.
    """

    # (1) Structure. Must be overriden in subclasses.

    @abc.abstractmethod
    def arity(self) -> int:
        """Number of arguments."""

    @abc.abstractmethod
    def dimension(self, index: int) -> int:
        """Dimension of argument `index`."""

    # (2) Evaluation. Only the value is mandatory.

    @abc.abstractmethod
    def evaluate(self, args: Sequence[onp.ndarray]) -> float:
        """Compute the value of the term."""

    def evaluate_gradient(
        self, args: Sequence[onp.ndarray], gradient: list[onp.ndarray]
    ) -> float:
        """Compute the value and write the gradient into `gradient`."""
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not provide a gradient."
        )

    def evaluate_hessian(
        self,
        args: Sequence[onp.ndarray],
        gradient: list[onp.ndarray],
        hessian: list[list[onp.ndarray]],
    ) -> float:
        """Compute the value and write the gradient and Hessian blocks."""
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not provide a Hessian."
        )


class ChangeOfVariables(abc.ABC, EnforceOverrides):
    """Bijective reparameterization of a single variable.

    The user manipulates a point `x` in user space; the solver optimizes over
    `t` in solver space, with `x = to_user(t)`."""

    @abc.abstractmethod
    def user_dimension(self) -> int:
        """Dimension of the user-space variable."""

    @abc.abstractmethod
    def solver_dimension(self) -> int:
        """Dimension of the solver-space variable."""

    @abc.abstractmethod
    def to_user(self, user_out: onp.ndarray, solver_in: onp.ndarray) -> None:
        """Write `x(t)` into `user_out`."""

    @abc.abstractmethod
    def to_solver(self, solver_out: onp.ndarray, user_in: onp.ndarray) -> None:
        """Write `t(x)` into `solver_out`."""

    @abc.abstractmethod
    def update_gradient(
        self,
        solver_gradient: onp.ndarray,
        solver_state: onp.ndarray,
        user_gradient: onp.ndarray,
    ) -> None:
        """Chain rule. Adds `J(t)^T @ user_gradient` into `solver_gradient`,
        where `J` is the Jacobian of `to_user` evaluated at `solver_state`."""
