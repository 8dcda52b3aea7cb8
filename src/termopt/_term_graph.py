from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as onp

from ._errors import ArityMismatchError, DimensionMismatchError
from ._evaluator import Evaluator
from ._term import ChangeOfVariables, Term
from ._variables import Variable, VariableId, VariableRef, VariableRegistry


@dataclass(eq=False)
class AddedTerm:
    """A term bound to registered variables."""

    term: Term
    variables: tuple[Variable, ...]
    hessian: list[list[onp.ndarray]] = field(default_factory=list)
    """`hessian[i][j]` has shape `(dim_i, dim_j)`. Only allocated when the
    graph has Hessians enabled; written by at most one worker per call."""

    @property
    def args(self) -> list[onp.ndarray]:
        """User-space scratch buffers of the bound variables."""
        return [var.scratch for var in self.variables]


class TermGraph:
    """An objective function: a sum of terms over registered variables.

    Example:
        >>> x = onp.zeros(2)
        >>> graph = TermGraph()
        >>> graph.add_variable(x)
        >>> graph.add_term(SomeTerm(), [x])
        >>> value, gradient, hessian = graph.evaluator.value_gradient_hessian(
        ...     graph.copy_user_to_global(), hessian="sparse"
        ... )
    """

    def __init__(self, hessian_enabled: bool = True, num_workers: int = 1) -> None:
        self.hessian_enabled = hessian_enabled
        self._registry = VariableRegistry()
        self._terms: list[AddedTerm] = []
        self._structure_version = 0
        self._evaluator = Evaluator(self, num_workers=num_workers)

    def add_variable(
        self,
        values: onp.ndarray,
        dimension: int | None = None,
        change_of_variables: ChangeOfVariables | None = None,
    ) -> VariableId:
        """Register caller-owned storage as a variable."""
        var_id = self._registry.add(values, dimension, change_of_variables)
        self._structure_version += 1
        return var_id

    def add_term(self, term: Term, arguments: Sequence[VariableRef]) -> AddedTerm:
        """Bind a term to registered variables. Arguments are either
        `VariableId` handles or the registered arrays themselves."""
        if len(arguments) != term.arity():
            raise ArityMismatchError(
                f"{type(term).__name__} expects {term.arity()} arguments, got"
                f" {len(arguments)}."
            )
        variables = tuple(self._registry.resolve(arg) for arg in arguments)
        for i, var in enumerate(variables):
            if var.user_dimension != term.dimension(i):
                raise DimensionMismatchError(
                    f"Argument {i} of {type(term).__name__} has dimension"
                    f" {term.dimension(i)}, but the variable has dimension"
                    f" {var.user_dimension}."
                )

        added = AddedTerm(term=term, variables=variables)
        if self.hessian_enabled:
            added.hessian = [
                [onp.zeros((var0.user_dimension, var1.user_dimension)) for var1 in variables]
                for var0 in variables
            ]
        self._terms.append(added)
        self._structure_version += 1
        return added

    @property
    def evaluator(self) -> Evaluator:
        return self._evaluator

    @property
    def registry(self) -> VariableRegistry:
        return self._registry

    @property
    def terms(self) -> tuple[AddedTerm, ...]:
        return tuple(self._terms)

    @property
    def structure_version(self) -> int:
        """Incremented whenever a variable or term is added."""
        return self._structure_version

    @property
    def num_variables(self) -> int:
        return len(self._registry)

    @property
    def num_scalars(self) -> int:
        return self._registry.num_scalars

    @property
    def num_terms(self) -> int:
        return len(self._terms)

    @property
    def has_change_of_variables(self) -> bool:
        return self._registry.has_change_of_variables

    def copy_user_to_global(self) -> onp.ndarray:
        """Gather user storage into a new solver-space state vector."""
        return self._registry.copy_user_to_global()

    def copy_global_to_user(self, x: onp.ndarray) -> None:
        """Write a solver-space state vector back to user storage."""
        if onp.shape(x) != (self.num_scalars,):
            raise DimensionMismatchError(
                f"State has shape {onp.shape(x)}, expected ({self.num_scalars},)."
            )
        self._registry.copy_global_to_user(x)
