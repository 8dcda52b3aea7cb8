from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

import numpy as onp

from ._errors import ConfigurationError, DimensionMismatchError, UnknownVariableError
from ._term import ChangeOfVariables


@dataclass(frozen=True)
class VariableId:
    """Opaque handle for a registered variable. Returned by
    `VariableRegistry.add()` and accepted wherever a variable is expected."""

    index: int


@dataclass(eq=False)
class Variable:
    """A registered variable. Values live in caller-owned storage."""

    id: VariableId
    storage: onp.ndarray
    """Caller-owned 1D array, in user space."""
    user_dimension: int
    solver_dimension: int
    """Dimension in the flat state vector. Equal to `user_dimension` unless a
    change of variables is attached."""
    global_offset: int
    """Start of this variable's slice in the flat state vector."""
    change_of_variables: ChangeOfVariables | None = None
    scratch: onp.ndarray = field(init=False, repr=False)
    """User-space values used as term arguments during evaluation."""

    def __post_init__(self) -> None:
        self.scratch = onp.zeros(self.user_dimension)

    @property
    def solver_slice(self) -> slice:
        return slice(self.global_offset, self.global_offset + self.solver_dimension)


# Either a handle or the registered storage itself.
type VariableRef = VariableId | onp.ndarray


class VariableRegistry:
    """Maps caller-owned storage to slices of a flat state vector.

    Offsets are assigned in registration order, so the variables partition
    `[0, num_scalars)` without gaps."""

    def __init__(self) -> None:
        self._variables: list[Variable] = []
        # Keyed by id() of the storage. We hold a reference to every array,
        # so keys are never recycled.
        self._id_from_storage: dict[int, VariableId] = {}
        self._num_scalars = 0

    def add(
        self,
        values: onp.ndarray,
        dimension: int | None = None,
        change_of_variables: ChangeOfVariables | None = None,
    ) -> VariableId:
        """Register `values`. Registering the same array again is a no-op,
        provided the dimension agrees."""
        if not isinstance(values, onp.ndarray) or values.ndim != 1:
            raise ConfigurationError("Variable storage must be a 1D numpy array.")
        if not onp.issubdtype(values.dtype, onp.floating):
            raise ConfigurationError(
                f"Variable storage must be floating point, got {values.dtype}."
            )
        if dimension is None:
            dimension = values.shape[0]

        existing = self._id_from_storage.get(id(values))
        if existing is not None:
            registered_dim = self._variables[existing.index].user_dimension
            if registered_dim != dimension:
                raise DimensionMismatchError(
                    f"Variable already registered with dimension {registered_dim},"
                    f" got {dimension}."
                )
            return existing

        if values.shape[0] != dimension:
            raise DimensionMismatchError(
                f"Dimension {dimension} does not match storage of length"
                f" {values.shape[0]}."
            )

        solver_dimension = dimension
        if change_of_variables is not None:
            if change_of_variables.user_dimension() != dimension:
                raise DimensionMismatchError(
                    f"Dimension {dimension} does not match the change of variables"
                    f" ({change_of_variables.user_dimension()})."
                )
            solver_dimension = change_of_variables.solver_dimension()

        var_id = VariableId(len(self._variables))
        self._variables.append(
            Variable(
                id=var_id,
                storage=values,
                user_dimension=dimension,
                solver_dimension=solver_dimension,
                global_offset=self._num_scalars,
                change_of_variables=change_of_variables,
            )
        )
        self._id_from_storage[id(values)] = var_id
        self._num_scalars += solver_dimension
        return var_id

    def resolve(self, ref: VariableRef) -> Variable:
        """Look up a variable from its handle or its storage."""
        if isinstance(ref, VariableId):
            if not 0 <= ref.index < len(self._variables):
                raise UnknownVariableError(f"Unknown variable {ref}.")
            return self._variables[ref.index]

        var_id = self._id_from_storage.get(id(ref))
        if var_id is None:
            raise UnknownVariableError("Storage was never registered as a variable.")
        return self._variables[var_id.index]

    def __contains__(self, ref: VariableRef) -> bool:
        if isinstance(ref, VariableId):
            return 0 <= ref.index < len(self._variables)
        return id(ref) in self._id_from_storage

    def __len__(self) -> int:
        return len(self._variables)

    def __iter__(self) -> Iterator[Variable]:
        return iter(self._variables)

    @property
    def num_scalars(self) -> int:
        """Length of the flat (solver-space) state vector."""
        return self._num_scalars

    @property
    def max_user_dimension(self) -> int:
        return max((v.user_dimension for v in self._variables), default=1)

    @property
    def has_change_of_variables(self) -> bool:
        return any(v.change_of_variables is not None for v in self._variables)

    # Copies between the flat state vector, scratch buffers and user storage.

    def copy_global_to_local(self, x: onp.ndarray) -> None:
        for var in self._variables:
            if var.change_of_variables is None:
                var.scratch[:] = x[var.solver_slice]
            else:
                var.change_of_variables.to_user(var.scratch, x[var.solver_slice])

    def copy_user_to_local(self) -> None:
        for var in self._variables:
            var.scratch[:] = var.storage

    def copy_user_to_global(self) -> onp.ndarray:
        x = onp.zeros(self._num_scalars)
        for var in self._variables:
            if var.change_of_variables is None:
                x[var.solver_slice] = var.storage
            else:
                var.change_of_variables.to_solver(x[var.solver_slice], var.storage)
        return x

    def copy_global_to_user(self, x: onp.ndarray) -> None:
        for var in self._variables:
            if var.change_of_variables is None:
                var.storage[:] = x[var.solver_slice]
            else:
                var.change_of_variables.to_user(var.storage, x[var.solver_slice])
