import numpy as onp
import pytest
from overrides import overrides

import termopt


class Embed2To3(termopt.ChangeOfVariables):
    """User space is 3D, solver space is 2D: x = (t0, t1, 0)."""

    @overrides
    def user_dimension(self) -> int:
        return 3

    @overrides
    def solver_dimension(self) -> int:
        return 2

    @overrides
    def to_user(self, user_out: onp.ndarray, solver_in: onp.ndarray) -> None:
        user_out[:2] = solver_in
        user_out[2] = 0.0

    @overrides
    def to_solver(self, solver_out: onp.ndarray, user_in: onp.ndarray) -> None:
        solver_out[:] = user_in[:2]

    @overrides
    def update_gradient(
        self,
        solver_gradient: onp.ndarray,
        solver_state: onp.ndarray,
        user_gradient: onp.ndarray,
    ) -> None:
        solver_gradient += user_gradient[:2]


def test_offsets_partition_state():
    registry = termopt.VariableRegistry()
    a = onp.zeros(2)
    b = onp.zeros(3)
    c = onp.zeros(1)
    ids = [registry.add(v) for v in (a, b, c)]

    assert [registry.resolve(i).global_offset for i in ids] == [0, 2, 5]
    assert registry.num_scalars == 6
    assert len(registry) == 3
    assert registry.max_user_dimension == 3


def test_reregister_is_noop():
    registry = termopt.VariableRegistry()
    a = onp.zeros(2)
    first = registry.add(a)
    second = registry.add(a, dimension=2)
    assert first == second
    assert len(registry) == 1
    assert registry.num_scalars == 2


def test_reregister_with_other_dimension():
    registry = termopt.VariableRegistry()
    a = onp.zeros(2)
    registry.add(a)
    with pytest.raises(termopt.DimensionMismatchError):
        registry.add(a, dimension=1)
    assert len(registry) == 1


def test_same_values_different_storage():
    # Registration is by storage, not by value.
    registry = termopt.VariableRegistry()
    registry.add(onp.zeros(2))
    registry.add(onp.zeros(2))
    assert len(registry) == 2


@pytest.mark.parametrize(
    "values",
    [
        onp.zeros((2, 2)),
        onp.zeros(3, dtype=onp.int64),
        [0.0, 1.0],
    ],
)
def test_bad_storage(values):
    registry = termopt.VariableRegistry()
    with pytest.raises(termopt.ConfigurationError):
        registry.add(values)
    assert len(registry) == 0


def test_dimension_does_not_match_storage():
    registry = termopt.VariableRegistry()
    with pytest.raises(termopt.DimensionMismatchError):
        registry.add(onp.zeros(3), dimension=2)
    with pytest.raises(termopt.DimensionMismatchError):
        registry.add(onp.zeros(2), change_of_variables=Embed2To3())
    assert registry.num_scalars == 0


def test_unknown_variable():
    registry = termopt.VariableRegistry()
    registry.add(onp.zeros(1))
    with pytest.raises(termopt.UnknownVariableError):
        registry.resolve(onp.zeros(1))
    with pytest.raises(termopt.UnknownVariableError):
        registry.resolve(termopt.VariableId(5))
    assert termopt.VariableId(0) in registry
    assert termopt.VariableId(1) not in registry


def test_change_of_variables_dimensions():
    registry = termopt.VariableRegistry()
    a = onp.array([1.0, 2.0, 3.0])
    b = onp.array([4.0])
    registry.add(a, change_of_variables=Embed2To3())
    b_id = registry.add(b)

    var = registry.resolve(a)
    assert var.user_dimension == 3
    assert var.solver_dimension == 2
    assert registry.resolve(b_id).global_offset == 2
    assert registry.num_scalars == 3
    assert registry.has_change_of_variables


def test_copies_between_user_and_global():
    registry = termopt.VariableRegistry()
    a = onp.array([1.0, 2.0, 3.0])
    b = onp.array([4.0, 5.0])
    registry.add(a, change_of_variables=Embed2To3())
    registry.add(b)

    x = registry.copy_user_to_global()
    onp.testing.assert_allclose(x, [1.0, 2.0, 4.0, 5.0])

    registry.copy_global_to_user(onp.array([-1.0, -2.0, -3.0, -4.0]))
    onp.testing.assert_allclose(a, [-1.0, -2.0, 0.0])
    onp.testing.assert_allclose(b, [-3.0, -4.0])
