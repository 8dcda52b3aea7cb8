from typing import Sequence

import numpy as onp
import pytest
from overrides import overrides

import termopt


class SumTerm(termopt.Term):
    """Sum of all entries of all arguments."""

    def __init__(self, dimensions: Sequence[int]) -> None:
        self.dimensions = tuple(dimensions)

    @overrides
    def arity(self) -> int:
        return len(self.dimensions)

    @overrides
    def dimension(self, index: int) -> int:
        return self.dimensions[index]

    @overrides
    def evaluate(self, args: Sequence[onp.ndarray]) -> float:
        return float(sum(onp.sum(a) for a in args))


def test_add_term_by_handle_or_storage():
    graph = termopt.TermGraph()
    a = onp.array([1.0, 2.0])
    b = onp.array([3.0])
    a_id = graph.add_variable(a)
    graph.add_variable(b)

    graph.add_term(SumTerm([2, 1]), [a_id, b])
    assert graph.num_terms == 1
    assert graph.evaluator.value_user() == 6.0


def test_structure_version_increments():
    graph = termopt.TermGraph()
    version = graph.structure_version
    a = onp.zeros(1)
    graph.add_variable(a)
    assert graph.structure_version > version

    version = graph.structure_version
    graph.add_term(SumTerm([1]), [a])
    assert graph.structure_version > version


def test_arity_mismatch():
    graph = termopt.TermGraph()
    a = onp.zeros(1)
    graph.add_variable(a)
    with pytest.raises(termopt.ArityMismatchError):
        graph.add_term(SumTerm([1, 1]), [a])
    assert graph.num_terms == 0


def test_unknown_variable():
    graph = termopt.TermGraph()
    a = onp.zeros(1)
    graph.add_variable(a)
    version = graph.structure_version
    with pytest.raises(termopt.UnknownVariableError):
        graph.add_term(SumTerm([1, 1]), [a, onp.zeros(1)])
    assert graph.num_terms == 0
    assert graph.structure_version == version


def test_dimension_mismatch():
    graph = termopt.TermGraph()
    a = onp.zeros(2)
    graph.add_variable(a)
    with pytest.raises(termopt.DimensionMismatchError):
        graph.add_term(SumTerm([3]), [a])
    assert graph.num_terms == 0


def test_hessian_blocks_allocated():
    graph = termopt.TermGraph()
    a = onp.zeros(2)
    b = onp.zeros(3)
    graph.add_variable(a)
    graph.add_variable(b)
    added = graph.add_term(SumTerm([2, 3]), [a, b])

    assert [[block.shape for block in row] for row in added.hessian] == [
        [(2, 2), (2, 3)],
        [(3, 2), (3, 3)],
    ]


def test_no_hessian_blocks_when_disabled():
    graph = termopt.TermGraph(hessian_enabled=False)
    a = onp.zeros(2)
    graph.add_variable(a)
    added = graph.add_term(SumTerm([2]), [a])
    assert added.hessian == []


def test_copy_global_to_user_checks_shape():
    graph = termopt.TermGraph()
    a = onp.zeros(2)
    graph.add_variable(a)
    with pytest.raises(termopt.DimensionMismatchError):
        graph.copy_global_to_user(onp.zeros(3))
    graph.copy_global_to_user(onp.array([1.0, 2.0]))
    onp.testing.assert_allclose(a, [1.0, 2.0])
