from ._augmented_lagrangian import (
    AugmentedLagrangianConfig as AugmentedLagrangianConfig,
)
from ._augmented_lagrangian import (
    AugmentedLagrangianSolver as AugmentedLagrangianSolver,
)
from ._augmented_lagrangian import (
    AugmentedLagrangianState as AugmentedLagrangianState,
)
from ._augmented_lagrangian import Constraint as Constraint
from ._augmented_lagrangian import PenaltyTerm as PenaltyTerm
from ._errors import ArityMismatchError as ArityMismatchError
from ._errors import ConcurrentEvaluationError as ConcurrentEvaluationError
from ._errors import ConfigurationError as ConfigurationError
from ._errors import DimensionMismatchError as DimensionMismatchError
from ._errors import DuplicateConstraintError as DuplicateConstraintError
from ._errors import UnknownVariableError as UnknownVariableError
from ._errors import UnsupportedOperationError as UnsupportedOperationError
from ._evaluator import Evaluator as Evaluator
from ._evaluator import HessianMode as HessianMode
from ._solvers import ExitCondition as ExitCondition
from ._solvers import ScipySolver as ScipySolver
from ._solvers import SolverResults as SolverResults
from ._solvers import UnconstrainedSolver as UnconstrainedSolver
from ._term import ChangeOfVariables as ChangeOfVariables
from ._term import Term as Term
from ._term_graph import AddedTerm as AddedTerm
from ._term_graph import TermGraph as TermGraph
from ._variables import Variable as Variable
from ._variables import VariableId as VariableId
from ._variables import VariableRegistry as VariableRegistry
