"""
Nonlinear program contract and the IPOPT backend (through CasADi).

The horizon formulator only sees NLPProblem / SolverResult; any engine that
implements NLPSolver.solve can be swapped in.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Hashable, Optional, Protocol

import casadi as ca
import numpy as np

from control.vehicle_model import ExpressionOps

logger = logging.getLogger(__name__)

CASADI_OPS = ExpressionOps(sin=ca.sin, cos=ca.cos, atan=ca.atan)


class SolveStatus(str, Enum):
    SUCCESS = "success"
    INFEASIBLE = "infeasible"
    ITERATION_LIMIT = "iteration_limit"
    NUMERICAL_ERROR = "numerical_error"
    FAILED = "failed"


_IPOPT_STATUS = {
    "Solve_Succeeded": SolveStatus.SUCCESS,
    "Solved_To_Acceptable_Level": SolveStatus.SUCCESS,
    "Feasible_Point_Found": SolveStatus.SUCCESS,
    "Infeasible_Problem_Detected": SolveStatus.INFEASIBLE,
    "Maximum_Iterations_Exceeded": SolveStatus.ITERATION_LIMIT,
    "Maximum_CpuTime_Exceeded": SolveStatus.ITERATION_LIMIT,
    "Maximum_WallTime_Exceeded": SolveStatus.ITERATION_LIMIT,
    "Invalid_Number_Detected": SolveStatus.NUMERICAL_ERROR,
    "Error_In_Step_Computation": SolveStatus.NUMERICAL_ERROR,
    "Restoration_Failed": SolveStatus.NUMERICAL_ERROR,
    "Search_Direction_Becomes_Too_Small": SolveStatus.NUMERICAL_ERROR,
    "Diverging_Iterates": SolveStatus.NUMERICAL_ERROR,
}


def map_return_status(return_status: str) -> SolveStatus:
    """Translate an IPOPT return string into a SolveStatus."""
    return _IPOPT_STATUS.get(return_status, SolveStatus.FAILED)


@dataclass
class NLPProblem:
    """
    One nonlinear program: min f(w, p) s.t. lbg <= g(w, p) <= ubg, lbx <= w <= ubx.

    objective and constraints receive the decision vector, the parameter
    vector and an ExpressionOps; constraints returns a list of scalar
    expressions of length n_constraints. Problems that share a structure_key
    must produce identical expressions for identical symbols, which lets the
    backend reuse a compiled solver across cycles.
    """
    n_vars: int
    n_constraints: int
    lbx: np.ndarray
    ubx: np.ndarray
    lbg: np.ndarray
    ubg: np.ndarray
    x0: np.ndarray
    p: np.ndarray
    objective: Callable
    constraints: Callable
    structure_key: Optional[Hashable] = None


@dataclass
class SolverResult:
    """Outcome of a single NLP solve."""
    status: SolveStatus
    x: Optional[np.ndarray] = None
    objective: Optional[float] = None
    iterations: int = 0
    return_status: str = ""
    solve_time: float = 0.0

    @property
    def success(self) -> bool:
        return self.status is SolveStatus.SUCCESS


class NLPSolver(Protocol):
    def solve(self, problem: NLPProblem) -> SolverResult:
        ...


@dataclass(frozen=True)
class IpoptOptions:
    """IPOPT tuning; max_cpu_time bounds one control cycle."""
    max_iter: int = 200
    tol: float = 1e-8
    acceptable_tol: float = 1e-6
    max_cpu_time: float = 0.5
    print_level: int = 0


class IpoptSolver:
    """
    Interior-point backend. Exact gradients, Jacobians and Hessians come from
    CasADi's automatic differentiation of the traced objective/constraints.
    """

    def __init__(self, options: Optional[IpoptOptions] = None):
        self.options = options or IpoptOptions()
        self._compiled: Dict[Hashable, ca.Function] = {}

    def _casadi_options(self) -> dict:
        return {
            "ipopt.print_level": self.options.print_level,
            "ipopt.sb": "yes",
            "ipopt.max_iter": self.options.max_iter,
            "ipopt.tol": self.options.tol,
            "ipopt.acceptable_tol": self.options.acceptable_tol,
            "ipopt.max_cpu_time": self.options.max_cpu_time,
            "print_time": 0,
            "error_on_fail": False,
        }

    def _compile(self, problem: NLPProblem) -> ca.Function:
        w = ca.SX.sym("w", problem.n_vars)
        p = ca.SX.sym("p", len(problem.p))
        f = problem.objective(w, p, CASADI_OPS)
        g = ca.vertcat(*problem.constraints(w, p, CASADI_OPS))
        if g.shape[0] != problem.n_constraints:
            raise ValueError(
                f"Constraint evaluator produced {g.shape[0]} rows, expected {problem.n_constraints}"
            )
        nlp = {"x": w, "p": p, "f": f, "g": g}
        return ca.nlpsol("mpc_nlp", "ipopt", nlp, self._casadi_options())

    def _solver_for(self, problem: NLPProblem) -> ca.Function:
        key = problem.structure_key
        if key is None:
            return self._compile(problem)
        solver = self._compiled.get(key)
        if solver is None:
            logger.debug("Compiling IPOPT solver for structure %s", key)
            solver = self._compile(problem)
            self._compiled[key] = solver
        return solver

    def solve(self, problem: NLPProblem) -> SolverResult:
        solver = self._solver_for(problem)

        start_time = time.perf_counter()
        try:
            solution = solver(
                x0=problem.x0,
                p=problem.p,
                lbx=problem.lbx,
                ubx=problem.ubx,
                lbg=problem.lbg,
                ubg=problem.ubg,
            )
        except RuntimeError as exc:
            duration = time.perf_counter() - start_time
            logger.warning("IPOPT raised during solve: %s", exc)
            return SolverResult(
                status=SolveStatus.NUMERICAL_ERROR,
                return_status=str(exc),
                solve_time=duration,
            )
        duration = time.perf_counter() - start_time

        stats = solver.stats()
        return_status = str(stats.get("return_status", ""))
        status = map_return_status(return_status)
        x = np.asarray(solution["x"].full()).flatten()
        objective = float(solution["f"])
        iterations = int(stats.get("iter_count", 0))

        if status is SolveStatus.SUCCESS and not np.all(np.isfinite(x)):
            status = SolveStatus.NUMERICAL_ERROR

        if status is not SolveStatus.SUCCESS:
            logger.warning(
                "IPOPT failed: status=%s iterations=%d time=%.3fs",
                return_status, iterations, duration,
            )
            return SolverResult(
                status=status,
                objective=objective,
                iterations=iterations,
                return_status=return_status,
                solve_time=duration,
            )

        return SolverResult(
            status=status,
            x=x,
            objective=objective,
            iterations=iterations,
            return_status=return_status,
            solve_time=duration,
        )
