"""
Tests for control/nlp_solver.py: IPOPT status mapping and small programs
solved through the CasADi backend.
"""

import numpy as np
import pytest

from control.nlp_solver import (
    IpoptOptions,
    IpoptSolver,
    NLPProblem,
    SolveStatus,
    SolverResult,
    map_return_status,
)


def _projection_problem(target_x: float = 1.0, target_y: float = 2.0) -> NLPProblem:
    """min (x - tx)^2 + (y - ty)^2  s.t.  x + y = 1."""

    def objective(w, p, ops):
        return (w[0] - p[0]) ** 2 + (w[1] - p[1]) ** 2

    def constraints(w, p, ops):
        return [w[0] + w[1]]

    return NLPProblem(
        n_vars=2,
        n_constraints=1,
        lbx=np.array([-np.inf, -np.inf]),
        ubx=np.array([np.inf, np.inf]),
        lbg=np.array([1.0]),
        ubg=np.array([1.0]),
        x0=np.zeros(2),
        p=np.array([target_x, target_y]),
        objective=objective,
        constraints=constraints,
        structure_key=("projection",),
    )


class TestStatusMapping:
    @pytest.mark.parametrize("return_status", [
        "Solve_Succeeded", "Solved_To_Acceptable_Level", "Feasible_Point_Found",
    ])
    def test_success(self, return_status):
        assert map_return_status(return_status) is SolveStatus.SUCCESS

    def test_failures(self):
        assert map_return_status("Infeasible_Problem_Detected") is SolveStatus.INFEASIBLE
        assert map_return_status("Maximum_Iterations_Exceeded") is SolveStatus.ITERATION_LIMIT
        assert map_return_status("Maximum_CpuTime_Exceeded") is SolveStatus.ITERATION_LIMIT
        assert map_return_status("Invalid_Number_Detected") is SolveStatus.NUMERICAL_ERROR
        assert map_return_status("Restoration_Failed") is SolveStatus.NUMERICAL_ERROR

    def test_unknown_is_failed(self):
        assert map_return_status("Something_Else") is SolveStatus.FAILED
        assert map_return_status("") is SolveStatus.FAILED


def test_solver_result_success_flag():
    assert SolverResult(status=SolveStatus.SUCCESS, x=np.zeros(1)).success
    assert not SolverResult(status=SolveStatus.INFEASIBLE).success


class TestIpoptSolver:
    def test_equality_constrained_projection(self):
        result = IpoptSolver().solve(_projection_problem())

        assert result.success
        assert result.status is SolveStatus.SUCCESS
        np.testing.assert_allclose(result.x, [0.0, 1.0], atol=1e-6)
        assert result.objective == pytest.approx(2.0, abs=1e-6)
        assert result.solve_time >= 0.0

    def test_compiled_solver_reused_across_parameters(self):
        solver = IpoptSolver()
        first = solver.solve(_projection_problem(1.0, 2.0))
        second = solver.solve(_projection_problem(3.0, 0.0))

        assert len(solver._compiled) == 1
        np.testing.assert_allclose(first.x, [0.0, 1.0], atol=1e-6)
        np.testing.assert_allclose(second.x, [2.0, -1.0], atol=1e-6)

    def test_infeasible_program_is_not_success(self):
        """x must equal 2 while bounded to [0, 1]."""

        def objective(w, p, ops):
            return w[0] ** 2 + p[0] * 0.0

        def constraints(w, p, ops):
            return [w[0]]

        problem = NLPProblem(
            n_vars=1,
            n_constraints=1,
            lbx=np.array([0.0]),
            ubx=np.array([1.0]),
            lbg=np.array([2.0]),
            ubg=np.array([2.0]),
            x0=np.array([0.5]),
            p=np.array([0.0]),
            objective=objective,
            constraints=constraints,
        )
        result = IpoptSolver(IpoptOptions(max_iter=100)).solve(problem)

        assert not result.success
        assert result.x is None

    def test_constraint_count_mismatch_raises(self):
        problem = _projection_problem()
        problem.n_constraints = 2
        with pytest.raises(ValueError):
            IpoptSolver().solve(problem)
