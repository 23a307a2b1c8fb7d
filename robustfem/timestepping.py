# timestepping.py
# Copyright (C) 2025 Tobias Bode
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.

"""
Time stepping of PDE descriptions with one-step theta schemes.

The time-dependent equations get the time derivative term ``(M (u - u_old) / dt, v)`` with the
mass matrix M of the dt operators; their spatial operators and right-hand sides are blended
between the new and the old state by theta. Equations without time derivative (algebraic
constraints like the incompressibility) are treated fully implicitly.
"""

from abc import ABC

import numpy as np
import scipy.sparse as sparse

from robustfem.assembler import Assembler
from robustfem.fevector import FEMatrix
from robustfem.pdeoperators import AssemblyEachTimeStep, ReactionOperator
from robustfem.solver import SystemAssembly, fixed_point_iteration, solver_config
from robustfem.utility import ConfigurationError


## integration rules

class TimeIntegrationRule(ABC):
  """
  Base class for one-step theta schemes.

  Attributes:
    name (str): The name of the method.
    theta (float): Weight of the new state, 1 - theta is the weight of the old state.
    order (int): Order of accuracy.
  """

  def __init__(self, name, theta, order):
    if not 0. < theta <= 1.:
      raise ConfigurationError(f"theta has to be in (0, 1], got {theta}.")
    self.name = name
    self.theta = theta
    self.order = order

  def __repr__(self):
    return f"{type(self).__name__}(theta={self.theta})"


class BackwardEuler(TimeIntegrationRule):
  """
  Backward Euler method.

  Accuracy: 1st order.
  Stability: L-stable.
  """

  def __init__(self):
    super().__init__("backward_euler", 1., 1)


class CrankNicolson(TimeIntegrationRule):
  """
  Crank-Nicolson method.

  Accuracy: 2nd order.
  Stability: A-stable.
  """

  def __init__(self):
    super().__init__("crank_nicolson", 0.5, 2)


## driver

class TimeControlSolver:
  """
  Time stepping of a PDE description, every step is solved by the fixed-point loop of the solver.

  Args:
    pde (PDEDescription): The problem, time-dependent data is evaluated at the new time of a step.
    solution (FEVector): Initial state, overwritten by the current state.
    rule (TimeIntegrationRule): The integration rule.
    timedependent_equations (list, optional): Equations with a time derivative, defaults to all
      equations that are not marked as algebraic constraints.
    dt_operators (dict, optional): Operators of the time derivative per equation, defaults to
      a ReactionOperator (the mass matrix).
    start_time (float): Initial time.
    **kwargs: Solver options, see solver_config.

  Attributes:
    ctime (float): Current time.
    cstep (int): Number of performed steps.
    last_change (float): Euclidean norm of the change of the solution in the last step.
  """

  def __init__(self, pde, solution, rule=None, timedependent_equations=None, dt_operators=None, start_time=0.,
               **kwargs):
    self.pde = pde
    self.solution = solution
    self.rule = rule if rule is not None else BackwardEuler()
    self.config = solver_config(pde.nonlinear, **kwargs)
    self.system = SystemAssembly(pde, solution, self.config["verbose"])
    if timedependent_equations is None:
      timedependent_equations = [i for i in range(pde.nunknowns) if not pde.algebraic[i]]
    self.timedependent_equations = list(timedependent_equations)
    if dt_operators is None:
      dt_operators = {}
    self.dt_operators = {eq: dt_operators.get(eq, [ReactionOperator(name="TimeDerivative")])
                         for eq in self.timedependent_equations}

    self.ctime = start_time
    self.cstep = 0
    self.last_change = np.inf
    self.results = []

    self.mass = self._assemble_mass()
    self.theta_rows = np.ones(solution.ndofs)
    for eq in self.timedependent_equations:
      block = solution[eq]
      self.theta_rows[block.offset:block.last] = self.rule.theta
    self._old_residual = None

  def __repr__(self):
    return f"TimeControlSolver({self.pde.name}, {self.rule}, time={self.ctime}, step={self.cstep})"

  def _assemble_mass(self):
    spaces = [block.space for block in self.solution]
    M = FEMatrix(spaces)
    for eq, operators in self.dt_operators.items():
      for operator in operators:
        for pattern in operator.patterns(eq, eq):
          Assembler(pattern, self.config["verbose"]).assemble_matrix(M, self.solution, self.ctime)
    return M.flush().csr

  def _residual(self):
    """``b - A u`` of the spatial operators at the current state."""
    A, b = self.system.system()
    return b - A @ self.solution.entries

  def advance(self, dt):
    """
    Performs one time step of size dt.

    Returns:
      SolverResult: Result of the fixed-point loop of the step.
    """
    u_old = self.solution.entries.copy()
    theta = self.theta_rows
    if self.rule.theta < 1. and self._old_residual is None:
      self.system.assemble(self.solution, self.ctime, AssemblyEachTimeStep, self.config["skip_preps"])
      self._old_residual = self._residual()
    old_residual = self._old_residual if self._old_residual is not None else np.zeros_like(u_old)
    mass_old = self.mass @ u_old / dt

    def transform(A, b):
      A = (self.mass / dt + sparse.diags(theta) @ A).tocsr()
      b = mass_old + theta * b + (1. - theta) * old_residual
      return A, b

    new_time = self.ctime + dt
    result = fixed_point_iteration(self.system, self.solution, self.config, new_time, transform,
                                   AssemblyEachTimeStep)
    if self.rule.theta < 1.:
      self._old_residual = self._residual()

    self.last_change = float(np.linalg.norm(self.solution.entries - u_old))
    self.ctime = new_time
    self.cstep += 1
    self.results.append(result)
    if self.config["verbose"] >= 1:
      print(f"Time step {self.cstep}: time = {self.ctime}, change = {self.last_change}")
    return result

  def advance_until_time(self, dt, final_time):
    """
    Advances with step size dt until final_time, the last step is shortened to hit final_time.

    Returns:
      SolverResult: Result of the last step.
    """
    result = None
    while self.ctime < final_time - 1e-12 * max(abs(final_time), 1.):
      result = self.advance(min(dt, final_time - self.ctime))
    return result

  def advance_until_stationarity(self, dt, stationarity_threshold=1e-11, maxtimesteps=100):
    """
    Advances with step size dt until the change of the solution in a step is below the threshold.

    Returns:
      bool: True if the stationary state was reached within maxtimesteps.
    """
    for _ in range(maxtimesteps):
      self.advance(dt)
      if self.last_change < stationarity_threshold:
        if self.config["verbose"] >= 1:
          print(f"Stationarity reached after {self.cstep} steps at time {self.ctime}.")
        return True
    if self.config["verbose"] >= 0:
      print(f"Warning: stationarity not reached after {maxtimesteps} time steps, last change {self.last_change}.")
    return False
