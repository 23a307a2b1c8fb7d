# globalconstraints.py
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
Global constraints that couple or fix dofs of the unknowns.

A constraint modifies the assembled system before the solve (``apply``) and may post-process
the solution afterwards (``realize``).
"""

import numpy as np
import scipy.sparse as sparse

from robustfem.boundarydata import apply_essential_constraint
from robustfem.functionoperators import Identity
from robustfem.integrators import ItemIntegrator, evaluate
from robustfem.mesh import MeshData
from robustfem.spaces import interpolate
from robustfem.userdata import DataFunction
from robustfem.utility import ConfigurationError


class GlobalConstraint:
    """Base class, the unknowns are referenced by their position in the solution vector."""
    name = "GlobalConstraint"

    def __repr__(self):
        return self.name

    def apply(self, A, b, solution, penalty=1e60):
        """
        Modifies the system before the solve.

        Returns:
          tuple: (A, b, dofs) with the global dofs whose rows are replaced by the constraint.
        """
        raise NotImplementedError

    def realize(self, solution):
        """Post-processes the solution after the solve."""


class FixedIntegralMean(GlobalConstraint):
    """
    Fixes the integral mean of an unknown to value, e.g. the pressure of enclosed flows.

    The first dof of the unknown is fixed to zero during the solve, afterwards the constant that
    corrects the mean is added.

    Args:
      unknown (int): Position of the unknown.
      value (float): Prescribed integral mean.
    """

    def __init__(self, unknown, value=0., name=None):
        self.unknown = unknown
        self.value = value
        self.name = name if name is not None else f"FixedIntegralMean({unknown}, {value})"
        self._integrator = None

    def apply(self, A, b, solution, penalty=1e60):
        dof = np.array([solution[self.unknown].offset])
        A, b = apply_essential_constraint(A, b, dof, np.zeros(1), penalty)
        return A, b, dof

    def realize(self, solution):
        block = solution[self.unknown]
        space = block.space
        if space.ncomponents != 1:
            raise ConfigurationError(f"{self.name}: integral means are only fixed for scalar unknowns.")
        if self._integrator is None:
            self._integrator = ItemIntegrator(None, [(Identity, self.unknown)], name="integral mean")
        integral = evaluate(self._integrator, solution)[0]
        area = space.mesh[MeshData.CELL_VOLUMES].sum()
        shift = self.value - integral / area
        block.entries = block.entries + shift * interpolate(space, DataFunction(1.))


class CombineDofs(GlobalConstraint):
    """
    Ties dofs of two unknowns, ``u_x[dofs_x[k]] = factors[k] * u_y[dofs_y[k]]``, e.g. for periodic
    boundary conditions.

    The test equations of the dofs_x rows are added to the dofs_y rows and the dofs_x rows are
    replaced by the coupling.

    Args:
      unknown_x (int): Position of the first unknown.
      unknown_y (int): Position of the second unknown.
      dofs_x (array): Local dofs of the first unknown.
      dofs_y (array): Local dofs of the second unknown.
      factors (float or array): Coupling factors.
    """

    def __init__(self, unknown_x, unknown_y, dofs_x, dofs_y, factors=1., name="CombineDofs"):
        self.unknown_x = unknown_x
        self.unknown_y = unknown_y
        self.dofs_x = np.asarray(dofs_x, dtype=int)
        self.dofs_y = np.asarray(dofs_y, dtype=int)
        if self.dofs_x.shape != self.dofs_y.shape:
            raise ConfigurationError(f"{name}: dofs_x and dofs_y need the same length.")
        self.factors = np.broadcast_to(np.asarray(factors, dtype=float), self.dofs_x.shape)
        self.name = name

    def _global_dofs(self, solution):
        return solution[self.unknown_x].offset + self.dofs_x, solution[self.unknown_y].offset + self.dofs_y

    def apply(self, A, b, solution, penalty=1e60):
        gx, gy = self._global_dofs(solution)
        n = A.shape[0]
        # T adds row gx (times factor) to row gy and clears row gx
        keep = np.ones(n)
        keep[gx] = 0.
        T = sparse.diags(keep) + sparse.coo_matrix((self.factors, (gy, gx)), shape=(n, n))
        A = (T @ A).tolil()
        b = T @ np.asarray(b, dtype=float)
        for i, j, f in zip(gx, gy, self.factors):
            A[i, i] = 1.
            A[i, j] = -f
            b[i] = 0.
        return A.tocsr(), b, gx

    def realize(self, solution):
        gx, gy = self._global_dofs(solution)
        solution.entries[gx] = self.factors * solution.entries[gy]


class FixedDofs(GlobalConstraint):
    """
    Fixes dofs of an unknown to given values.

    Args:
      unknown (int): Position of the unknown.
      dofs (array): Local dofs of the unknown.
      values (float or array): Prescribed values.
    """

    def __init__(self, unknown, dofs, values=0., name="FixedDofs"):
        self.unknown = unknown
        self.dofs = np.asarray(dofs, dtype=int)
        self.values = np.broadcast_to(np.asarray(values, dtype=float), self.dofs.shape)
        self.name = name

    def apply(self, A, b, solution, penalty=1e60):
        dofs = solution[self.unknown].offset + self.dofs
        A, b = apply_essential_constraint(A, b, dofs, self.values, penalty)
        return A, b, dofs

    def realize(self, solution):
        solution[self.unknown].entries[self.dofs] = self.values
