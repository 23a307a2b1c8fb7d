# pdedescription.py
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
Description of a system of PDEs: unknowns, operators per block (equation, unknown), right-hand
sides per equation, boundary data per unknown and global constraints.
"""

from robustfem.boundarydata import BoundaryData, DirichletType
from robustfem.utility import ConfigurationError


class PDEDescription:
    """
    System of PDEs with one equation per unknown.

    Args:
      name (str): Name used in printouts.

    Attributes:
      unknowns (list): Names of the unknowns.
      equations (list): Names of the equations.
      lhs (dict): Operators of every block (equation, unknown).
      rhs (dict): Right-hand side operators of every equation.
      boundary (dict): BoundaryData of every unknown.
      constraints (list): Global constraints.
    """

    def __init__(self, name="PDE"):
        self.name = name
        self.unknowns = []
        self.equations = []
        self.algebraic = []
        self.lhs = {}
        self.rhs = {}
        self.boundary = {}
        self.constraints = []

    @property
    def nunknowns(self):
        return len(self.unknowns)

    @property
    def nonlinear(self):
        """True if an operator depends on the current solution."""
        return any(op.nonlinear for op, _, _ in self.operators())

    def add_unknown(self, unknown_name, equation_name=None, algebraic_constraint=False):
        """
        Adds an unknown and its equation.

        Args:
          unknown_name (str): Name of the unknown.
          equation_name (str, optional): Name of the equation, defaults to "equation for <unknown>".
          algebraic_constraint (bool): The equation has no time derivative (e.g. incompressibility).

        Returns:
          int: Position of the new unknown.
        """
        self.unknowns.append(unknown_name)
        self.equations.append(equation_name if equation_name is not None else f"equation for {unknown_name}")
        self.algebraic.append(algebraic_constraint)
        self.boundary[len(self.unknowns) - 1] = []
        self.rhs[len(self.unknowns) - 1] = []
        return len(self.unknowns) - 1

    def _check_block(self, row, col):
        n = self.nunknowns
        if not (0 <= row < n and 0 <= col < n):
            raise ConfigurationError(f"Block ({row}, {col}) does not exist in a system of {n} unknowns.")

    def add_operator(self, block, operator):
        """Adds an operator to block (equation, unknown) and returns its position inside the block."""
        row, col = block
        self._check_block(row, col)
        self.lhs.setdefault((row, col), []).append(operator)
        return len(self.lhs[(row, col)]) - 1

    def replace_operator(self, block, index, operator):
        row, col = block
        self._check_block(row, col)
        self.lhs[(row, col)][index] = operator

    def add_rhsdata(self, equation, operator):
        """Adds a right-hand side operator (a LinearForm) to an equation."""
        self._check_block(equation, equation)
        self.rhs[equation].append(operator)
        return len(self.rhs[equation]) - 1

    def replace_rhsdata(self, equation, index, operator):
        self._check_block(equation, equation)
        self.rhs[equation][index] = operator

    def add_boundarydata(self, unknown, regions=(), kind=DirichletType.HOMOGENEOUS, data=None, components=None,
                         bonus_quadorder=0):
        """Adds a Dirichlet condition of an unknown, see BoundaryData."""
        self._check_block(unknown, unknown)
        self.boundary[unknown].append(BoundaryData(tuple(regions), kind, data, components, bonus_quadorder))

    def add_constraint(self, constraint):
        self.constraints.append(constraint)

    def operators(self):
        """All operators as triples (operator, row, col), right-hand sides with col None."""
        for (row, col), ops in self.lhs.items():
            for op in ops:
                yield op, row, col
        for row, ops in self.rhs.items():
            for op in ops:
                yield op, row, None

    def __str__(self):
        lines = [f"PDE-DESCRIPTION: {self.name}", "", "  SYSTEM"]
        for row, (equation, unknown) in enumerate(zip(self.equations, self.unknowns)):
            algebraic = " (algebraic)" if self.algebraic[row] else ""
            lines.append(f"    [{row}] {equation}, unknown {unknown}{algebraic}")
            for col in range(self.nunknowns):
                for op in self.lhs.get((row, col), []):
                    lines.append(f"        LHS[{row},{col}] {op} ({op.trigger.name})")
            for op in self.rhs[row]:
                lines.append(f"        RHS[{row}] {op} ({op.trigger.name})")
        lines.append("  BOUNDARY DATA")
        for unknown, boundaries in self.boundary.items():
            for boundary in boundaries:
                data = f", {boundary.data.name}" if boundary.data is not None else ""
                lines.append(f"    {self.unknowns[unknown]}: {boundary.kind.name} on regions {list(boundary.regions)}{data}")
        if self.constraints:
            lines.append("  GLOBAL CONSTRAINTS")
            lines.extend(f"    {constraint}" for constraint in self.constraints)
        return "\n".join(lines)
