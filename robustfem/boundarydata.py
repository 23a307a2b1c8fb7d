# boundarydata.py
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
Essential (Dirichlet) boundary conditions.

Boundary values are computed per unknown as pairs of dofs and values and enforced by the
penalty method: a constrained row is replaced by a single diagonal entry P and the
right-hand side entry by ``P * value``.
"""

from dataclasses import dataclass
from enum import Enum

import jax.numpy as jnp
import numpy as np
import scipy.sparse as sparse
import scipy.sparse.linalg as splinalg

from robustfem.assembler import Assembler, AssemblyPattern, PatternArgument
from robustfem.fevector import FEMatrix, FEVector
from robustfem.functionoperators import Identity, NormalFlux, TangentFlux
from robustfem.mesh import AssemblyType
from robustfem.spaces import interpolate
from robustfem.userdata import Action, DataFunction, NoAction
from robustfem.utility import ConfigurationError


class DirichletType(Enum):
    HOMOGENEOUS = 0
    INTERPOLATE = 1
    BESTAPPROX = 2


HomogeneousDirichletBoundary = DirichletType.HOMOGENEOUS
InterpolateDirichletBoundary = DirichletType.INTERPOLATE
BestapproxDirichletBoundary = DirichletType.BESTAPPROX


@dataclass(frozen=True)
class BoundaryData:
    """
    Dirichlet condition of one unknown on boundary regions.

    Attributes:
      regions (tuple): Boundary regions, empty means the whole boundary.
      kind (DirichletType): Homogeneous, interpolated or best-approximated values.
      data (DataFunction, optional): Prescribed function, not needed for homogeneous data.
      components (tuple, optional): Fix only these components (H1 and L2 elements), all if None.
      bonus_quadorder (int): Additional quadrature order of the best approximation.
    """
    regions: tuple = ()
    kind: DirichletType = DirichletType.HOMOGENEOUS
    data: DataFunction = None
    components: tuple = None
    bonus_quadorder: int = 0

    def __post_init__(self):
        if self.kind != DirichletType.HOMOGENEOUS and self.data is None:
            raise ConfigurationError(f"{self.kind.name} boundary data needs a data function.")

    @property
    def time_dependent(self):
        return self.data is not None and self.data.time_dependent


def _dof_components(space):
    """Component of every global dof, -1 for component independent dofs."""
    components = np.full(space.ndofs, -1, dtype=int)
    for local, (_, _, _, c) in enumerate(space.layout):
        components[space.cell_dofs[:, local]] = c
    return components


def boundary_dofs(space, boundary):
    """
    Global dofs of a space that are fixed by a BoundaryData.

    Raises:
      ConfigurationError: If components are selected on a space with component independent dofs.
    """
    dofs = space.boundary_dofs(boundary.regions if boundary.regions else None)
    if boundary.components is None:
        return dofs
    components = _dof_components(space)[dofs]
    if np.any(components < 0):
        raise ConfigurationError(f"Selecting boundary components is not possible for {space.fe}.")
    return dofs[np.isin(components, boundary.components)]


class _BoundaryDataAction(Action):
    """Values, normal or tangential components of the data on boundary faces."""

    def __init__(self, data, operator):
        self.data = data
        self.operator = operator
        super().__init__(lambda input: input, None, data.dependencies, data.bonus_quadorder,
                         name=f"BoundaryDataAction({data.name})")

    def check_argsizes(self, nout, nin):
        expected = 1 if self.operator in (NormalFlux, TangentFlux) else self.data.ncomponents
        if nout != expected:
            raise ConfigurationError(f"{self.name}: data does not fit to {self.operator} ({nout} != {expected}).")

    def apply(self, input, ctx):
        values = self.data.evaluate(ctx)
        if self.operator is NormalFlux:
            return jnp.dot(values, ctx.normal).reshape(1)
        if self.operator is TangentFlux:
            return jnp.dot(values, jnp.array([-ctx.normal[1], ctx.normal[0]])).reshape(1)
        return values


def _trace_operator(space):
    match space.fe.kind:
        case 'Hdiv':
            return NormalFlux
        case 'Hcurl':
            return TangentFlux
        case _:
            return Identity


def bestapproximation(space, boundary, dofs, fixed_dofs, fixed_values, time=0., penalty=1e60, linsolver='lapack'):
    """
    L2 best approximation of the boundary data on the boundary faces of its regions.

    Args:
      space (FESpace): Space of the unknown.
      boundary (BoundaryData): The best approximation condition.
      dofs (np.ndarray): Boundary dofs of the condition.
      fixed_dofs (np.ndarray): Dofs already fixed by other conditions, kept at fixed_values.
      fixed_values (np.ndarray): Their values.
      time (float): Time at which the data is evaluated.
      penalty (float): Penalty of the fixed dofs.
      linsolver (str): 'lapack' or 'umfpack'.

    Returns:
      np.ndarray: Values of dofs.
    """
    operator = _trace_operator(space)
    regions = tuple(boundary.regions)
    arguments = (PatternArgument(operator, 0, 'test'), PatternArgument(operator, 0, 'trial'))
    mass = AssemblyPattern('bilinear', arguments, NoAction(), AssemblyType.ON_BFACES,
                           regions, boundary.bonus_quadorder, name="boundary mass")
    rhs = AssemblyPattern('linear', arguments[:1], _BoundaryDataAction(boundary.data, operator),
                          AssemblyType.ON_BFACES, regions, boundary.bonus_quadorder, name="boundary data")
    sources = FEVector([space])
    A = FEMatrix([space])
    b = FEVector([space])
    Assembler(mass).assemble_matrix(A, sources, time)
    Assembler(rhs).assemble_vector(b, sources, time)
    A.flush()

    M = A.csr[dofs][:, dofs].tocsr()
    r = b.entries[dofs].copy()
    position = {dof: i for i, dof in enumerate(dofs)}
    inside = [k for k, dof in enumerate(fixed_dofs) if dof in position]
    if inside:
        local = np.array([position[fixed_dofs[k]] for k in inside])
        M, r = apply_essential_constraint(M, r, local, np.asarray(fixed_values)[inside], penalty)
    return splinalg.spsolve(M.tocsc(), r, use_umfpack=(linsolver == 'umfpack'))


def boundarydata(block, boundaries, time=0., penalty=1e60, linsolver='lapack'):
    """
    Dofs and values of all Dirichlet conditions of one unknown. Homogeneous and interpolated
    conditions are evaluated first, best approximations last, keeping the dofs already fixed.

    Args:
      block (FEVectorBlock): Block of the unknown.
      boundaries (list): BoundaryData of the unknown.
      time (float): Time at which the data is evaluated.
      penalty (float): Penalty used for dofs fixed inside a best approximation.
      linsolver (str): Linear solver of the best approximations.

    Returns:
      tuple: (dofs, values) in the local numbering of the block.
    """
    space = block.space
    dofs, values = [np.zeros(0, dtype=int)], [np.zeros(0)]
    order = sorted(boundaries, key=lambda b: b.kind == DirichletType.BESTAPPROX)
    for boundary in order:
        bdofs = boundary_dofs(space, boundary)
        match boundary.kind:
            case DirichletType.HOMOGENEOUS:
                bvalues = np.zeros(len(bdofs))
            case DirichletType.INTERPOLATE:
                bvalues = interpolate(space, boundary.data, time)[bdofs]
            case DirichletType.BESTAPPROX:
                bvalues = bestapproximation(space, boundary, bdofs, np.concatenate(dofs), np.concatenate(values),
                                            time, penalty, linsolver)
        dofs.append(bdofs)
        values.append(np.asarray(bvalues, dtype=float))

    dofs, values = np.concatenate(dofs), np.concatenate(values)
    # later conditions overwrite earlier ones on shared dofs
    unique, last = np.unique(dofs[::-1], return_index=True)
    return unique, values[::-1][last]


def apply_essential_constraint(A, b, dofs, values, penalty=1e60):
    """
    Penalty enforcement of ``u[dofs] = values``: the constrained rows are replaced by the row of
    a diagonal matrix with entry penalty and the right-hand side entries by ``penalty * values``.

    Args:
      A (scipy.sparse matrix): System matrix, not modified.
      b (np.ndarray): Right-hand side, not modified.
      dofs (np.ndarray): Constrained rows.
      values (np.ndarray): Prescribed values.
      penalty (float): Penalty value.

    Returns:
      tuple: Modified copies (A, b).
    """
    dofs = np.asarray(dofs, dtype=int)
    n = A.shape[0]
    # constrained rows keep only their diagonal entry
    keep = np.ones(n)
    keep[dofs] = 0.
    diagonal = np.zeros(n)
    diagonal[dofs] = penalty
    A = (sparse.diags(keep) @ sparse.csr_matrix(A) + sparse.diags(diagonal)).tocsr()
    A.eliminate_zeros()
    b = np.array(b, dtype=float)
    b[dofs] = penalty * np.asarray(values)
    return A, b
