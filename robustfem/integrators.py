# integrators.py
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
Integration of discrete functions and data over mesh items, e.g. for error norms, and the
evaluation of discrete functions at the mesh nodes or their interpolation onto refined meshes.
"""

import jax.numpy as jnp
import numpy as np

from robustfem.assembler import Assembler, AssemblyPattern, PatternArgument
from robustfem.feevaluator import ItemQuadrature, CellGeometry, evaluate_basis
from robustfem.functionoperators import Identity
from robustfem.mesh import AssemblyType, MeshData, reference_mapping
from robustfem.spaces import FiniteElement, point_interpolation
from robustfem.userdata import Action, as_action, make_context
from robustfem.utility import ConfigurationError


class ItemIntegrator:
    """
    Integrates an action of operator evaluations of discrete functions over mesh items.

    Args:
      action (Action or None): Maps the concatenated operator values to the integrand. None integrates
        the operator values themselves.
      operators (list): Pairs (function operator, slot) of the discrete functions.
      assembly_type (AssemblyType): Items to integrate over.
      regions (tuple): Restrict to items of these regions.
      bonus_quadorder (int): Additional quadrature order.
      factor (float): Factor of the integrals.
      name (str): Name used in printouts.
    """

    def __init__(self, action, operators, assembly_type=AssemblyType.ON_CELLS, regions=(), bonus_quadorder=0,
                 factor=1., name="ItemIntegrator"):
        arguments = tuple(PatternArgument(op, slot, 'fixed') for op, slot in operators)
        self.pattern = AssemblyPattern('integral', arguments, as_action(action), assembly_type, tuple(regions),
                                       bonus_quadorder, factor, name=name)
        self.assembler = Assembler(self.pattern)
        self.name = name

    def __repr__(self):
        return f"{self.name}({', '.join(str(a.operator) for a in self.pattern.arguments)})"

    def integrate_items(self, sources, time=0.):
        """Integrals over every item, shape (nitems, nout)."""
        return self.assembler.integrate_items(sources, time)


class _ErrorAction(Action):
    def __init__(self, data, power):
        self.data = data
        self.power = power
        name = f"error({data.name})" if data is not None else "norm"
        dependencies = data.dependencies if data is not None else ""
        bonus = data.bonus_quadorder if data is not None else 0
        super().__init__(lambda input: input, None, dependencies, bonus, name)

    def check_argsizes(self, nout, nin):
        if nout != nin or (self.data is not None and self.data.ncomponents != nin):
            raise ConfigurationError(f"{self.name}: data and operator sizes do not match ({nout}, {nin}).")

    def apply(self, input, ctx):
        if self.data is not None:
            input = input - self.data.evaluate(ctx)
        return jnp.abs(input) ** self.power


class L2ErrorIntegrator(ItemIntegrator):
    """
    Squared L2 error ``|op(u_h) - u|^2`` per component between the operator applied to the discrete
    function in slot and the data function u.

    Args:
      exact (DataFunction): The reference function.
      operator (FunctionOperator): Operator applied to the discrete function.
      slot (int): Slot of the discrete function.
      bonus_quadorder (int): Additional quadrature order on top of the element order.
    """

    def __init__(self, exact, operator=Identity, slot=0, assembly_type=AssemblyType.ON_CELLS, regions=(),
                 bonus_quadorder=2, name="L2ErrorIntegrator"):
        super().__init__(_ErrorAction(exact, 2), [(operator, slot)], assembly_type, regions,
                         bonus_quadorder, name=name)


class L2NormIntegrator(ItemIntegrator):
    """Squared L2 norm per component of the operator applied to the discrete function in slot."""

    def __init__(self, operator=Identity, slot=0, assembly_type=AssemblyType.ON_CELLS, regions=(), bonus_quadorder=2,
                 name="L2NormIntegrator"):
        super().__init__(_ErrorAction(None, 2), [(operator, slot)], assembly_type, regions, bonus_quadorder, name=name)


def evaluate(integrator, sources, time=0.):
    """
    Sum of the item integrals of an integrator.

    Args:
      integrator (ItemIntegrator): The integrator.
      sources: Sequence of FEVectorBlocks indexed by the slots of the integrator.
      time (float): Time.

    Returns:
      np.ndarray: Integrals per output component.
    """
    return integrator.integrate_items(sources, time).sum(axis=0)


def integrate(mesh, data, order, assembly_type=AssemblyType.ON_CELLS, regions=None, time=0., itemwise=False):
    """
    Integrates a data function over mesh items.

    Args:
      mesh (Mesh): The mesh.
      data (DataFunction): The integrand.
      order (int): Quadrature order (the bonus order of data is added).
      assembly_type (AssemblyType): Items to integrate over.
      regions (list, optional): Restrict to these regions.
      time (float): Time.
      itemwise (bool): Return the integrals of every item instead of their sum.
    """
    q = ItemQuadrature(mesh, assembly_type, order + data.bonus_quadorder, regions)
    n, nq = q.nitems, q.npoints
    item_info = np.repeat(np.stack([q.items, q.cells[:, 0], q.regions], axis=1), nq, axis=0)
    normals = None if q.normals is None else q.normals.reshape(n * nq, -1)
    ctx = make_context(q.x.reshape(n * nq, -1), time, item_info, q.xref[0].reshape(n * nq, -1), normals)
    values = np.asarray(data.evaluate_context(ctx)).reshape(n, nq, -1)
    integrals = np.einsum('nq,nqc->nc', q.weights, values)
    return integrals if itemwise else integrals.sum(axis=0)


def nodevalues(block, operator=Identity):
    """
    Values of an operator applied to a discrete function at the mesh nodes, averaged over the
    cells adjacent to each node.

    Args:
      block (FEVectorBlock): The discrete function.
      operator (FunctionOperator): Operator without reconstruction or two-sided evaluation.

    Returns:
      np.ndarray: Node values of shape (nnodes, ncomponents of the operator).
    """
    space = block.space
    mesh = space.mesh
    if operator.target is not None or operator.side is not None:
        raise ConfigurationError(f"nodevalues does not support {operator}.")
    operator.check(space.fe, mesh.geometry)
    cells = np.arange(mesh.ncells)
    nodes = mesh.geometry.reference_nodes
    xref = np.broadcast_to(nodes, (mesh.ncells,) + nodes.shape)
    data = evaluate_basis(space, cells, xref, operator.derivatives, CellGeometry(mesh, cells, xref))
    values = operator.reduce(data)
    cell_values = np.einsum('nmdc,nd->nmc', values, block.entries[space.cell_dofs])

    nout = cell_values.shape[-1]
    sums = np.zeros((mesh.nnodes, nout))
    counts = np.zeros(mesh.nnodes)
    np.add.at(sums, mesh[MeshData.CELL_NODES].ravel(), cell_values.reshape(-1, nout))
    np.add.at(counts, mesh[MeshData.CELL_NODES].ravel(), 1.)
    return sums / counts[:, None]


def interpolate_from_parent(space, source):
    """
    Interpolates a discrete function of a coarse mesh into a space on a mesh refined from it.

    The point functionals of the target element are evaluated at physical points of the fine
    cells, which are pulled back into the coarse cell containing them. Functions of the coarse
    space that lie in the target space are reproduced exactly.

    Args:
      space (FESpace): Target space on a mesh obtained by uniform_refine from source.space.mesh.
      source (FEVectorBlock): The discrete function on the coarse mesh.

    Returns:
      np.ndarray: Dof values of shape (space.ndofs,).
    """
    coarse = source.space.mesh
    parents = np.arange(space.mesh.ncells)
    mesh = space.mesh
    while mesh is not coarse:
        if mesh.parent is None:
            raise ConfigurationError("The target mesh is not a refinement of the mesh of the source.")
        parents = mesh.parent_cells[parents]
        mesh = mesh.parent
    if type(space.fe).interpolate is not FiniteElement.interpolate:
        raise ConfigurationError(f"{space.fe} has no point functionals for interpolation between meshes.")
    if space.fe.ncomponents != source.space.fe.ncomponents:
        raise ConfigurationError(f"{source.space.fe} and {space.fe} have different numbers of components.")
    Identity.check(source.space.fe, coarse.geometry)

    def evaluate(x):
        xref = _pull_back(coarse, parents, x)
        data = evaluate_basis(source.space, parents, xref, Identity.derivatives, CellGeometry(coarse, parents, xref))
        return np.einsum('nmdc,nd->nmc', Identity.reduce(data), source.entries[source.space.cell_dofs[parents]])

    return space.from_conforming(point_interpolation(space, evaluate))


def _pull_back(mesh, cells, x, maxiterations=20, tol=1e-13):
    # Newton iteration on the reference mapping, exact after one step for affine cells
    xref = np.broadcast_to(mesh.geometry.reference_nodes.mean(axis=0), x.shape[:-1] + (mesh.geometry.dim,)).copy()
    for _ in range(maxiterations):
        y, J = reference_mapping(mesh, cells, xref)
        residual = y - x
        if np.abs(residual).max() <= tol * max(1., np.abs(x).max()):
            break
        xref = xref - np.linalg.solve(J, residual[..., None])[..., 0]
    return xref
