# feevaluator.py
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
Evaluation of function operators applied to finite element bases at the quadrature points of
assembly items.

:class:`ItemQuadrature` maps a quadrature rule of the item geometry (cell, face or edge) into
the adjacent cells. :class:`FEEvaluator` combines it with a finite element space and a function
operator and provides ``values[item, qp, component, local_dof]`` together with the global dofs
of every item. Reference basis evaluations are computed once per distinct set of reference
points and reused for all items that share it.

Pushforwards:

- H1, L2: identity, gradients with the inverse Jacobian
- Hdiv: contravariant Piola transform ``J v / det J``
- Hcurl: covariant Piola transform ``J^{-T} v``
"""

import jax
import jax.numpy as jnp
import numpy as np

from robustfem.mesh import MeshData, AssemblyType, Edge1D, assembly_items, reference_mapping
from robustfem.functionoperators import BasisData
from robustfem.quadrature import quadrature_rule
from robustfem.utility import ConfigurationError, regions_mask, unique_rows


class CellGeometry:
    """
    Geometry of the reference mapping of cells at given reference points.

    Attributes:
      x (np.ndarray): Physical points (n, m, dim).
      J, Jinv (np.ndarray): Jacobian of the reference mapping and its inverse (n, m, dim, dim).
      detJ (np.ndarray): Jacobian determinants (n, m).
    """

    def __init__(self, mesh, cells, xref):
        n, m, d = xref.shape
        if mesh.affine:
            # Jacobian is constant per cell
            x0, J = reference_mapping(mesh, cells, xref[:, :1])
            self.x = x0 + np.einsum('nkij,nqj->nqi', J, xref - xref[:, :1])
            Jinv = np.linalg.inv(J)
            detJ = np.linalg.det(J)
            self.J = np.broadcast_to(J, (n, m, d, d))
            self.Jinv = np.broadcast_to(Jinv, (n, m, d, d))
            self.detJ = np.broadcast_to(detJ, (n, m))
        else:
            self.x, self.J = reference_mapping(mesh, cells, xref)
            self.Jinv = np.linalg.inv(self.J)
            self.detJ = np.linalg.det(self.J)


def reference_points(mesh, cells, item_nodes, lam):
    """
    Reference coordinates inside cells of points given by barycentric coordinates with respect
    to the nodes of a subentity (face or edge) in their given order.

    Args:
      cells (np.ndarray): Cell ids (n,).
      item_nodes (np.ndarray): Node ids of the subentity in each cell (n, k).
      lam (np.ndarray): Barycentric coordinates (m, k).

    Returns:
      np.ndarray: Reference points (n, m, d).
    """
    cell_nodes = mesh.cells[cells]
    positions = np.argmax(cell_nodes[:, None, :] == item_nodes[:, :, None], axis=2)
    return np.einsum('qk,nkd->nqd', lam, mesh.geometry.reference_nodes[positions])


class ItemQuadrature:
    """
    Quadrature rule of an assembly type mapped into the adjacent cells of every item.

    Args:
      mesh (Mesh): The mesh.
      assembly_type (AssemblyType): Items to integrate over.
      order (int): Polynomial degree that has to be integrated exactly.
      regions (list, optional): Restrict to items of these regions. Empty or None means all.

    Attributes:
      items, regions (np.ndarray): Selected item ids and their regions (n,).
      cells (np.ndarray): Adjacent cells (n, 2), -1 where there is no second cell.
      has_second (np.ndarray): True for items with two adjacent cells.
      side_cells (list): Cell ids of both sides, the first cell substitutes a missing second one.
      xref (list): Reference points in the cells of both sides (n, nq, d).
      geometry (list): CellGeometry of both sides.
      x (np.ndarray): Physical quadrature points (n, nq, dim).
      weights (np.ndarray): Physical quadrature weights (n, nq).
      normals (np.ndarray or None): Global face normals at the quadrature points (n, nq, dim).
    """

    def __init__(self, mesh, assembly_type, order, regions=None):
        items, item_regions, cells = assembly_items(mesh, assembly_type)
        mask = regions_mask(item_regions, regions)
        self.mesh = mesh
        self.assembly_type = assembly_type
        self.order = order
        self.items = items[mask]
        self.regions = np.asarray(item_regions)[mask]
        self.cells = cells[mask]
        self.has_second = self.cells[:, 1] >= 0
        self.side_cells = [self.cells[:, 0], np.where(self.has_second, self.cells[:, 1], self.cells[:, 0])]
        n = self.items.shape[0]

        match assembly_type:
            case AssemblyType.ON_CELLS:
                item_geometry = mesh.geometry
            case AssemblyType.ON_EDGES:
                item_geometry = Edge1D
            case _:
                item_geometry = mesh.geometry.face_geometry
        self.item_geometry = item_geometry
        self.rule = quadrature_rule(item_geometry, order)
        nq = self.rule.npoints

        if assembly_type == AssemblyType.ON_CELLS:
            xref = np.broadcast_to(self.rule.points, (n, nq, mesh.dim))
            self.xref = [xref, xref]
        else:
            key = MeshData.EDGE_NODES if assembly_type == AssemblyType.ON_EDGES else MeshData.FACE_NODES
            item_nodes = mesh[key][self.items]
            lam = np.asarray(jax.vmap(item_geometry.shape_functions)(jnp.asarray(self.rule.points)))
            self.xref = [reference_points(mesh, c, item_nodes, lam) for c in self.side_cells]
        self.geometry = [CellGeometry(mesh, c, xref) for c, xref in zip(self.side_cells, self.xref)]
        self.x = self.geometry[0].x

        match assembly_type:
            case AssemblyType.ON_CELLS:
                self.weights = np.abs(self.geometry[0].detJ) * self.rule.weights[None, :]
                self.normals = None
            case AssemblyType.ON_EDGES:
                volumes = mesh[MeshData.EDGE_VOLUMES][self.items]
                self.weights = volumes[:, None] * self.rule.weights[None, :] / item_geometry.volume
                self.normals = None
            case _:
                volumes = mesh[MeshData.FACE_VOLUMES][self.items]
                self.weights = volumes[:, None] * self.rule.weights[None, :] / item_geometry.volume
                normals = mesh[MeshData.FACE_NORMALS][self.items]
                self.normals = np.broadcast_to(normals[:, None, :], (n, nq, mesh.dim))

    @property
    def nitems(self):
        return self.items.shape[0]

    @property
    def npoints(self):
        return self.rule.npoints


_REFERENCE_CACHE = {}


def _reference_evaluation(fe, geometry, points, derivatives):
    """Reference basis values and derivatives at points, cached per point set."""
    key = (fe, geometry, derivatives, points.shape, points.tobytes())
    if key not in _REFERENCE_CACHE:
        basis = fe.reference_basis(geometry)
        pts = jnp.asarray(points)
        evaluation = [np.asarray(jax.vmap(basis)(pts))]
        if derivatives >= 1:
            evaluation.append(np.asarray(jax.vmap(jax.jacfwd(basis))(pts)))
        if derivatives >= 2:
            evaluation.append(np.asarray(jax.vmap(jax.hessian(basis))(pts)))
        _REFERENCE_CACHE[key] = evaluation
    return _REFERENCE_CACHE[key]


def evaluate_basis(space, cells, xref, derivatives, geometry):
    """
    Pushed forward basis functions of space in cells at reference points xref.

    Args:
      space (FESpace): The finite element space.
      cells (np.ndarray): Cell ids (n,).
      xref (np.ndarray): Reference points (n, m, d).
      derivatives (int): Highest derivative to evaluate.
      geometry (CellGeometry): Reference mapping at xref.

    Returns:
      BasisData: values (n, m, ndofs, C), gradients (n, m, ndofs, C, d) and hessians (n, m, ndofs, C, d, d)
      as far as requested.
    """
    fe = space.fe
    mesh_geometry = space.mesh.geometry
    n, m, d = xref.shape
    unique, _, inverse = unique_rows(np.asarray(xref).reshape(n, -1))
    reference = [_reference_evaluation(fe, mesh_geometry, row.reshape(m, d), derivatives) for row in unique]
    coefficients = np.transpose(space.cell_coefficients[cells], (0, 2, 1))[:, None]

    values = np.stack([r[0] for r in reference])[inverse] * coefficients
    gradients, hessians = None, None
    if derivatives >= 1:
        gradients = np.stack([r[1] for r in reference])[inverse] * coefficients[..., None]
    if derivatives >= 2:
        hessians = np.stack([r[2] for r in reference])[inverse] * coefficients[..., None, None]

    J, Jinv, detJ = geometry.J, geometry.Jinv, geometry.detJ
    match fe.kind:
        case 'H1' | 'L2':
            if gradients is not None:
                gradients = np.einsum('nmdck,nmki->nmdci', gradients, Jinv)
            if hessians is not None:
                hessians = np.einsum('nmdckl,nmki,nmlj->nmdcij', hessians, Jinv, Jinv)
        case 'Hdiv':
            if gradients is not None:
                gradients = np.einsum('nmij,nmdjk,nmkl->nmdil', J, gradients, Jinv) / detJ[:, :, None, None, None]
            values = np.einsum('nmij,nmdj->nmdi', J, values) / detJ[:, :, None, None]
        case 'Hcurl':
            if gradients is not None:
                gradients = np.einsum('nmji,nmdjk,nmkl->nmdil', Jinv, gradients, Jinv)
            values = np.einsum('nmji,nmdj->nmdi', Jinv, values)
    return BasisData(values, gradients, hessians)


def _build_reconstruction(source, target_fe):
    mesh = source.mesh
    geometry = mesh.geometry
    target = source.reconstruction_space(target_fe)
    face_geometry = geometry.face_geometry
    rule = quadrature_rule(face_geometry, source.polynomial_order + target.polynomial_order)
    lam = np.asarray(jax.vmap(face_geometry.shape_functions)(jnp.asarray(rule.points)))
    moments = target_fe.face_moments(lam)
    directions = target_fe.global_directions(mesh)
    index = {entry: i for i, entry in enumerate(target.layout)}
    cells = np.arange(mesh.ncells)

    R = np.zeros((mesh.ncells, source.nlocal, target.nlocal))
    for j in range(len(geometry.face_nodes)):
        faces = mesh[MeshData.CELL_FACES][:, j]
        xref = reference_points(mesh, cells, mesh[MeshData.FACE_NODES][faces], lam)
        data = evaluate_basis(source, cells, xref, 0, CellGeometry(mesh, cells, xref))
        weights = mesh[MeshData.FACE_VOLUMES][faces][:, None] * rule.weights[None, :] / face_geometry.volume
        moment_values = np.einsum('nm,nmsc,nc,mk->nsk', weights, data.values, directions[faces], moments)
        for k in range(moments.shape[1]):
            R[:, :, index[('fsingle', j, k, -1)]] = moment_values[:, :, k]
    return R


def reconstruction_coefficients(source, target_fe):
    """
    Coefficients that express the basis of source in every cell as a combination of the basis
    of the target family on the same cell, shape (ncells, source.nlocal, target.nlocal).

    The coefficients are the face moments of the target family applied to the source basis.
    They are computed once per pair and cached by the source space.
    """
    return source.cached_reconstruction(target_fe, _build_reconstruction)


class FEEvaluator:
    """
    Function operator applied to the basis of a finite element space at the quadrature points of
    all items of an ItemQuadrature.

    Args:
      space (FESpace): The finite element space.
      operator (FunctionOperator): The function operator.
      quadrature (ItemQuadrature): Quadrature points of the assembly items.

    Raises:
      ConfigurationError: If the operator is not available for the element, geometry or assembly type.
    """

    def __init__(self, space, operator, quadrature):
        mesh = space.mesh
        operator.check(space.fe, mesh.geometry)
        if operator.needs_normals and quadrature.normals is None:
            raise ConfigurationError(f"{operator} can only be evaluated on faces, not {quadrature.assembly_type.name}.")
        if operator.derivatives > 1 and not mesh.affine:
            raise ConfigurationError(f"{operator} needs second derivatives, which are only available on affine meshes.")
        self.space = space
        self.operator = operator
        self.quadrature = quadrature
        self.ncomponents = operator.ncomponents(space.ncomponents, mesh.dim)
        self.values = None
        self.dofs = None

    def __repr__(self):
        return f"FEEvaluator({self.space.name}, {self.operator}, {self.quadrature.assembly_type.name})"

    @property
    def ndofs(self):
        """Number of local dofs per item."""
        return self.space.nlocal * (2 if self.operator.side is not None else 1)

    def update_basis(self):
        """
        Operator values (nitems, nq, ncomponents, ndofs) and global dofs (nitems, ndofs) of all items.
        Computed on first call, then cached.
        """
        if self.values is None:
            if self.operator.side is None:
                self.values, self.dofs = self._evaluate_side(0)
            else:
                self.values, self.dofs = self._evaluate_two_sided()
        return self.values, self.dofs

    def _evaluate_side(self, side):
        q = self.quadrature
        operator = self.operator.base
        cells = q.side_cells[side]
        if operator.target is not None:
            target = self.space.reconstruction_space(operator.target)
            data = evaluate_basis(target, cells, q.xref[side], operator.derivatives, q.geometry[side])
            values = operator.reduce(data._replace(normals=q.normals))
            R = reconstruction_coefficients(self.space, operator.target)[cells]
            values = np.einsum('nqtc,nst->nqsc', values, R)
        else:
            data = evaluate_basis(self.space, cells, q.xref[side], operator.derivatives, q.geometry[side])
            values = operator.reduce(data._replace(normals=q.normals))
        return np.swapaxes(values, -1, -2), self.space.cell_dofs[cells]

    def _evaluate_two_sided(self):
        v0, d0 = self._evaluate_side(0)
        v1, d1 = self._evaluate_side(1)
        second = self.quadrature.has_second[:, None, None, None]
        a0, a1 = (-1., 1.) if self.operator.side == 'Jump' else (0.5, 0.5)
        values = np.concatenate([np.where(second, a0, 1.) * v0, np.where(second, a1, 0.) * v1], axis=-1)
        return values, np.concatenate([d0, d1], axis=1)

    def evaluate(self, coefficients):
        """Operator applied to a discrete function with the given global coefficients, shape (nitems, nq, ncomponents)."""
        values, dofs = self.update_basis()
        return np.einsum('nqcd,nd->nqc', values, np.asarray(coefficients)[dofs])
