# spaces.py
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
Finite element families and finite element spaces.

A finite element family defines, per reference geometry,

- a dof map pattern (see :class:`DofmapPattern`),
- its reference basis, computed once as the dual basis of a raw polynomial space with respect
  to the dof functionals of the element,
- per-cell coefficients that make the basis globally conforming (orientation signs of face
  moments, face normals of Bernardi-Raugel bubbles),
- an interpolation operator.

An :class:`FESpace` binds a family to a mesh and provides the global dof numbering.

Available families:

- H1P1: continuous P1 (Q1 on quadrilaterals)
- H1P2: continuous P2 (serendipity on quadrilaterals)
- H1P3: continuous P3 on segments and triangles
- H1CR: Crouzeix-Raviart
- H1BR: Bernardi-Raugel (P1 vector + normal weighted face bubbles)
- L2P0, L2P1: discontinuous P0 and P1
- HDIVRT0, HDIVBDM1: Raviart-Thomas and Brezzi-Douglas-Marini of lowest order
- HCURLN0: Nedelec of first kind, lowest order, on triangles
"""

from dataclasses import dataclass
from functools import lru_cache
import re

import jax
import jax.numpy as jnp
import numpy as np

from robustfem.mesh import MeshData, reference_face_normals, reference_mapping
from robustfem.quadrature import quadrature_rule, face_quadrature, cell_quadrature
from robustfem.utility import ConfigurationError, regions_mask


### Dof map patterns

@dataclass(frozen=True)
class DofmapPattern:
    """
    Number of dofs per subentity, parsed once from the pattern grammar.

    Uppercase letters count dofs per component, lowercase letters count dofs shared by all
    components: ``N`` node, ``E`` edge, ``F`` face, ``I`` cell interior, ``f`` face, ``i`` cell.
    E.g. ``"N1f1"`` is one dof per node and component plus one dof per face.
    """
    per_node: int = 0
    per_edge: int = 0
    per_face: int = 0
    per_cell: int = 0
    face_single: int = 0
    cell_single: int = 0

    _keys = {'N': 'per_node', 'E': 'per_edge', 'F': 'per_face', 'I': 'per_cell', 'f': 'face_single',
             'i': 'cell_single'}

    @classmethod
    def parse(cls, pattern):
        tokens = re.findall(r"([A-Za-z])(\d+)", pattern)
        if "".join(k + n for k, n in tokens) != pattern:
            raise ConfigurationError(f"Invalid dof map pattern '{pattern}'.")
        counts = {}
        for key, number in tokens:
            if key not in cls._keys:
                raise ConfigurationError(f"Unknown subentity '{key}' in dof map pattern '{pattern}'.")
            counts[cls._keys[key]] = int(number)
        return cls(**counts)

    @property
    def interior_flag(self):
        return self.per_cell > 0 or self.cell_single > 0


@lru_cache(maxsize=None)
def dof_layout(pattern, geometry, ncomponents):
    """
    Local dof ordering of a cell.

    For each component: node dofs, edge dofs, face dofs, interior dofs; then the component-independent
    face dofs and cell dofs. Each entry is a tuple (entity kind, local entity index, dof index on the
    entity, component), where the component is -1 for the component-independent dofs.
    """
    nnodes = geometry.reference_nodes.shape[0]
    nfaces = len(geometry.face_nodes)
    nedges = len(geometry.edge_nodes) if geometry.dim == 3 else 0
    if pattern.per_edge > 0 and geometry.dim != 3:
        raise ConfigurationError(f"Edge dofs are only supported on three-dimensional geometries, not {geometry.name}.")
    layout = []
    for c in range(ncomponents):
        layout += [('node', j, k, c) for j in range(nnodes) for k in range(pattern.per_node)]
        layout += [('edge', j, k, c) for j in range(nedges) for k in range(pattern.per_edge)]
        layout += [('face', j, k, c) for j in range(nfaces) for k in range(pattern.per_face)]
        layout += [('cell', 0, k, c) for k in range(pattern.per_cell)]
    layout += [('fsingle', j, k, -1) for j in range(nfaces) for k in range(pattern.face_single)]
    layout += [('csingle', 0, k, -1) for k in range(pattern.cell_single)]
    return tuple(layout)


### Raw polynomial spaces

def _monomial_exponents(dim, degree):
    if dim == 0:
        return [()]
    return [(a,) + rest for a in range(degree + 1) for rest in _monomial_exponents(dim - 1, degree - a)]


def _monomials(exponents):
    def basis(x):
        terms = []
        for exponent in exponents:
            term = jnp.ones(())
            for i, a in enumerate(exponent):
                for _ in range(a):
                    term = term * x[i]
            terms.append(term)
        return jnp.stack(terms)
    return basis


def _vectorized(scalar_basis, ncomponents):
    """Component-major vector space of a scalar space, shape (ncomponents * n, ncomponents)."""
    def basis(x):
        return jnp.kron(jnp.eye(ncomponents), scalar_basis(x)[:, None])
    return basis


def _point_functional(point, component, ncomponents):
    weights = np.zeros((1, ncomponents))
    weights[0, component] = 1.
    return np.asarray(point, dtype=float)[None, :], weights


def _reference_face_rule(geometry, j, order):
    """Quadrature on the local face j of the reference cell: points, weights, barycentric coords."""
    face_geometry = geometry.face_geometry
    rule = quadrature_rule(face_geometry, order)
    lam = np.asarray(jax.vmap(face_geometry.shape_functions)(jnp.asarray(rule.points)))
    nodes = geometry.reference_nodes[list(geometry.face_nodes[j])]
    face_volume = _reference_face_volume(geometry, j)
    return lam @ nodes, rule.weights * face_volume / face_geometry.volume, lam


def _reference_face_volume(geometry, j):
    x = geometry.reference_nodes[list(geometry.face_nodes[j])]
    match x.shape[0]:
        case 1:
            return 1.
        case 2:
            return float(np.linalg.norm(x[1] - x[0]))
        case 3:
            return float(0.5 * np.linalg.norm(np.cross(x[1] - x[0], x[2] - x[0])))


@lru_cache(maxsize=None)
def _dual_matrix(fe, geometry):
    raw = fe.raw_basis(geometry)
    functionals = fe.functionals(geometry)
    n = len(functionals)
    M = np.zeros((n, n))
    for i, (points, weights) in enumerate(functionals):
        P = np.asarray(jax.vmap(raw)(jnp.asarray(points)))
        if P.shape[1] != n:
            raise ConfigurationError(
                f"{fe} on {geometry.name}: raw space of dimension {P.shape[1]} does not match {n} functionals.")
        M[:, i] = np.einsum('mkc,mc->k', P, weights)
    return np.linalg.inv(M)


@lru_cache(maxsize=None)
def _reference_basis(fe, geometry):
    A = jnp.asarray(_dual_matrix(fe, geometry))
    raw = fe.raw_basis(geometry)

    def basis(xi):
        return A @ raw(xi)
    return basis


### Finite element families

@dataclass(frozen=True)
class FiniteElement:
    """
    Base class of the finite element families.

    Attributes:
      ncomponents (int): Number of field components.
    """
    ncomponents: int = 1

    kind = 'H1'
    geometries = ()

    def check_geometry(self, geometry):
        if geometry.name not in self.geometries:
            raise ConfigurationError(f"{self} is not available on {geometry.name} geometries.")
        if self.kind in ('Hdiv', 'Hcurl') and self.ncomponents != geometry.dim:
            raise ConfigurationError(f"{self} needs ncomponents equal to the dimension {geometry.dim}.")

    def dofmap_pattern(self, geometry):
        raise NotImplementedError

    def polynomial_order(self, geometry):
        raise NotImplementedError

    def pattern(self, geometry):
        return DofmapPattern.parse(self.dofmap_pattern(geometry))

    def layout(self, geometry):
        return dof_layout(self.pattern(geometry), geometry, self.ncomponents)

    def ndofs(self, geometry):
        return len(self.layout(geometry))

    def raw_basis(self, geometry):
        raise NotImplementedError

    def functionals(self, geometry):
        raise NotImplementedError

    def reference_basis(self, geometry):
        """Function xi -> basis values of shape (ndofs, ncomponents) on the reference geometry."""
        self.check_geometry(geometry)
        return _reference_basis(self, geometry)

    def face_closure(self, geometry, j):
        """Local dofs whose basis functions do not vanish on the local face j."""
        face = set(geometry.face_nodes[j])
        edges = [e for e, nodes in enumerate(geometry.edge_nodes) if set(nodes) <= face]
        closure = []
        for i, (kind, entity, _, _) in enumerate(self.layout(geometry)):
            if ((kind == 'node' and entity in face) or (kind == 'edge' and entity in edges)
                    or (kind in ('face', 'fsingle') and entity == j)):
                closure.append(i)
        return np.asarray(closure, dtype=int)

    def coefficients(self, space):
        """Per-cell coefficients (ncells, ncomponents, ndofs) multiplying the reference basis."""
        return np.ones((space.mesh.ncells, self.ncomponents, space.nlocal))

    def interpolate(self, space, data, time=0.):
        """Conforming dof values of the interpolation of data."""
        return _interpolate_points(space, data, time)


class LagrangeElement(FiniteElement):
    """Elements with point evaluation functionals."""

    def interpolation_points(self, geometry):
        raise NotImplementedError

    def raw_basis(self, geometry):
        return _vectorized(self.scalar_raw_basis(geometry), self.ncomponents)

    def functionals(self, geometry):
        points = self.interpolation_points(geometry)
        return [_point_functional(p, c, self.ncomponents) for c in range(self.ncomponents) for p in points]


@dataclass(frozen=True)
class H1P1(LagrangeElement):
    """Continuous piecewise linear element (bilinear on quadrilaterals)."""
    geometries = ('segment', 'triangle', 'quadrilateral', 'tetrahedron')

    def dofmap_pattern(self, geometry):
        return "N1"

    def polynomial_order(self, geometry):
        return 2 if geometry.name == 'quadrilateral' else 1

    def scalar_raw_basis(self, geometry):
        if geometry.name == 'quadrilateral':
            return _monomials([(0, 0), (1, 0), (0, 1), (1, 1)])
        return _monomials(_monomial_exponents(geometry.dim, 1))

    def interpolation_points(self, geometry):
        return list(geometry.reference_nodes)


@dataclass(frozen=True)
class H1P2(LagrangeElement):
    """Continuous piecewise quadratic element (serendipity on quadrilaterals)."""
    geometries = ('segment', 'triangle', 'quadrilateral', 'tetrahedron')

    def dofmap_pattern(self, geometry):
        match geometry.dim:
            case 1:
                return "N1I1"
            case 2:
                return "N1F1"
            case 3:
                return "N1E1"

    def polynomial_order(self, geometry):
        return 3 if geometry.name == 'quadrilateral' else 2

    def scalar_raw_basis(self, geometry):
        if geometry.name == 'quadrilateral':
            return _monomials([(0, 0), (1, 0), (0, 1), (2, 0), (1, 1), (0, 2), (2, 1), (1, 2)])
        return _monomials(_monomial_exponents(geometry.dim, 2))

    def interpolation_points(self, geometry):
        nodes = geometry.reference_nodes
        if geometry.dim == 1:
            return list(nodes) + [nodes.mean(axis=0)]
        entities = geometry.edge_nodes if geometry.dim == 3 else geometry.face_nodes
        return list(nodes) + [nodes[list(e)].mean(axis=0) for e in entities]


@dataclass(frozen=True)
class H1P3(LagrangeElement):
    """Continuous piecewise cubic element on segments and triangles."""
    geometries = ('segment', 'triangle')

    def dofmap_pattern(self, geometry):
        return "N1I2" if geometry.dim == 1 else "N1F2I1"

    def polynomial_order(self, geometry):
        return 3

    def scalar_raw_basis(self, geometry):
        return _monomials(_monomial_exponents(geometry.dim, 3))

    def interpolation_points(self, geometry):
        nodes = geometry.reference_nodes
        points = list(nodes)
        if geometry.dim == 1:
            return points + [nodes[0] + (nodes[1] - nodes[0]) / 3., nodes[0] + 2. * (nodes[1] - nodes[0]) / 3.]
        for a, b in geometry.face_nodes:
            points += [nodes[a] + (nodes[b] - nodes[a]) / 3., nodes[a] + 2. * (nodes[b] - nodes[a]) / 3.]
        return points + [nodes.mean(axis=0)]


@dataclass(frozen=True)
class H1CR(LagrangeElement):
    """Crouzeix-Raviart element, dofs are face means."""
    geometries = ('triangle', 'tetrahedron')

    def dofmap_pattern(self, geometry):
        return "F1"

    def polynomial_order(self, geometry):
        return 1

    def scalar_raw_basis(self, geometry):
        return _monomials(_monomial_exponents(geometry.dim, 1))

    def interpolation_points(self, geometry):
        nodes = geometry.reference_nodes
        return [nodes[list(face)].mean(axis=0) for face in geometry.face_nodes]

    def interpolate(self, space, data, time=0.):
        mesh = space.mesh
        order = 2 + data.bonus_quadorder
        x, w, _ = face_quadrature(mesh, np.arange(mesh.nfaces), order)
        u = _evaluate(data, x, time, self.ncomponents)
        means = np.einsum('fm,fmc->fc', w, u) / mesh[MeshData.FACE_VOLUMES][:, None]
        return means.T.reshape(-1)


@dataclass(frozen=True)
class H1BR(FiniteElement):
    """
    Bernardi-Raugel element: vector P1 enriched by one face bubble per face in normal direction.

    The reference basis carries the scalar face bubble in every component; the per-cell
    coefficients multiply component c with the c-th component of the global face normal.
    """
    ncomponents: int = 2
    geometries = ('triangle', 'tetrahedron')

    def dofmap_pattern(self, geometry):
        return "N1f1"

    def polynomial_order(self, geometry):
        return geometry.dim

    def reference_basis(self, geometry):
        self.check_geometry(geometry)
        C = self.ncomponents
        scale = 6. if geometry.dim == 2 else 60.
        face_nodes = [list(face) for face in geometry.face_nodes]

        def basis(xi):
            lam = geometry.shape_functions(xi)
            p1 = jnp.kron(jnp.eye(C), lam[:, None])
            bubbles = jnp.stack([scale * jnp.prod(lam[jnp.asarray(face)]) for face in face_nodes])
            return jnp.concatenate([p1, jnp.outer(bubbles, jnp.ones(C))], axis=0)
        return basis

    def check_geometry(self, geometry):
        super().check_geometry(geometry)
        if self.ncomponents != geometry.dim:
            raise ConfigurationError(f"{self} needs ncomponents equal to the dimension {geometry.dim}.")

    def coefficients(self, space):
        mesh = space.mesh
        coefficients = super().coefficients(space)
        nvertices = mesh.geometry.reference_nodes.shape[0]
        normals = mesh[MeshData.FACE_NORMALS][mesh[MeshData.CELL_FACES]]
        first = self.ncomponents * nvertices
        coefficients[:, :, first:] = np.transpose(normals, (0, 2, 1))
        return coefficients

    def interpolate(self, space, data, time=0.):
        mesh = space.mesh
        C = self.ncomponents
        nodal = _evaluate(data, mesh.coordinates[None], time, C)[0]
        x, w, lam = face_quadrature(mesh, np.arange(mesh.nfaces), 2 + data.bonus_quadorder)
        u = _evaluate(data, x, time, C)
        normals = mesh[MeshData.FACE_NORMALS]
        flux = np.einsum('fm,fmc,fc->f', w, u, normals)
        u_linear = np.einsum('mk,fkc->fmc', lam, nodal[mesh[MeshData.FACE_NODES]])
        linear_flux = np.einsum('fm,fmc,fc->f', w, u_linear, normals)
        bubbles = (flux - linear_flux) / mesh[MeshData.FACE_VOLUMES]
        return np.concatenate([nodal.T.reshape(-1), bubbles])


@dataclass(frozen=True)
class L2P0(LagrangeElement):
    """Piecewise constant element, dofs are cell means."""
    kind = 'L2'
    geometries = ('segment', 'triangle', 'quadrilateral', 'tetrahedron')

    def dofmap_pattern(self, geometry):
        return "I1"

    def polynomial_order(self, geometry):
        return 0

    def scalar_raw_basis(self, geometry):
        return _monomials([(0,) * geometry.dim])

    def interpolation_points(self, geometry):
        return [geometry.reference_nodes.mean(axis=0)]

    def interpolate(self, space, data, time=0.):
        mesh = space.mesh
        x, w = cell_quadrature(mesh, np.arange(mesh.ncells), 2 + data.bonus_quadorder)
        u = _evaluate(data, x, time, self.ncomponents)
        means = np.einsum('nm,nmc->nc', w, u) / w.sum(axis=1)[:, None]
        return means.T.reshape(-1)


@dataclass(frozen=True)
class L2P1(LagrangeElement):
    """Discontinuous piecewise linear element."""
    kind = 'L2'
    geometries = ('segment', 'triangle', 'quadrilateral', 'tetrahedron')

    def dofmap_pattern(self, geometry):
        return f"I{geometry.dim + 1}"

    def polynomial_order(self, geometry):
        return 1

    def scalar_raw_basis(self, geometry):
        return _monomials(_monomial_exponents(geometry.dim, 1))

    def interpolation_points(self, geometry):
        return list(geometry.reference_nodes[:geometry.dim + 1])


class FaceMomentElement(FiniteElement):
    """Elements whose dofs are moments of the normal (Hdiv) or tangential (Hcurl) trace on faces."""

    def face_moments(self, lam):
        """Moment weights of the dofs of one face at barycentric coordinates lam (m, k), shape (m, ndofs_per_face)."""
        raise NotImplementedError

    def reference_directions(self, geometry):
        if self.kind == 'Hdiv':
            return reference_face_normals(geometry)
        nodes = geometry.reference_nodes
        tangents = np.asarray([nodes[b] - nodes[a] for a, b in geometry.face_nodes])
        return tangents / np.linalg.norm(tangents, axis=1)[:, None]

    def functionals(self, geometry):
        directions = self.reference_directions(geometry)
        functionals = []
        for j in range(len(geometry.face_nodes)):
            points, weights, lam = _reference_face_rule(geometry, j, 2 * self.polynomial_order(geometry))
            moments = self.face_moments(lam)
            for k in range(moments.shape[1]):
                functionals.append((points, (weights * moments[:, k])[:, None] * directions[j][None, :]))
        return functionals

    def global_directions(self, mesh):
        if self.kind == 'Hdiv':
            return mesh[MeshData.FACE_NORMALS]
        return mesh[MeshData.FACE_TANGENTS]

    def interpolate(self, space, data, time=0.):
        mesh = space.mesh
        x, w, lam = face_quadrature(mesh, np.arange(mesh.nfaces), 2 + self.polynomial_order(mesh.geometry) + data.bonus_quadorder)
        u = _evaluate(data, x, time, self.ncomponents)
        normal_trace = np.einsum('fmc,fc->fm', u, self.global_directions(mesh))
        return np.einsum('fm,fm,mk->fk', w, normal_trace, self.face_moments(lam)).reshape(-1)


@dataclass(frozen=True)
class HDIVRT0(FaceMomentElement):
    """Raviart-Thomas element of lowest order, dofs are normal fluxes."""
    ncomponents: int = 2
    kind = 'Hdiv'
    geometries = ('triangle', 'tetrahedron')

    def dofmap_pattern(self, geometry):
        return "f1"

    def polynomial_order(self, geometry):
        return 1

    def raw_basis(self, geometry):
        d = geometry.dim

        def basis(x):
            return jnp.concatenate([jnp.eye(d), x[None, :]], axis=0)
        return basis

    def face_moments(self, lam):
        return np.ones((lam.shape[0], 1))

    def coefficients(self, space):
        signs = space.mesh[MeshData.CELL_FACE_SIGNS]
        return np.broadcast_to(signs[:, None, :], (signs.shape[0], self.ncomponents, signs.shape[1])).astype(float)


@dataclass(frozen=True)
class HDIVBDM1(FaceMomentElement):
    """Brezzi-Douglas-Marini element of lowest order, dofs are the normal flux and its first moment."""
    ncomponents: int = 2
    kind = 'Hdiv'
    geometries = ('triangle',)

    def dofmap_pattern(self, geometry):
        return "f2"

    def polynomial_order(self, geometry):
        return 1

    def raw_basis(self, geometry):
        return _vectorized(_monomials(_monomial_exponents(2, 1)), 2)

    def face_moments(self, lam):
        return np.stack([np.ones(lam.shape[0]), lam[:, 0] - lam[:, 1]], axis=1)

    def coefficients(self, space):
        mesh = space.mesh
        signs = mesh[MeshData.CELL_FACE_SIGNS].astype(float)
        orientations = mesh[MeshData.CELL_FACE_ORIENTATIONS]
        per_dof = np.stack([signs, signs * orientations], axis=2).reshape(signs.shape[0], -1)
        return np.broadcast_to(per_dof[:, None, :], (per_dof.shape[0], 2, per_dof.shape[1])).copy()


@dataclass(frozen=True)
class HCURLN0(FaceMomentElement):
    """Nedelec element of the first kind and lowest order on triangles, dofs are tangential moments."""
    ncomponents: int = 2
    kind = 'Hcurl'
    geometries = ('triangle',)

    def dofmap_pattern(self, geometry):
        return "f1"

    def polynomial_order(self, geometry):
        return 1

    def raw_basis(self, geometry):
        def basis(x):
            return jnp.stack([jnp.array([1., 0.]), jnp.array([0., 1.]), jnp.stack([-x[1], x[0]])])
        return basis

    def face_moments(self, lam):
        return np.ones((lam.shape[0], 1))

    def coefficients(self, space):
        orientations = space.mesh[MeshData.CELL_FACE_ORIENTATIONS].astype(float)
        return np.broadcast_to(orientations[:, None, :], (orientations.shape[0], 2, orientations.shape[1])).copy()


### Finite element spaces

class FESpace:
    """
    Finite element space of a family on a mesh.

    Args:
      fe (FiniteElement): The element family.
      mesh (Mesh): The mesh.
      broken (bool): If True, every cell gets its own dofs (no coupling across faces).
      name (str, optional): Name used in printouts.

    Attributes:
      ndofs (int): Number of global dofs.
      nlocal (int): Number of dofs per cell.
      cell_dofs (np.ndarray): Global dofs of every cell, shape (ncells, nlocal).
    """

    def __init__(self, fe, mesh, broken=False, name=None):
        fe.check_geometry(mesh.geometry)
        self.fe = fe
        self.mesh = mesh
        self.broken = broken
        self.name = name if name is not None else type(fe).__name__
        self.pattern = fe.pattern(mesh.geometry)
        self.layout = fe.layout(mesh.geometry)
        self.nlocal = len(self.layout)
        self._conforming_cell_dofs, self._conforming_ndofs = self._build_dofmap()
        if broken:
            self.ndofs = mesh.ncells * self.nlocal
            self.cell_dofs = np.arange(self.ndofs).reshape(mesh.ncells, self.nlocal)
        else:
            self.ndofs = self._conforming_ndofs
            self.cell_dofs = self._conforming_cell_dofs
        self._coefficients = None
        self._reconstruction = {}

    def __repr__(self):
        broken = ", broken" if self.broken else ""
        return f"FESpace({self.name}, {self.fe}{broken}, ndofs={self.ndofs})"

    @property
    def ncomponents(self):
        return self.fe.ncomponents

    @property
    def polynomial_order(self):
        return self.fe.polynomial_order(self.mesh.geometry)

    @property
    def cell_coefficients(self):
        if self._coefficients is None:
            self._coefficients = np.asarray(self.fe.coefficients(self), dtype=float)
        return self._coefficients

    def _build_dofmap(self):
        mesh, p, C = self.mesh, self.pattern, self.ncomponents
        ncells = mesh.ncells
        nedges = mesh.nedges if p.per_edge > 0 else 0
        nfaces = mesh.nfaces if (p.per_face > 0 or p.face_single > 0) else 0
        block = mesh.nnodes * p.per_node + nedges * p.per_edge + nfaces * p.per_face + ncells * p.per_cell
        edge_offset = mesh.nnodes * p.per_node
        face_offset = edge_offset + nedges * p.per_edge
        cell_offset = face_offset + nfaces * p.per_face
        singles = C * block
        cells = np.arange(ncells)

        if p.per_face > 1 and mesh.dim == 3:
            raise ConfigurationError(f"Several dofs per face component are not supported on {mesh.geometry.name} meshes.")
        if p.per_face > 1:
            face_orientations = mesh[MeshData.CELL_FACE_ORIENTATIONS]
        if p.per_edge > 1:
            edge_orientations = mesh[MeshData.CELL_EDGE_SIGNS]

        columns = []
        for kind, j, k, c in self.layout:
            match kind:
                case 'node':
                    dofs = c * block + mesh.cells[:, j] * p.per_node + k
                case 'edge':
                    kk = k if p.per_edge == 1 else np.where(edge_orientations[:, j] > 0, k, p.per_edge - 1 - k)
                    dofs = c * block + edge_offset + mesh[MeshData.CELL_EDGES][:, j] * p.per_edge + kk
                case 'face':
                    kk = k if p.per_face == 1 else np.where(face_orientations[:, j] > 0, k, p.per_face - 1 - k)
                    dofs = c * block + face_offset + mesh[MeshData.CELL_FACES][:, j] * p.per_face + kk
                case 'cell':
                    dofs = c * block + cell_offset + cells * p.per_cell + k
                case 'fsingle':
                    dofs = singles + mesh[MeshData.CELL_FACES][:, j] * p.face_single + k
                case 'csingle':
                    dofs = singles + nfaces * p.face_single + cells * p.cell_single + k
            columns.append(np.broadcast_to(dofs, (ncells,)))
        ndofs = singles + nfaces * p.face_single + ncells * p.cell_single
        return np.stack(columns, axis=1).astype(int), int(ndofs)

    def boundary_dofs(self, regions=None):
        """Global dofs whose basis functions do not vanish on boundary faces of the given regions."""
        mesh = self.mesh
        mask = regions_mask(mesh[MeshData.BFACE_REGIONS], regions)
        bfaces = mesh[MeshData.BFACE_FACES][mask]
        cells = mesh[MeshData.BFACE_CELLS][mask]
        local_faces = mesh[MeshData.FACE_LOCAL_INDICES][bfaces, 0]
        dofs = [self.cell_dofs[cells[local_faces == j]][:, self.fe.face_closure(mesh.geometry, j)].ravel()
                for j in range(len(mesh.geometry.face_nodes))]
        return np.unique(np.concatenate(dofs)).astype(int)

    def from_conforming(self, values):
        """Maps dof values in conforming numbering onto the numbering of this space."""
        if not self.broken:
            return values
        out = np.zeros(self.ndofs)
        out[self.cell_dofs] = values[self._conforming_cell_dofs]
        return out

    def reconstruction_space(self, target):
        """Cached space of the target family on the same mesh."""
        key = ('space', target)
        if key not in self._reconstruction:
            self._reconstruction[key] = FESpace(target, self.mesh)
        return self._reconstruction[key]

    def cached_reconstruction(self, target, builder):
        """Reconstruction coefficients into target, computed by builder(self, target) on first access."""
        key = ('coefficients', target)
        if key not in self._reconstruction:
            self._reconstruction[key] = builder(self, target)
        return self._reconstruction[key]


### Interpolation

def _evaluate(data, x, time, ncomponents):
    shape = x.shape[:-1]
    values = np.asarray(data.evaluate_points(x.reshape(-1, x.shape[-1]), time))
    return values.reshape(shape + (ncomponents,))


def _interpolate_points(space, data, time):
    """Interpolation by the point functionals of the element, cell by cell."""
    return point_interpolation(space, lambda x: _evaluate(data, x, time, space.fe.ncomponents))


def point_interpolation(space, evaluate):
    """
    Applies the point functionals of the element of space cell by cell.

    Args:
      space (FESpace): Target space.
      evaluate (callable): ``evaluate(x) -> (ncells, m, ncomponents)`` at the physical points
        x of shape (ncells, m, dim) of all cells in cell order.

    Returns:
      np.ndarray: Conforming dof values.
    """
    fe, mesh = space.fe, space.mesh
    functionals = fe.functionals(mesh.geometry)
    points = np.concatenate([p for p, _ in functionals], axis=0)
    weights = np.concatenate([w for _, w in functionals], axis=0)
    owner = np.concatenate([np.full(p.shape[0], i) for i, (p, _) in enumerate(functionals)])
    x, _ = reference_mapping(mesh, np.arange(mesh.ncells), points)
    u = np.asarray(evaluate(x))
    per_point = np.einsum('npc,pc->np', u, weights)
    local = np.zeros((mesh.ncells, len(functionals)))
    np.add.at(local.T, owner, per_point.T)
    values = np.zeros(space._conforming_ndofs)
    values[space._conforming_cell_dofs] = local
    return values


def interpolate(space, data, time=0.):
    """
    Interpolates data into the space.

    Args:
      space (FESpace): Target space.
      data (DataFunction): Function to interpolate.
      time (float): Time at which data is evaluated.

    Returns:
      np.ndarray: Dof values of shape (space.ndofs,).
    """
    return space.from_conforming(space.fe.interpolate(space, data, time))
