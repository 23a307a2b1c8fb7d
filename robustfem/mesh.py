# mesh.py
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
Reference geometries and a read-only mesh with lazily computed topology.

The mesh is queried by key, e.g. ``mesh[MeshData.FACE_NORMALS]``. Each item is computed
on first access and memoized. Reference elements:

- Edge1D: [0, 1]
- Triangle2D: (0,0), (1,0), (0,1)
- Quadrilateral2D: [0, 1]^2
- Tetrahedron3D: (0,0,0), (1,0,0), (0,1,0), (0,0,1)
"""

from enum import Enum, auto

import jax
import jax.numpy as jnp
import numpy as np

from robustfem.utility import ConfigurationError, unique_rows


### Reference geometries

class ElementGeometry:
    """Base class of reference geometries. Geometries are used as classes, not instances."""
    name = None
    dim = 0
    reference_nodes = np.zeros((1, 0))
    face_nodes = ()
    face_geometry = None
    edge_nodes = ()
    volume = 1.
    affine = True

    @staticmethod
    def shape_functions(xi):
        return jnp.ones((1,))


class Vertex0D(ElementGeometry):
    name = 'vertex'


class Edge1D(ElementGeometry):
    name = 'segment'
    dim = 1
    reference_nodes = np.array([[0.], [1.]])
    face_nodes = ((0,), (1,))
    face_geometry = Vertex0D
    edge_nodes = ((0, 1),)

    @staticmethod
    def shape_functions(xi):
        return jnp.array([1. - xi[0], xi[0]])


class Triangle2D(ElementGeometry):
    name = 'triangle'
    dim = 2
    reference_nodes = np.array([[0., 0.], [1., 0.], [0., 1.]])
    face_nodes = ((0, 1), (1, 2), (2, 0))
    face_geometry = Edge1D
    edge_nodes = ((0, 1), (1, 2), (2, 0))
    volume = 0.5

    @staticmethod
    def shape_functions(xi):
        return jnp.array([1. - xi[0] - xi[1], xi[0], xi[1]])


class Quadrilateral2D(ElementGeometry):
    name = 'quadrilateral'
    dim = 2
    reference_nodes = np.array([[0., 0.], [1., 0.], [1., 1.], [0., 1.]])
    face_nodes = ((0, 1), (1, 2), (2, 3), (3, 0))
    face_geometry = Edge1D
    edge_nodes = ((0, 1), (1, 2), (2, 3), (3, 0))
    affine = False

    @staticmethod
    def shape_functions(xi):
        x, y = xi[0], xi[1]
        return jnp.array([(1. - x) * (1. - y), x * (1. - y), x * y, (1. - x) * y])


class Tetrahedron3D(ElementGeometry):
    name = 'tetrahedron'
    dim = 3
    reference_nodes = np.array([[0., 0., 0.], [1., 0., 0.], [0., 1., 0.], [0., 0., 1.]])
    face_nodes = ((0, 1, 2), (0, 1, 3), (1, 2, 3), (0, 2, 3))
    face_geometry = Triangle2D
    edge_nodes = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))
    volume = 1. / 6.

    @staticmethod
    def shape_functions(xi):
        return jnp.array([1. - xi[0] - xi[1] - xi[2], xi[0], xi[1], xi[2]])


def reference_face_normals(geometry):
    """Outward unit normals of the local faces of a reference geometry, shape (nfaces, dim)."""
    nodes = geometry.reference_nodes
    centroid = nodes.mean(axis=0)
    normals = []
    for face in geometry.face_nodes:
        x = nodes[list(face)]
        match geometry.dim:
            case 1:
                n = np.ones(1)
            case 2:
                t = x[1] - x[0]
                n = np.array([t[1], -t[0]])
            case 3:
                n = np.cross(x[1] - x[0], x[2] - x[0])
            case _:
                raise ConfigurationError(f"No faces for geometry {geometry.name}.")
        n = n / np.linalg.norm(n)
        if np.dot(n, x.mean(axis=0) - centroid) < 0:
            n = -n
        normals.append(n)
    return np.asarray(normals)


def reference_face_volumes(geometry):
    """Volumes of the local faces of a reference geometry."""
    nodes = geometry.reference_nodes
    volumes = []
    for face in geometry.face_nodes:
        x = nodes[list(face)]
        match len(face):
            case 1:
                volumes.append(1.)
            case 2:
                volumes.append(np.linalg.norm(x[1] - x[0]))
            case 3:
                volumes.append(0.5 * np.linalg.norm(np.cross(x[1] - x[0], x[2] - x[0])))
    return np.asarray(volumes)


### Mesh

class MeshData(Enum):
    """Keys of the mesh queries."""
    COORDINATES = auto()
    CELL_NODES = auto()
    CELL_REGIONS = auto()
    CELL_VOLUMES = auto()
    CELL_CENTROIDS = auto()
    FACE_NODES = auto()
    FACE_CELLS = auto()
    FACE_LOCAL_INDICES = auto()
    FACE_NORMALS = auto()
    FACE_TANGENTS = auto()
    FACE_VOLUMES = auto()
    FACE_REGIONS = auto()
    CELL_FACES = auto()
    CELL_FACE_SIGNS = auto()
    CELL_FACE_ORIENTATIONS = auto()
    BFACE_FACES = auto()
    BFACE_REGIONS = auto()
    BFACE_CELLS = auto()
    EDGE_NODES = auto()
    EDGE_CELLS = auto()
    EDGE_LOCAL_INDICES = auto()
    EDGE_VOLUMES = auto()
    EDGE_TANGENTS = auto()
    CELL_EDGES = auto()
    CELL_EDGE_SIGNS = auto()


class Mesh:
    """
    Conforming mesh of a single element geometry.

    Cells are reordered on construction such that every cell is positively oriented,
    i.e. the Jacobian of the reference mapping has a positive determinant.

    Args:
      coordinates (array): Node coordinates of shape (n_nodes, dim).
      cells (array): Node ids of each cell of shape (n_cells, n_nodes_per_cell).
      geometry (ElementGeometry): Geometry class of all cells.
      cell_regions (array, optional): Region number of each cell. Defaults to 1.
      bface_nodes (array, optional): Node ids of boundary faces with assigned regions.
      bface_regions (array, optional): Regions of the faces in bface_nodes. Boundary faces that
        are not listed get region 0. If bface_nodes is None, all boundary faces get region 1.

    Attributes:
      parent (Mesh): Mesh this one was refined from, None for a mesh built from scratch.
      parent_cells (np.ndarray): Cell of parent that contains each cell, None without parent.
    """

    _builders = {
        MeshData.CELL_VOLUMES: '_build_cell_volumes',
        MeshData.CELL_CENTROIDS: '_build_cell_centroids',
        MeshData.FACE_NODES: '_build_faces',
        MeshData.FACE_CELLS: '_build_faces',
        MeshData.FACE_LOCAL_INDICES: '_build_faces',
        MeshData.CELL_FACES: '_build_faces',
        MeshData.FACE_NORMALS: '_build_face_geometry',
        MeshData.FACE_TANGENTS: '_build_face_geometry',
        MeshData.FACE_VOLUMES: '_build_face_geometry',
        MeshData.CELL_FACE_SIGNS: '_build_cell_face_signs',
        MeshData.CELL_FACE_ORIENTATIONS: '_build_cell_face_orientations',
        MeshData.BFACE_FACES: '_build_bfaces',
        MeshData.BFACE_REGIONS: '_build_bfaces',
        MeshData.BFACE_CELLS: '_build_bfaces',
        MeshData.FACE_REGIONS: '_build_bfaces',
        MeshData.EDGE_NODES: '_build_edges',
        MeshData.EDGE_CELLS: '_build_edges',
        MeshData.EDGE_LOCAL_INDICES: '_build_edges',
        MeshData.CELL_EDGES: '_build_edges',
        MeshData.CELL_EDGE_SIGNS: '_build_edges',
        MeshData.EDGE_VOLUMES: '_build_edge_geometry',
        MeshData.EDGE_TANGENTS: '_build_edge_geometry',
    }

    def __init__(self, coordinates, cells, geometry, cell_regions=None, bface_nodes=None, bface_regions=None):
        self.coordinates = np.asarray(coordinates, dtype=float)
        if self.coordinates.ndim == 1:
            self.coordinates = self.coordinates[:, None]
        self.geometry = geometry
        self.dim = self.coordinates.shape[1]
        if geometry.dim != self.dim:
            raise ConfigurationError(
                f"Geometry {geometry.name} of dimension {geometry.dim} does not match "
                f"coordinates of dimension {self.dim}.")
        self.cells = _positively_oriented(self.coordinates, np.asarray(cells, dtype=int), geometry)
        if cell_regions is None:
            cell_regions = np.ones(self.cells.shape[0], dtype=int)
        self._bface_nodes = None if bface_nodes is None else np.asarray(bface_nodes, dtype=int)
        self._bface_regions = None if bface_regions is None else np.asarray(bface_regions, dtype=int)
        self.parent = None
        self.parent_cells = None
        self._cache = {
            MeshData.COORDINATES: self.coordinates,
            MeshData.CELL_NODES: self.cells,
            MeshData.CELL_REGIONS: np.asarray(cell_regions, dtype=int),
        }

    def __getitem__(self, item):
        if item not in self._cache:
            getattr(self, self._builders[item])()
        return self._cache[item]

    def __repr__(self):
        return (f"Mesh({self.geometry.name}, {self.nnodes} nodes, {self.ncells} cells, "
                f"dim={self.dim})")

    @property
    def nnodes(self):
        return self.coordinates.shape[0]

    @property
    def ncells(self):
        return self.cells.shape[0]

    @property
    def nfaces(self):
        return self[MeshData.FACE_NODES].shape[0]

    @property
    def nedges(self):
        return self[MeshData.EDGE_NODES].shape[0]

    @property
    def affine(self):
        """True if every cell is an affine image of the reference geometry."""
        if 'affine' not in self._cache:
            if self.geometry.affine:
                self._cache['affine'] = True
            else:
                x = self.coordinates[self.cells]
                defect = x[:, 0] + x[:, 2] - x[:, 1] - x[:, 3]
                scale = np.abs(x).max() + 1.
                self._cache['affine'] = bool(np.all(np.abs(defect) < 1e-12 * scale))
        return self._cache['affine']

    ## Builders

    def _build_cell_volumes(self):
        x = self.coordinates[self.cells]
        match self.geometry.name:
            case 'segment':
                vol = np.abs(x[:, 1, 0] - x[:, 0, 0])
            case 'triangle' | 'quadrilateral':
                xs, ys = x[..., 0], x[..., 1]
                vol = 0.5 * np.abs(np.sum(xs * np.roll(ys, -1, axis=1) - np.roll(xs, -1, axis=1) * ys, axis=1))
            case 'tetrahedron':
                vol = np.abs(np.linalg.det(x[:, 1:] - x[:, :1])) / 6.
            case _:
                raise ConfigurationError(f"Cell volumes not available for {self.geometry.name}.")
        self._cache[MeshData.CELL_VOLUMES] = vol

    def _build_cell_centroids(self):
        self._cache[MeshData.CELL_CENTROIDS] = self.coordinates[self.cells].mean(axis=1)

    def _build_faces(self):
        local = np.asarray(self.geometry.face_nodes)
        nfpc = local.shape[0]
        all_faces = self.cells[:, local].reshape(-1, local.shape[1])
        _, first, inverse = unique_rows(np.sort(all_faces, axis=1))
        nfaces = first.shape[0]

        cell_ids = np.repeat(np.arange(self.ncells), nfpc)
        local_ids = np.tile(np.arange(nfpc), self.ncells)
        face_cells = -np.ones((nfaces, 2), dtype=int)
        face_local = -np.ones((nfaces, 2), dtype=int)
        face_cells[:, 0] = cell_ids[first]
        face_local[:, 0] = local_ids[first]
        second = np.ones(inverse.shape[0], dtype=bool)
        second[first] = False
        face_cells[inverse[second], 1] = cell_ids[second]
        face_local[inverse[second], 1] = local_ids[second]

        self._cache[MeshData.FACE_NODES] = all_faces[first]
        self._cache[MeshData.FACE_CELLS] = face_cells
        self._cache[MeshData.FACE_LOCAL_INDICES] = face_local
        self._cache[MeshData.CELL_FACES] = inverse.reshape(self.ncells, nfpc)

    def _build_face_geometry(self):
        x = self.coordinates[self[MeshData.FACE_NODES]]
        nfaces = x.shape[0]
        match self.dim:
            case 1:
                normals = np.ones((nfaces, 1))
                tangents = np.zeros((nfaces, 1))
                volumes = np.ones(nfaces)
            case 2:
                t = x[:, 1] - x[:, 0]
                volumes = np.linalg.norm(t, axis=1)
                tangents = t / volumes[:, None]
                normals = np.stack([tangents[:, 1], -tangents[:, 0]], axis=1)
            case 3:
                n = np.cross(x[:, 1] - x[:, 0], x[:, 2] - x[:, 0])
                area = np.linalg.norm(n, axis=1)
                normals = n / area[:, None]
                volumes = 0.5 * area
                t = x[:, 1] - x[:, 0]
                tangents = t / np.linalg.norm(t, axis=1)[:, None]
        self._cache[MeshData.FACE_NORMALS] = normals
        self._cache[MeshData.FACE_TANGENTS] = tangents
        self._cache[MeshData.FACE_VOLUMES] = volumes

    def _build_cell_face_signs(self):
        cell_faces = self[MeshData.CELL_FACES]
        face_mid = self.coordinates[self[MeshData.FACE_NODES]].mean(axis=1)
        centroids = self[MeshData.CELL_CENTROIDS]
        normals = self[MeshData.FACE_NORMALS]
        outward = face_mid[cell_faces] - centroids[:, None, :]
        signs = np.sign(np.einsum('cfd,cfd->cf', normals[cell_faces], outward))
        self._cache[MeshData.CELL_FACE_SIGNS] = signs.astype(int)

    def _build_cell_face_orientations(self):
        local = np.asarray(self.geometry.face_nodes)
        local_nodes = self.cells[:, local]
        global_nodes = self[MeshData.FACE_NODES][self[MeshData.CELL_FACES]]
        self._cache[MeshData.CELL_FACE_ORIENTATIONS] = _permutation_signs(local_nodes, global_nodes)

    def _build_bfaces(self):
        face_cells = self[MeshData.FACE_CELLS]
        bfaces = np.where(face_cells[:, 1] < 0)[0]
        if self._bface_nodes is None:
            regions = np.ones(bfaces.shape[0], dtype=int)
        else:
            lookup = {tuple(key): region for key, region in
                      zip(np.sort(self._bface_nodes, axis=1), self._bface_regions)}
            keys = np.sort(self[MeshData.FACE_NODES][bfaces], axis=1)
            regions = np.array([lookup.get(tuple(key), 0) for key in keys], dtype=int)
        face_regions = np.zeros(face_cells.shape[0], dtype=int)
        face_regions[bfaces] = regions
        self._cache[MeshData.BFACE_FACES] = bfaces
        self._cache[MeshData.BFACE_REGIONS] = regions
        self._cache[MeshData.BFACE_CELLS] = face_cells[bfaces, 0]
        self._cache[MeshData.FACE_REGIONS] = face_regions

    def _build_edges(self):
        match self.dim:
            case 2:
                self._cache[MeshData.EDGE_NODES] = self[MeshData.FACE_NODES]
                self._cache[MeshData.EDGE_CELLS] = self[MeshData.FACE_CELLS][:, 0]
                self._cache[MeshData.EDGE_LOCAL_INDICES] = self[MeshData.FACE_LOCAL_INDICES][:, 0]
                self._cache[MeshData.CELL_EDGES] = self[MeshData.CELL_FACES]
                self._cache[MeshData.CELL_EDGE_SIGNS] = self[MeshData.CELL_FACE_ORIENTATIONS]
            case 3:
                local = np.asarray(self.geometry.edge_nodes)
                nepc = local.shape[0]
                all_edges = self.cells[:, local].reshape(-1, 2)
                _, first, inverse = unique_rows(np.sort(all_edges, axis=1))
                edge_nodes = all_edges[first]
                cell_edges = inverse.reshape(self.ncells, nepc)
                self._cache[MeshData.EDGE_NODES] = edge_nodes
                self._cache[MeshData.EDGE_CELLS] = first // nepc
                self._cache[MeshData.EDGE_LOCAL_INDICES] = first % nepc
                self._cache[MeshData.CELL_EDGES] = cell_edges
                self._cache[MeshData.CELL_EDGE_SIGNS] = _permutation_signs(
                    self.cells[:, local], edge_nodes[cell_edges])
            case _:
                raise ConfigurationError("Edges are only defined for two- and three-dimensional meshes.")

    def _build_edge_geometry(self):
        x = self.coordinates[self[MeshData.EDGE_NODES]]
        t = x[:, 1] - x[:, 0]
        volumes = np.linalg.norm(t, axis=1)
        self._cache[MeshData.EDGE_VOLUMES] = volumes
        self._cache[MeshData.EDGE_TANGENTS] = t / volumes[:, None]


def _permutation_signs(local_nodes, global_nodes):
    """
    Sign of the permutation that maps the global node order of subentities onto the local one.

    Args:
      local_nodes (np.ndarray): Node ids in cell-local order, shape (..., k).
      global_nodes (np.ndarray): The same node ids in global order, shape (..., k).

    Returns:
      np.ndarray: +1 for even, -1 for odd permutations.
    """
    k = local_nodes.shape[-1]
    if k == 1:
        return np.ones(local_nodes.shape[:-1], dtype=int)
    positions = np.argmax(local_nodes[..., :, None] == global_nodes[..., None, :], axis=-1)
    inversions = np.zeros(local_nodes.shape[:-1], dtype=int)
    for i in range(k):
        for j in range(i + 1, k):
            inversions += positions[..., i] > positions[..., j]
    return np.where(inversions % 2 == 0, 1, -1)


def _positively_oriented(coordinates, cells, geometry):
    if geometry.dim == 0:
        return cells
    x = coordinates[cells]
    match geometry.name:
        case 'segment':
            det = x[:, 1, 0] - x[:, 0, 0]
            flip = [1, 0]
        case 'triangle':
            det = np.linalg.det(x[:, 1:3] - x[:, :1])
            flip = [0, 2, 1]
        case 'quadrilateral':
            xs, ys = x[..., 0], x[..., 1]
            det = np.sum(xs * np.roll(ys, -1, axis=1) - np.roll(xs, -1, axis=1) * ys, axis=1)
            flip = [0, 3, 2, 1]
        case 'tetrahedron':
            det = np.linalg.det(x[:, 1:4] - x[:, :1])
            flip = [0, 2, 1, 3]
        case _:
            raise ConfigurationError(f"Unsupported cell geometry {geometry.name}.")
    cells = cells.copy()
    negative = det < 0
    cells[negative] = cells[negative][:, flip]
    return cells


def reference_mapping(mesh, cells, xref):
    """
    Maps reference points into the physical cells.

    Args:
      mesh (Mesh): The mesh.
      cells (array): Cell ids of shape (n,).
      xref (array): Reference points of shape (m, d), shared by all cells, or (n, m, d).

    Returns:
      tuple: Physical points (n, m, dim) and Jacobians (n, m, dim, d) with J[i, j] = dx_i/dxi_j.
    """
    cells = np.asarray(cells, dtype=int)
    xref = jnp.asarray(xref, dtype=float)
    if xref.ndim == 2:
        xref = jnp.broadcast_to(xref, (cells.shape[0],) + xref.shape)
    shape_functions = mesh.geometry.shape_functions
    N = jax.vmap(jax.vmap(shape_functions))(xref)
    dN = jax.vmap(jax.vmap(jax.jacfwd(shape_functions)))(xref)
    X = mesh.coordinates[mesh.cells[cells]]
    x = jnp.einsum('nmk,nki->nmi', N, X)
    J = jnp.einsum('nmkj,nki->nmij', dN, X)
    return np.asarray(x), np.asarray(J)


### Assembly items

class AssemblyType(Enum):
    """Mesh entities that are iterated during assembly."""
    ON_CELLS = auto()
    ON_FACES = auto()
    ON_IFACES = auto()
    ON_BFACES = auto()
    ON_EDGES = auto()


def assembly_items(mesh, assembly_type):
    """
    Items of an assembly type with their regions and adjacent cells.

    Returns:
      tuple: (item ids, item regions, cells (n, 2) with -1 where there is no second cell)
    """
    match assembly_type:
        case AssemblyType.ON_CELLS:
            items = np.arange(mesh.ncells)
            cells = np.stack([items, -np.ones_like(items)], axis=1)
            return items, mesh[MeshData.CELL_REGIONS], cells
        case AssemblyType.ON_FACES:
            items = np.arange(mesh.nfaces)
            return items, mesh[MeshData.FACE_REGIONS], mesh[MeshData.FACE_CELLS]
        case AssemblyType.ON_IFACES:
            items = np.where(mesh[MeshData.FACE_CELLS][:, 1] >= 0)[0]
            return items, mesh[MeshData.FACE_REGIONS][items], mesh[MeshData.FACE_CELLS][items]
        case AssemblyType.ON_BFACES:
            items = mesh[MeshData.BFACE_FACES]
            return items, mesh[MeshData.BFACE_REGIONS], mesh[MeshData.FACE_CELLS][items]
        case AssemblyType.ON_EDGES:
            if mesh.dim != 3:
                raise ConfigurationError("Edge assembly is only available on three-dimensional meshes.")
            items = np.arange(mesh.nedges)
            cells = np.stack([mesh[MeshData.EDGE_CELLS], -np.ones_like(items)], axis=1)
            return items, np.zeros(items.shape[0], dtype=int), cells
        case _:
            raise ConfigurationError(f"Unknown assembly type {assembly_type}.")
