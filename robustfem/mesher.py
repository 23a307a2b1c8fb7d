# mesher.py
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
Module for generation of meshes.

Supports structured first order meshes on line, quadrilateral and hexahedral domains with
an optional subdivision into simplices, and uniform refinement of segment, triangle and
quadrilateral meshes. For complex meshes, consider using e.g. GMSH and pass the connectivity
and node coordinates to robustfem.mesh.Mesh.

Boundary regions of the generated meshes:
  - 1D: 1 = left, 2 = right
  - 2D: 1 = bottom, 2 = right, 3 = top, 4 = left
  - 3D: 1 = bottom, 2 = front, 3 = right, 4 = back, 5 = left, 6 = top
"""

import jax
import jax.numpy as jnp
import numpy as np

from robustfem.mesh import Mesh, MeshData, Edge1D, Triangle2D, Quadrilateral2D, Tetrahedron3D
from robustfem.utility import ConfigurationError


def structured_mesh(n_elements, vertices, element_type):
  """
    Generate a structured 1D, 2D or 3D mesh over a line, quadrilateral or hexahedral domain,
    with an optional subdivision into simplex (triangular/tetrahedral) elements.

    Parameters
    ----------
    n_elements : tuple of int
        Number of elements along each reference direction, e.g. (nx, ny) in 2D.
    vertices : array-like
        For 1D a 2x1 array, for 2D a 4x2 array in anti-clockwise order and for 3D an 8x3 array
        (bottom face anti-clockwise, then top face) defining the corner points of the domain.
    element_type : str
        'line' in 1D, 'quad' or 'tri' in 2D, 'tet' in 3D.

    Returns
    -------
    Mesh
        Mesh with boundary regions assigned according to the module docstring.

    Notes
    -----
    The mapping from the reference domain [-1, 1]^dim to the physical domain is performed
    using multilinear interpolation of the vertices.
  """
  vertices = jnp.asarray(vertices, dtype=float)
  if vertices.ndim == 1:
    vertices = vertices[:, None]
  dim = vertices.shape[1]
  n_elements = tuple(int(n) for n in n_elements)

  # ----- 1D Mesh Generation -----
  if dim == 1:
    if element_type != "line":
      raise ConfigurationError("For 1D, element_type must be 'line'.")
    nx, = n_elements
    s = jnp.linspace(-1, 1, nx + 1)
    coords = ((1 - s[:, None]) * vertices[0] + (1 + s[:, None]) * vertices[1]) / 2
    elements = np.stack([np.arange(nx), np.arange(1, nx + 1)], axis=1)
    grid_ids = np.arange(nx + 1)[:, None]
    return _with_boundary_regions(np.asarray(coords), elements, Edge1D, grid_ids, n_elements)

  # ----- 2D Mesh Generation -----
  elif dim == 2:
    if element_type not in ["quad", "tri"]:
      raise ConfigurationError("For 2D, element_type must be either 'quad' or 'tri'.")
    nx, ny = n_elements

    # Create a reference grid in [-1,1] x [-1,1]
    s = jnp.linspace(-1, 1, nx + 1)
    t = jnp.linspace(-1, 1, ny + 1)
    S, T = jnp.meshgrid(s, t, indexing="ij")
    ref_coords = jnp.column_stack([S.ravel(), T.ravel()])

    # Bilinear mapping from reference coordinates to physical coordinates.
    def bilinear_interpolate(pt):
      s, t = pt
      return ((1 - s) * (1 - t) * vertices[0] + (1 + s) * (1 - t) * vertices[1] + (1 + s) * (1 + t) * vertices[2] +
              (1 - s) * (1 + t) * vertices[3]) / 4

    coords = jax.vmap(bilinear_interpolate)(ref_coords)

    I, J = np.meshgrid(np.arange(nx), np.arange(ny), indexing="ij")
    I, J = I.ravel(), J.ravel()
    quads = np.stack([
        I * (ny + 1) + J,
        (I + 1) * (ny + 1) + J,
        (I + 1) * (ny + 1) + (J + 1),
        I * (ny + 1) + (J + 1),
    ], axis=1)

    if element_type == "quad":
      elements, geometry = quads, Quadrilateral2D
    else:
      # Split each quadrilateral into two triangles along the diagonal from the first to the third node.
      elements = np.concatenate([quads[:, [0, 1, 2]], quads[:, [0, 2, 3]]], axis=0)
      geometry = Triangle2D

    GI, GJ = np.meshgrid(np.arange(nx + 1), np.arange(ny + 1), indexing="ij")
    grid_ids = np.stack([GI.ravel(), GJ.ravel()], axis=1)
    return _with_boundary_regions(np.asarray(coords), elements, geometry, grid_ids, n_elements)

  # ----- 3D Mesh Generation -----
  elif dim == 3:
    if element_type != "tet":
      raise ConfigurationError("For 3D, element_type must be 'tet'.")
    nx, ny, nz = n_elements

    s = jnp.linspace(-1, 1, nx + 1)
    t = jnp.linspace(-1, 1, ny + 1)
    u = jnp.linspace(-1, 1, nz + 1)
    S, T, U = jnp.meshgrid(s, t, u, indexing="ij")
    ref_coords = jnp.column_stack([S.ravel(), T.ravel(), U.ravel()])

    # Trilinear mapping from reference coordinates to physical coordinates.
    def trilinear_interpolate(pt):
      s, t, u = pt
      return ((1 - s) * (1 - t) * (1 - u) * vertices[0] + (1 + s) * (1 - t) * (1 - u) * vertices[1] + (1 + s) *
              (1 + t) * (1 - u) * vertices[2] + (1 - s) * (1 + t) * (1 - u) * vertices[3] + (1 - s) * (1 - t) *
              (1 + u) * vertices[4] + (1 + s) * (1 - t) * (1 + u) * vertices[5] + (1 + s) * (1 + t) *
              (1 + u) * vertices[6] + (1 - s) * (1 + t) * (1 + u) * vertices[7]) / 8

    coords = jax.vmap(trilinear_interpolate)(ref_coords)

    def node_id(i, j, k):
      return i * (ny + 1) * (nz + 1) + j * (nz + 1) + k

    I, J, K = np.meshgrid(np.arange(nx), np.arange(ny), np.arange(nz), indexing="ij")
    I, J, K = I.ravel(), J.ravel(), K.ravel()
    n0, n1, n2, n3 = node_id(I, J, K), node_id(I + 1, J, K), node_id(I + 1, J + 1, K), node_id(I, J + 1, K)
    n4, n5, n6, n7 = (node_id(I, J, K + 1), node_id(I + 1, J, K + 1), node_id(I + 1, J + 1, K + 1),
                      node_id(I, J + 1, K + 1))

    # Subdivision of each brick into 6 tetrahedra around the diagonal n0-n6
    tets = [
        [n0, n1, n2, n6],
        [n0, n2, n3, n6],
        [n0, n3, n7, n6],
        [n0, n7, n4, n6],
        [n0, n4, n5, n6],
        [n0, n5, n1, n6],
    ]
    elements = np.stack([np.stack(tet, axis=1) for tet in tets], axis=1).reshape(-1, 4)

    GI, GJ, GK = np.meshgrid(np.arange(nx + 1), np.arange(ny + 1), np.arange(nz + 1), indexing="ij")
    grid_ids = np.stack([GI.ravel(), GJ.ravel(), GK.ravel()], axis=1)
    return _with_boundary_regions(np.asarray(coords), elements, Tetrahedron3D, grid_ids, n_elements)

  else:
    raise ConfigurationError("Unsupported dimension: vertices must have 1, 2 or 3 columns.")


def _with_boundary_regions(coords, elements, geometry, grid_ids, n_elements):
  """
    Builds the mesh and assigns boundary regions by the reference grid indices of the face nodes.
  """
  mesh = Mesh(coords, elements, geometry)
  bface_nodes = mesh[MeshData.FACE_NODES][mesh[MeshData.BFACE_FACES]]
  ids = grid_ids[bface_nodes]
  dim = grid_ids.shape[1]

  # (direction, grid index, region) for each boundary plane
  match dim:
    case 1:
      planes = [(0, 0, 1), (0, n_elements[0], 2)]
    case 2:
      planes = [(1, 0, 1), (0, n_elements[0], 2), (1, n_elements[1], 3), (0, 0, 4)]
    case 3:
      planes = [(2, 0, 1), (1, 0, 2), (0, n_elements[0], 3), (1, n_elements[1], 4), (0, 0, 5),
                (2, n_elements[2], 6)]

  regions = np.zeros(bface_nodes.shape[0], dtype=int)
  for direction, index, region in planes:
    on_plane = np.all(ids[:, :, direction] == index, axis=1)
    regions = np.where((regions == 0) & on_plane, region, regions)
  return Mesh(coords, mesh.cells, geometry, bface_nodes=bface_nodes, bface_regions=regions)


def unit_interval(n_elements=1):
  """Uniform mesh of [0, 1] with n_elements segments."""
  return structured_mesh((n_elements,), [[0.], [1.]], "line")


def unit_square(geometry=Triangle2D, n_elements=(1, 1)):
  """Structured mesh of the unit square with triangles or quadrilaterals."""
  element_type = "tri" if geometry is Triangle2D else "quad"
  return structured_mesh(n_elements, [[0., 0.], [1., 0.], [1., 1.], [0., 1.]], element_type)


def unit_cube(n_elements=(1, 1, 1)):
  """Structured tetrahedral mesh of the unit cube."""
  vertices = [[0., 0., 0.], [1., 0., 0.], [1., 1., 0.], [0., 1., 0.],
              [0., 0., 1.], [1., 0., 1.], [1., 1., 1.], [0., 1., 1.]]
  return structured_mesh(n_elements, vertices, "tet")


def reference_domain(geometry):
  """Mesh consisting of the reference element only. All boundary faces get region 1."""
  cells = np.arange(geometry.reference_nodes.shape[0])[None, :]
  return Mesh(geometry.reference_nodes, cells, geometry)


def uniform_refine(mesh, nrefinements=1):
  """
    Uniform refinement of segment, triangle and quadrilateral meshes.

    Each cell is split into 2 (segments) or 4 (triangles and quadrilaterals) children that
    inherit the cell region; boundary faces inherit their region.

    Args:
      mesh (Mesh): Mesh to refine.
      nrefinements (int): Number of refinement steps.

    Returns:
      Mesh: Refined mesh.
  """
  for _ in range(nrefinements):
    mesh = _refine_once(mesh)
  return mesh


def _refine_once(mesh):
  x = mesh.coordinates
  cells = mesh.cells
  regions = mesh[MeshData.CELL_REGIONS]
  bfaces = mesh[MeshData.BFACE_FACES]
  bregions = mesh[MeshData.BFACE_REGIONS]
  face_nodes = mesh[MeshData.FACE_NODES]

  match mesh.geometry.name:
    case 'segment':
      mid = mesh.nnodes + np.arange(mesh.ncells)
      coords = np.concatenate([x, x[cells].mean(axis=1)], axis=0)
      new_cells = np.concatenate([np.stack([cells[:, 0], mid], axis=1),
                                  np.stack([mid, cells[:, 1]], axis=1)], axis=0)
      new_regions = np.concatenate([regions, regions])
      refined = Mesh(coords, new_cells, mesh.geometry, new_regions, face_nodes[bfaces], bregions)
      nchildren = 2

    case 'triangle' | 'quadrilateral':
      cell_faces = mesh[MeshData.CELL_FACES]
      m = mesh.nnodes + cell_faces
      coords = [x, x[face_nodes].mean(axis=1)]
      n0, n1, n2 = cells[:, 0], cells[:, 1], cells[:, 2]
      if mesh.geometry.name == 'triangle':
        children = [
            [n0, m[:, 0], m[:, 2]],
            [m[:, 0], n1, m[:, 1]],
            [m[:, 2], m[:, 1], n2],
            [m[:, 0], m[:, 1], m[:, 2]],
        ]
      else:
        n3 = cells[:, 3]
        c = mesh.nnodes + mesh.nfaces + np.arange(mesh.ncells)
        coords.append(x[cells].mean(axis=1))
        children = [
            [n0, m[:, 0], c, m[:, 3]],
            [m[:, 0], n1, m[:, 1], c],
            [c, m[:, 1], n2, m[:, 2]],
            [m[:, 3], c, m[:, 2], n3],
        ]
      new_cells = np.concatenate([np.stack(child, axis=1) for child in children], axis=0)
      new_regions = np.tile(regions, len(children))
      bmid = mesh.nnodes + bfaces
      new_bfaces = np.concatenate([np.stack([face_nodes[bfaces, 0], bmid], axis=1),
                                   np.stack([bmid, face_nodes[bfaces, 1]], axis=1)], axis=0)
      new_bregions = np.concatenate([bregions, bregions])
      refined = Mesh(np.concatenate(coords, axis=0), new_cells, mesh.geometry, new_regions, new_bfaces, new_bregions)
      nchildren = len(children)

    case _:
      raise ConfigurationError(f"Uniform refinement is not implemented for {mesh.geometry.name} meshes.")

  # child k of cell c is cell k * ncells + c
  refined.parent = mesh
  refined.parent_cells = np.tile(np.arange(mesh.ncells), nchildren)
  return refined
