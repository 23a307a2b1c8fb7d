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


def test_unit_square_topology():

    import jax
    import numpy as np

    from robustfem.mesh import MeshData, Triangle2D, Quadrilateral2D
    from robustfem.mesher import unit_square, uniform_refine

    jax.config.update("jax_enable_x64", True)

    mesh = unit_square(Triangle2D, (2, 2))
    assert mesh.nnodes == 9
    assert mesh.ncells == 8
    assert mesh.nfaces == 16
    assert np.isclose(mesh[MeshData.CELL_VOLUMES].sum(), 1.)

    # boundary faces and their regions (1 bottom, 2 right, 3 top, 4 left)
    bfaces = mesh[MeshData.BFACE_FACES]
    regions = mesh[MeshData.BFACE_REGIONS]
    assert bfaces.shape[0] == 8
    assert np.all(np.bincount(regions, minlength=5)[1:] == 2)
    assert np.isclose(mesh[MeshData.FACE_VOLUMES][bfaces].sum(), 4.)
    x = mesh.coordinates[mesh[MeshData.FACE_NODES][bfaces]].mean(axis=1)
    assert np.allclose(x[regions == 1, 1], 0.)
    assert np.allclose(x[regions == 2, 0], 1.)
    assert np.allclose(x[regions == 3, 1], 1.)
    assert np.allclose(x[regions == 4, 0], 0.)

    # face cells: smaller cell first, -1 marks boundary faces
    face_cells = mesh[MeshData.FACE_CELLS]
    interior = face_cells[:, 1] >= 0
    assert np.all(face_cells[interior, 0] < face_cells[interior, 1])
    assert np.sum(~interior) == 8

    # unit normals, orthogonal to the faces
    normals = mesh[MeshData.FACE_NORMALS]
    tangents = mesh[MeshData.FACE_TANGENTS]
    assert np.allclose(np.linalg.norm(normals, axis=1), 1.)
    assert np.allclose(np.einsum('fd,fd->f', normals, tangents), 0.)

    # every face normal is outward for exactly one of its cells
    signs = mesh[MeshData.CELL_FACE_SIGNS]
    cell_faces = mesh[MeshData.CELL_FACES]
    summed = np.zeros(mesh.nfaces)
    np.add.at(summed, cell_faces.ravel(), signs.ravel())
    assert np.all(summed[interior] == 0)
    assert np.all(np.abs(summed[~interior]) == 1)

    # refinement keeps the regions
    fine = uniform_refine(mesh, 2)
    assert fine.ncells == 8 * 16
    assert np.isclose(fine[MeshData.CELL_VOLUMES].sum(), 1.)
    assert np.all(np.bincount(fine[MeshData.BFACE_REGIONS], minlength=5)[1:] == 8)

    quads = unit_square(Quadrilateral2D, (3, 2))
    assert quads.ncells == 6
    assert quads.affine
    assert np.isclose(quads[MeshData.CELL_VOLUMES].sum(), 1.)
    assert uniform_refine(quads).ncells == 24


def test_positive_orientation():

    import jax
    import numpy as np

    from robustfem.mesh import Mesh, MeshData, Triangle2D, reference_mapping

    jax.config.update("jax_enable_x64", True)

    # second cell is given clockwise
    coordinates = np.array([[0., 0.], [1., 0.], [1., 1.], [0., 1.]])
    cells = np.array([[0, 1, 2], [0, 3, 2]])
    mesh = Mesh(coordinates, cells, Triangle2D)

    _, J = reference_mapping(mesh, np.arange(2), np.array([[1. / 3., 1. / 3.]]))
    assert np.all(np.linalg.det(J) > 0.)
    assert np.allclose(mesh[MeshData.CELL_VOLUMES], 0.5)
    # without explicit boundary faces all boundary faces get region 1
    assert np.all(mesh[MeshData.BFACE_REGIONS] == 1)
