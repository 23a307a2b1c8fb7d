# quadrature.py
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
Integration points and weights on the reference geometries.

The rules integrate polynomials up to the requested total degree exactly. The weights sum
up to the volume of the reference geometry. Simplex rules beyond the tabulated orders are
collapsed (Duffy) Gauss-Legendre rules.
"""

from functools import lru_cache

import jax
import jax.numpy as jnp
import numpy as np

from robustfem.mesh import Vertex0D, Edge1D, Triangle2D, Quadrilateral2D, Tetrahedron3D, MeshData, reference_mapping
from robustfem.utility import ConfigurationError


def gauss_legendre_1d(order):
    """
    Gauss-Legendre rule on [0, 1].

    Args:
      order (int): Polynomial degree that has to be integrated exactly.

    Returns:
      tuple: (roots, weights) as numpy arrays.
    """
    n_points = max(1, int(np.ceil((order + 1) / 2)))
    roots, weights = np.polynomial.legendre.leggauss(n_points)
    return (roots + 1.) / 2., weights / 2.


def tensor_product_rule(roots_1d, weights_1d, dim):
    """
    Generates integration points and weights for tensor product quadrature rules.

    Args:
      roots_1d (array): 1D quadrature roots.
      weights_1d (array): 1D quadrature weights.
      dim (int): Dimensionality of the quadrature rule.

    Returns:
      tuple: Integration points of shape (n**dim, dim) and weights of shape (n**dim,).
    """
    grids = np.meshgrid(*([roots_1d] * dim), indexing="ij")
    x_int = np.stack([grid.ravel() for grid in grids], axis=-1)
    w_int = weights_1d
    for _ in range(dim - 1):
        w_int = np.outer(w_int, weights_1d).ravel()
    return x_int, w_int


def int_pts_ref_tri(order):
    """
    Integration points and weights on the reference triangle.

    Args:
      order (int): Polynomial degree that has to be integrated exactly.

    Returns:
      tuple: (points of shape (n, 2), weights of shape (n,))
    """
    match order:
        case 0 | 1:
            return np.array([[1. / 3., 1. / 3.]]), np.array([0.5])
        case 2:
            x_int = np.array([[1. / 6., 1. / 6.], [2. / 3., 1. / 6.], [1. / 6., 2. / 3.]])
            return x_int, np.full(3, 1. / 6.)
        case _:
            u, wu = gauss_legendre_1d(order + 1)
            v, wv = gauss_legendre_1d(order)
            U, V = np.meshgrid(u, v, indexing="ij")
            x_int = np.stack([U.ravel(), (V * (1. - U)).ravel()], axis=-1)
            w_int = (np.outer(wu, wv) * (1. - U)).ravel()
            return x_int, w_int


def int_pts_ref_tet(order):
    """
    Integration points and weights on the reference tetrahedron.

    Args:
      order (int): Polynomial degree that has to be integrated exactly.

    Returns:
      tuple: (points of shape (n, 3), weights of shape (n,))
    """
    if order <= 1:
        return np.array([[0.25, 0.25, 0.25]]), np.array([1. / 6.])
    u, wu = gauss_legendre_1d(order + 2)
    v, wv = gauss_legendre_1d(order + 1)
    w, ww = gauss_legendre_1d(order)
    U, V, W = np.meshgrid(u, v, w, indexing="ij")
    x_int = np.stack([U.ravel(), (V * (1. - U)).ravel(), (W * (1. - U) * (1. - V)).ravel()], axis=-1)
    weights = wu[:, None, None] * wv[None, :, None] * ww[None, None, :] * (1. - U)**2 * (1. - V)
    return x_int, weights.ravel()


class QuadratureRule:
    """
    Quadrature rule on a reference geometry.

    Attributes:
      geometry (ElementGeometry): Reference geometry.
      order (int): Polynomial degree integrated exactly.
      points (np.ndarray): Points of shape (n_points, geometry.dim).
      weights (np.ndarray): Weights of shape (n_points,), summing to the reference volume.
    """

    def __init__(self, geometry, order):
        order = max(int(order), 0)
        self.geometry = geometry
        self.order = order
        match geometry.name:
            case Vertex0D.name:
                self.points, self.weights = np.zeros((1, 0)), np.ones(1)
            case Edge1D.name:
                roots, weights = gauss_legendre_1d(order)
                self.points, self.weights = roots[:, None], weights
            case Quadrilateral2D.name:
                self.points, self.weights = tensor_product_rule(*gauss_legendre_1d(order), 2)
            case Triangle2D.name:
                self.points, self.weights = int_pts_ref_tri(order)
            case Tetrahedron3D.name:
                self.points, self.weights = int_pts_ref_tet(order)
            case _:
                raise ConfigurationError(f"No quadrature rule for geometry {geometry.name}.")

    @property
    def npoints(self):
        return self.weights.shape[0]

    def __repr__(self):
        return f"QuadratureRule({self.geometry.name}, order={self.order}, npoints={self.npoints})"


@lru_cache(maxsize=None)
def quadrature_rule(geometry, order):
    """Cached QuadratureRule of the given geometry and order."""
    return QuadratureRule(geometry, order)


def face_quadrature(mesh, faces, order):
    """
    Quadrature on physical faces with points ordered by the global face node order.

    Args:
      mesh (Mesh): The mesh.
      faces (array): Face ids of shape (n,).
      order (int): Polynomial degree that has to be integrated exactly.

    Returns:
      tuple: Points (n, m, dim), weights (n, m) scaled by the face volumes and barycentric
      coordinates (m, nodes_per_face) with respect to the global face nodes.
    """
    faces = np.asarray(faces, dtype=int)
    face_geometry = mesh.geometry.face_geometry
    rule = quadrature_rule(face_geometry, order)
    lam = np.asarray(jax.vmap(face_geometry.shape_functions)(jnp.asarray(rule.points)))
    X = mesh.coordinates[mesh[MeshData.FACE_NODES][faces]]
    x = np.einsum('mk,nkd->nmd', lam, X)
    scale = mesh[MeshData.FACE_VOLUMES][faces] / face_geometry.volume
    return x, scale[:, None] * rule.weights[None, :], lam


def cell_quadrature(mesh, cells, order):
    """
    Quadrature on physical cells.

    Returns:
      tuple: Points (n, m, dim) and weights (n, m) including the Jacobian determinant.
    """
    rule = quadrature_rule(mesh.geometry, order)
    x, J = reference_mapping(mesh, cells, rule.points)
    return x, np.abs(np.linalg.det(J)) * rule.weights[None, :]
