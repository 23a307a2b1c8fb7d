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


def test_quadrature_exactness():

    from math import factorial

    import jax
    import numpy as np

    from robustfem.mesh import Edge1D, Triangle2D, Quadrilateral2D, Tetrahedron3D
    from robustfem.quadrature import quadrature_rule

    jax.config.update("jax_enable_x64", True)

    # Monomial moments on the reference simplices: int x^a y^b (z^c) = a! b! c! / (a + b + c + dim)!
    def simplex_moment(exponents):
        dim = len(exponents)
        return np.prod([factorial(e) for e in exponents]) / factorial(sum(exponents) + dim)

    for order in range(0, 9):
        # segment
        rule = quadrature_rule(Edge1D, order)
        for a in range(order + 1):
            approx = np.sum(rule.weights * rule.points[:, 0]**a)
            assert np.isclose(approx, 1. / (a + 1), rtol=1e-12, atol=1e-14)

        # unit square
        rule = quadrature_rule(Quadrilateral2D, order)
        for a in range(order + 1):
            for b in range(order + 1 - a):
                approx = np.sum(rule.weights * rule.points[:, 0]**a * rule.points[:, 1]**b)
                assert np.isclose(approx, 1. / ((a + 1) * (b + 1)), rtol=1e-12, atol=1e-14)

        # triangle
        rule = quadrature_rule(Triangle2D, order)
        for a in range(order + 1):
            for b in range(order + 1 - a):
                approx = np.sum(rule.weights * rule.points[:, 0]**a * rule.points[:, 1]**b)
                assert np.isclose(approx, simplex_moment((a, b)), rtol=1e-12, atol=1e-14), \
                    f"triangle rule of order {order} fails for x^{a} y^{b}"

    # tetrahedron (lower orders suffice, the collapsed rule grows cubically)
    for order in range(0, 6):
        rule = quadrature_rule(Tetrahedron3D, order)
        for a in range(order + 1):
            for b in range(order + 1 - a):
                for c in range(order + 1 - a - b):
                    x = rule.points
                    approx = np.sum(rule.weights * x[:, 0]**a * x[:, 1]**b * x[:, 2]**c)
                    assert np.isclose(approx, simplex_moment((a, b, c)), rtol=1e-12, atol=1e-14)


def test_weights_sum_to_reference_volume():

    import jax
    import numpy as np

    from robustfem.mesh import Edge1D, Triangle2D, Quadrilateral2D, Tetrahedron3D
    from robustfem.quadrature import quadrature_rule

    jax.config.update("jax_enable_x64", True)

    for geometry in (Edge1D, Triangle2D, Quadrilateral2D, Tetrahedron3D):
        for order in (0, 1, 2, 5):
            rule = quadrature_rule(geometry, order)
            assert np.isclose(rule.weights.sum(), geometry.volume)
            assert rule.points.shape == (rule.npoints, geometry.dim)
