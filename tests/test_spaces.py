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


def test_partition_of_unity_and_dual_basis():

    import jax
    import jax.numpy as jnp
    import numpy as np

    from robustfem.mesh import Edge1D, Triangle2D, Quadrilateral2D, Tetrahedron3D
    from robustfem.spaces import H1P1, H1P2, H1P3, H1CR

    jax.config.update("jax_enable_x64", True)

    rng = np.random.default_rng(0)
    elements = [(H1P1(), Edge1D), (H1P2(), Edge1D), (H1P3(), Edge1D),
                (H1P1(), Triangle2D), (H1P2(), Triangle2D), (H1P3(), Triangle2D), (H1CR(), Triangle2D),
                (H1P1(), Quadrilateral2D), (H1P2(), Quadrilateral2D),
                (H1P1(), Tetrahedron3D), (H1P2(), Tetrahedron3D)]

    for fe, geometry in elements:
        basis = fe.reference_basis(geometry)
        for _ in range(5):
            xi = rng.uniform(0., 1. / geometry.dim, geometry.dim)
            values = np.asarray(basis(jnp.asarray(xi)))
            assert values.shape == (fe.ndofs(geometry), 1)
            assert np.isclose(values.sum(), 1., atol=1e-12), f"{fe} on {geometry.name} is no partition of unity"

        # dual basis: basis function i is one at interpolation point i and zero at the others
        points = fe.interpolation_points(geometry)
        V = np.stack([np.asarray(basis(jnp.asarray(p)))[:, 0] for p in points], axis=1)
        assert np.allclose(V, np.eye(len(points)), atol=1e-12)


def test_dof_counts():

    import jax

    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.spaces import FESpace, H1P1, H1P2, H1P3, H1CR, H1BR, L2P0, L2P1, HDIVRT0, HDIVBDM1, HCURLN0

    jax.config.update("jax_enable_x64", True)

    mesh = unit_square(Triangle2D, (2, 2))
    nnodes, nfaces, ncells = 9, 16, 8
    expected = {
        H1P1(): nnodes,
        H1P1(ncomponents=2): 2 * nnodes,
        H1P2(): nnodes + nfaces,
        H1P3(): nnodes + 2 * nfaces + ncells,
        H1CR(ncomponents=2): 2 * nfaces,
        H1BR(): 2 * nnodes + nfaces,
        L2P0(): ncells,
        L2P1(): 3 * ncells,
        HDIVRT0(): nfaces,
        HDIVBDM1(): 2 * nfaces,
        HCURLN0(): nfaces,
    }
    for fe, ndofs in expected.items():
        space = FESpace(fe, mesh)
        assert space.ndofs == ndofs, f"{fe}: {space.ndofs} != {ndofs}"
        assert space.cell_dofs.shape == (ncells, fe.ndofs(Triangle2D))
        assert space.cell_dofs.max() == ndofs - 1

    broken = FESpace(H1P2(), mesh, broken=True)
    assert broken.ndofs == ncells * 6


def test_interpolation_is_exact():

    import jax
    import jax.numpy as jnp
    import numpy as np

    from robustfem.fevector import FEVector
    from robustfem.integrators import L2ErrorIntegrator, evaluate
    from robustfem.mesh import Triangle2D, Quadrilateral2D
    from robustfem.mesher import unit_square
    from robustfem.spaces import FESpace, H1P1, H1P2, H1P3, H1CR, H1BR, L2P0, L2P1, HDIVRT0, HDIVBDM1, HCURLN0
    from robustfem.userdata import DataFunction

    jax.config.update("jax_enable_x64", True)

    def scalar(kernel):
        return DataFunction(kernel, dependencies="X", name="u")

    def vector(kernel):
        return DataFunction(kernel, ncomponents=2, dependencies="X", name="u")

    cubic = scalar(lambda x: x[0]**3 - 2. * x[0] * x[1]**2 + x[1] + 1.)
    quadratic = scalar(lambda x: x[0]**2 - x[0] * x[1] + 2. * x[1]**2 + 1.)
    linear = scalar(lambda x: 1. + 2. * x[0] - x[1])
    constant = scalar(lambda x: 3.)
    linear_vector = vector(lambda x: jnp.stack([x[0] + x[1], 2. * x[0] - x[1] + 1.]))
    rt0_field = vector(lambda x: jnp.stack([1. + 0.5 * x[0], 2. + 0.5 * x[1]]))
    n0_field = vector(lambda x: jnp.stack([1. - 0.5 * x[1], 2. + 0.5 * x[0]]))

    triangles = unit_square(Triangle2D, (3, 3))
    quadrilaterals = unit_square(Quadrilateral2D, (3, 2))
    cases = [
        (H1P1(), triangles, linear),
        (H1P1(), quadrilaterals, scalar(lambda x: 1. + x[0] - x[1] + 3. * x[0] * x[1])),
        (H1P2(), triangles, quadratic),
        (H1P2(), quadrilaterals, quadratic),
        (H1P3(), triangles, cubic),
        (H1CR(ncomponents=2), triangles, linear_vector),
        (H1BR(), triangles, linear_vector),
        (L2P0(), triangles, constant),
        (L2P1(), triangles, linear),
        (HDIVRT0(), triangles, rt0_field),
        (HDIVBDM1(), triangles, linear_vector),
        (HCURLN0(), triangles, n0_field),
    ]
    for fe, mesh, u in cases:
        space = FESpace(fe, mesh)
        solution = FEVector([space])
        solution[0].interpolate(u)
        error = evaluate(L2ErrorIntegrator(u), solution)
        assert np.all(error < 1e-20), f"{fe} does not reproduce {u}: {error}"

    # broken spaces get the same interpolant
    space = FESpace(H1P2(), triangles, broken=True)
    solution = FEVector([space])
    solution[0].interpolate(quadratic)
    assert evaluate(L2ErrorIntegrator(quadratic), solution)[0] < 1e-20


def test_reconstruction_preserves_cell_divergence():

    import jax
    import numpy as np

    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Divergence, ReconstructionDivergence
    from robustfem.integrators import ItemIntegrator
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.spaces import FESpace, H1BR, H1CR, HDIVRT0, HDIVBDM1

    jax.config.update("jax_enable_x64", True)

    mesh = unit_square(Triangle2D, (3, 3))
    rng = np.random.default_rng(1)

    for fe, target in [(H1BR(), HDIVRT0()), (H1BR(), HDIVBDM1()), (H1CR(ncomponents=2), HDIVRT0())]:
        space = FESpace(fe, mesh)
        solution = FEVector([space])
        solution.entries[:] = rng.standard_normal(space.ndofs)

        div = ItemIntegrator(None, [(Divergence, 0)]).integrate_items(solution)
        reconstructed = ItemIntegrator(None, [(ReconstructionDivergence(target), 0)]).integrate_items(solution)
        assert np.allclose(div, reconstructed, atol=1e-12), f"reconstruction of {fe} into {target}"


def test_unregistered_reconstruction_raises():

    import jax
    import pytest

    from robustfem.fevector import FEVector
    from robustfem.functionoperators import ReconstructionIdentity
    from robustfem.integrators import ItemIntegrator
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.spaces import FESpace, H1P2, HDIVRT0
    from robustfem.utility import ConfigurationError

    jax.config.update("jax_enable_x64", True)

    mesh = unit_square(Triangle2D, (1, 1))
    solution = FEVector([FESpace(H1P2(ncomponents=2), mesh)])
    with pytest.raises(ConfigurationError):
        ItemIntegrator(None, [(ReconstructionIdentity(HDIVRT0()), 0)]).integrate_items(solution)


def test_interpolation_onto_refined_meshes():

    import jax
    import numpy as np
    import pytest

    from robustfem.fevector import FEVector
    from robustfem.integrators import interpolate_from_parent, nodevalues
    from robustfem.mesh import Triangle2D, Quadrilateral2D
    from robustfem.mesher import unit_square, uniform_refine
    from robustfem.spaces import FESpace, H1P1, H1P2, L2P1, HDIVRT0
    from robustfem.utility import ConfigurationError

    jax.config.update("jax_enable_x64", True)

    rng = np.random.default_rng(3)
    triangles = unit_square(Triangle2D, (2, 2))
    quadrilaterals = unit_square(Quadrilateral2D, (2, 1))
    cases = [(H1P2(), triangles), (H1P2(ncomponents=2), triangles), (H1P2(), quadrilaterals),
             (H1P1(), quadrilaterals), (L2P1(), triangles)]
    for fe, coarse in cases:
        source = FEVector([FESpace(fe, coarse)])
        source.entries[:] = rng.standard_normal(source.entries.shape[0])
        once = uniform_refine(coarse)
        twice = uniform_refine(once)
        assert once.parent is coarse and twice.parent is once
        assert np.all(once.parent_cells[:coarse.ncells] == np.arange(coarse.ncells))

        direct = FEVector([FESpace(fe, twice)])
        direct.entries[:] = interpolate_from_parent(direct[0].space, source[0])
        # the coarse nodes keep their numbers on the refined meshes
        assert np.allclose(nodevalues(direct[0])[:coarse.nnodes], nodevalues(source[0]), atol=1e-12), fe

        # refining step by step gives the same function
        middle = FEVector([FESpace(fe, once)])
        middle.entries[:] = interpolate_from_parent(middle[0].space, source[0])
        stepwise = interpolate_from_parent(FESpace(fe, twice), middle[0])
        assert np.allclose(stepwise, direct.entries, atol=1e-12), fe

    source = FEVector([FESpace(H1P2(), triangles)])
    with pytest.raises(ConfigurationError):
        interpolate_from_parent(FESpace(H1P2(), unit_square(Triangle2D, (4, 4))), source[0])
    with pytest.raises(ConfigurationError):
        interpolate_from_parent(FESpace(HDIVRT0(), uniform_refine(triangles)), source[0])
