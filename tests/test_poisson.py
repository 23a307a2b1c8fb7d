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


def test_harmonic_solution_is_exact():

    import jax
    import numpy as np

    from robustfem.boundarydata import InterpolateDirichletBoundary
    from robustfem.fevector import FEVector
    from robustfem.integrators import L2ErrorIntegrator, evaluate
    from robustfem.mesh import Triangle2D, Quadrilateral2D
    from robustfem.mesher import unit_square
    from robustfem.models import PoissonProblem
    from robustfem.solver import solve
    from robustfem.spaces import FESpace, H1P1
    from robustfem.userdata import DataFunction

    jax.config.update("jax_enable_x64", True)

    u = DataFunction(lambda x: 1. + x[0] + 2. * x[1], dependencies="X", name="u")
    for geometry in (Triangle2D, Quadrilateral2D):
        pde = PoissonProblem()
        pde.add_boundarydata(0, [1, 2, 3, 4], InterpolateDirichletBoundary, u)

        solution = FEVector([FESpace(H1P1(), unit_square(geometry, (4, 3)))])
        result = solve(pde, solution)
        assert result.converged
        assert result.iterations == 1
        assert evaluate(L2ErrorIntegrator(u), solution)[0] < 1e-20


def test_p2_convergence():

    import jax
    import jax.numpy as jnp
    import numpy as np

    from robustfem.boundarydata import HomogeneousDirichletBoundary
    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Identity, Gradient
    from robustfem.integrators import L2ErrorIntegrator, evaluate
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.models import PoissonProblem
    from robustfem.pdeoperators import LinearForm
    from robustfem.solver import solve
    from robustfem.spaces import FESpace, H1P2
    from robustfem.userdata import DataFunction, gradient

    jax.config.update("jax_enable_x64", True)

    u = DataFunction(lambda x: jnp.sin(jnp.pi * x[0]) * jnp.sin(jnp.pi * x[1]), dependencies="X", bonus_quadorder=4,
                     name="u")
    f = DataFunction(lambda x: 2. * jnp.pi**2 * jnp.sin(jnp.pi * x[0]) * jnp.sin(jnp.pi * x[1]), dependencies="X",
                     bonus_quadorder=4, name="f")

    l2_errors, h1_errors = [], []
    for n in (4, 8, 16):
        pde = PoissonProblem()
        pde.add_rhsdata(0, LinearForm(Identity, f))
        pde.add_boundarydata(0, [1, 2, 3, 4], HomogeneousDirichletBoundary)

        solution = FEVector([FESpace(H1P2(), unit_square(Triangle2D, (n, n)))])
        result = solve(pde, solution)
        assert result.converged
        l2_errors.append(np.sqrt(evaluate(L2ErrorIntegrator(u, bonus_quadorder=4), solution).sum()))
        h1_errors.append(np.sqrt(evaluate(L2ErrorIntegrator(gradient(u, 2), Gradient, bonus_quadorder=4),
                                          solution).sum()))

    l2_rates = np.array(l2_errors[:-1]) / np.array(l2_errors[1:])
    h1_rates = np.array(h1_errors[:-1]) / np.array(h1_errors[1:])
    assert np.all(l2_rates > 5.5), l2_rates
    assert np.all(h1_rates > 3.2), h1_rates
    assert l2_errors[-1] < 1e-3


def test_penalty_boundary_values():

    import jax
    import numpy as np

    from robustfem.boundarydata import BestapproxDirichletBoundary, InterpolateDirichletBoundary, boundarydata
    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Identity
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.models import PoissonProblem
    from robustfem.pdeoperators import LinearForm
    from robustfem.solver import solve
    from robustfem.spaces import FESpace, H1P2
    from robustfem.userdata import DataFunction

    jax.config.update("jax_enable_x64", True)

    g = DataFunction(lambda x: x[0]**2 - x[1], dependencies="X", name="g")
    pde = PoissonProblem(diffusion=DataFunction(lambda x: 1. + x[0], dependencies="X", name="kappa"))
    pde.add_rhsdata(0, LinearForm(Identity, 1.))
    pde.add_boundarydata(0, [1, 3], InterpolateDirichletBoundary, g)
    pde.add_boundarydata(0, [2, 4], BestapproxDirichletBoundary, g)

    space = FESpace(H1P2(), unit_square(Triangle2D, (3, 3)))
    solution = FEVector([space])
    result = solve(pde, solution, linsolver="lapack")
    assert result.converged

    # quadratic data is represented exactly by both kinds of boundary data
    dofs, values = boundarydata(solution[0], pde.boundary[0])
    assert np.array_equal(dofs, space.boundary_dofs())
    exact = solution.copy()
    exact[0].interpolate(g)
    assert np.allclose(values, exact.entries[dofs], atol=1e-10)
    assert np.allclose(solution.entries[dofs], values, atol=1e-8)
