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


def test_pressure_robust_hydrostatics():

    import jax
    import jax.numpy as jnp
    import numpy as np

    from robustfem.boundarydata import HomogeneousDirichletBoundary
    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Identity, ReconstructionIdentity
    from robustfem.integrators import ItemIntegrator, L2NormIntegrator, evaluate
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.models import IncompressibleNavierStokesProblem
    from robustfem.pdeoperators import LinearForm
    from robustfem.solver import solve
    from robustfem.spaces import FESpace, H1BR, L2P0, HDIVRT0
    from robustfem.userdata import DataFunction

    jax.config.update("jax_enable_x64", True)

    # gradient force, the exact velocity vanishes and the pressure is x^3 - 1/4
    f = DataFunction(lambda x: jnp.stack([3. * x[0]**2, 0. * x[1]]), ncomponents=2, dependencies="X",
                     bonus_quadorder=2, name="grad(x^3)")
    mesh = unit_square(Triangle2D, (4, 4))

    norms = {}
    for name, test_operator in (("classical", Identity), ("pressure-robust", ReconstructionIdentity(HDIVRT0()))):
        pde = IncompressibleNavierStokesProblem(viscosity=1e-3, nonlinear=False)
        pde.add_rhsdata(0, LinearForm(test_operator, f))
        pde.add_boundarydata(0, [1, 2, 3, 4], HomogeneousDirichletBoundary)

        solution = FEVector([FESpace(H1BR(), mesh), FESpace(L2P0(), mesh)], ["velocity", "pressure"])
        result = solve(pde, solution)
        assert result.converged
        norms[name] = np.sqrt(evaluate(L2NormIntegrator(Identity, 0), solution).sum())

        mean = evaluate(ItemIntegrator(None, [(Identity, 1)]), solution)[0]
        assert abs(mean) < 1e-10

    assert norms["pressure-robust"] < 1e-10
    assert norms["classical"] > 1e-6


def test_navier_stokes_stagnation_flow():

    import jax
    import jax.numpy as jnp
    import numpy as np

    from robustfem.boundarydata import InterpolateDirichletBoundary
    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Identity
    from robustfem.integrators import L2ErrorIntegrator, L2NormIntegrator, evaluate
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.models import IncompressibleNavierStokesProblem
    from robustfem.pdeoperators import LinearForm
    from robustfem.solver import solve
    from robustfem.spaces import FESpace, H1P1, H1P2
    from robustfem.userdata import DataFunction

    jax.config.update("jax_enable_x64", True)

    # u = (x, -y) is harmonic and divergence free, its convection (x, y) is balanced by f
    u = DataFunction(lambda x: jnp.stack([x[0], -x[1]]), ncomponents=2, dependencies="X", name="u")
    f = DataFunction(lambda x: jnp.stack([x[0], x[1]]), ncomponents=2, dependencies="X", bonus_quadorder=1,
                     name="f")
    mesh = unit_square(Triangle2D, (3, 3))

    for newton, options in ((True, {}), (False, {"anderson_iterations": 5, "anderson_unknowns": [0]})):
        pde = IncompressibleNavierStokesProblem(viscosity=1., nonlinear=True, newton=newton)
        pde.add_rhsdata(0, LinearForm(Identity, f))
        pde.add_boundarydata(0, [1, 2, 3, 4], InterpolateDirichletBoundary, u)

        solution = FEVector([FESpace(H1P2(ncomponents=2), mesh), FESpace(H1P1(), mesh)], ["velocity", "pressure"])
        result = solve(pde, solution, maxiterations=30)
        assert result.converged, options
        assert np.all(evaluate(L2ErrorIntegrator(u), solution) < 1e-18)
        assert evaluate(L2NormIntegrator(Identity, 1), solution)[0] < 1e-18
