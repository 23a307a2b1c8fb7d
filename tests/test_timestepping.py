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


def test_heat_equation_decay():

    import jax
    import jax.numpy as jnp
    import numpy as np

    from robustfem.boundarydata import HomogeneousDirichletBoundary
    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Identity
    from robustfem.integrators import ItemIntegrator, evaluate
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.models import PoissonProblem
    from robustfem.spaces import FESpace, H1P2
    from robustfem.timestepping import BackwardEuler, CrankNicolson, TimeControlSolver
    from robustfem.userdata import DataFunction

    jax.config.update("jax_enable_x64", True)

    u0 = DataFunction(lambda x: jnp.sin(jnp.pi * x[0]) * jnp.sin(jnp.pi * x[1]), dependencies="X", name="u0")
    mesh = unit_square(Triangle2D, (8, 8))
    final_time = 0.05
    exact_decay = np.exp(-2. * np.pi**2 * final_time)

    errors = {}
    for rule in (BackwardEuler(), CrankNicolson()):
        pde = PoissonProblem()
        pde.add_boundarydata(0, [1, 2, 3, 4], HomogeneousDirichletBoundary)
        solution = FEVector([FESpace(H1P2(), mesh)])
        solution[0].interpolate(u0)
        mean = ItemIntegrator(None, [(Identity, 0)])
        initial = evaluate(mean, solution)[0]

        solver = TimeControlSolver(pde, solution, rule)
        solver.advance_until_time(0.01, final_time)
        assert solver.cstep == 5
        assert np.isclose(solver.ctime, final_time)
        assert all(result.converged for result in solver.results)
        errors[rule.name] = abs(evaluate(mean, solution)[0] / initial - exact_decay) / exact_decay

    assert errors["backward_euler"] > 0.05
    assert errors["crank_nicolson"] < 0.02


def test_crank_nicolson_is_exact_for_quadratic_growth():

    import jax
    import numpy as np

    from robustfem.boundarydata import InterpolateDirichletBoundary
    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Identity
    from robustfem.integrators import L2ErrorIntegrator, evaluate
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.models import PoissonProblem
    from robustfem.pdeoperators import LinearForm
    from robustfem.spaces import FESpace, H1P1
    from robustfem.timestepping import CrankNicolson, TimeControlSolver
    from robustfem.userdata import DataFunction

    jax.config.update("jax_enable_x64", True)

    # u = t^2 (1 + x + y) is harmonic in space, du/dt = f
    u = DataFunction(lambda x, t: t**2 * (1. + x[0] + x[1]), dependencies="XT", name="u")
    f = DataFunction(lambda x, t: 2. * t * (1. + x[0] + x[1]), dependencies="XT", bonus_quadorder=1, name="f")

    pde = PoissonProblem()
    pde.add_rhsdata(0, LinearForm(Identity, f))
    pde.add_boundarydata(0, [1, 2, 3, 4], InterpolateDirichletBoundary, u)

    solution = FEVector([FESpace(H1P1(), unit_square(Triangle2D, (3, 3)))])
    solver = TimeControlSolver(pde, solution, CrankNicolson())
    for _ in range(3):
        solver.advance(0.1)
        assert evaluate(L2ErrorIntegrator(u), solution, solver.ctime)[0] < 1e-20


def test_stationarity():

    import jax
    import numpy as np

    from robustfem.boundarydata import HomogeneousDirichletBoundary
    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Identity
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.models import PoissonProblem
    from robustfem.pdeoperators import LinearForm
    from robustfem.solver import solve
    from robustfem.spaces import FESpace, H1P1
    from robustfem.timestepping import TimeControlSolver

    jax.config.update("jax_enable_x64", True)

    pde = PoissonProblem()
    pde.add_rhsdata(0, LinearForm(Identity, 1.))
    pde.add_boundarydata(0, [1, 2, 3, 4], HomogeneousDirichletBoundary)
    space = FESpace(H1P1(), unit_square(Triangle2D, (4, 4)))

    # the stationary limit is the solution of the Poisson problem
    stationary = FEVector([space])
    solve(pde, stationary)

    solution = FEVector([space])
    solver = TimeControlSolver(pde, solution)
    assert solver.advance_until_stationarity(0.1, maxtimesteps=100)
    assert np.allclose(solution.entries, stationary.entries, atol=1e-10)
