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


def test_elasticity_patch_test():

    import jax
    import jax.numpy as jnp
    import numpy as np

    from robustfem.boundarydata import InterpolateDirichletBoundary
    from robustfem.fevector import FEVector
    from robustfem.integrators import L2ErrorIntegrator, evaluate
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.models import LinearElasticityProblem
    from robustfem.solver import solve
    from robustfem.spaces import FESpace, H1P1
    from robustfem.userdata import DataFunction

    jax.config.update("jax_enable_x64", True)

    # linear displacements are in equilibrium without body forces
    u = DataFunction(lambda x: jnp.stack([0.1 * x[0] + 0.2 * x[1], -0.05 * x[0] + 0.3 * x[1]]), ncomponents=2,
                     dependencies="X", name="u")
    for mode in ("plain strain", "plain stress"):
        pde = LinearElasticityProblem(210., 0.3, mode)
        pde.add_boundarydata(0, [1, 2, 3, 4], InterpolateDirichletBoundary, u)
        solution = FEVector([FESpace(H1P1(ncomponents=2), unit_square(Triangle2D, (3, 3)))])
        assert solve(pde, solution).converged
        assert np.all(evaluate(L2ErrorIntegrator(u), solution) < 1e-20)


def test_best_approximations():

    import jax
    import numpy as np

    from robustfem.fevector import FEVector
    from robustfem.integrators import L2ErrorIntegrator, evaluate
    from robustfem.mesh import Triangle2D, Quadrilateral2D
    from robustfem.mesher import unit_square
    from robustfem.models import L2BestapproximationProblem, H1BestapproximationProblem
    from robustfem.solver import solve
    from robustfem.spaces import FESpace, H1P2, L2P1
    from robustfem.userdata import DataFunction, gradient

    jax.config.update("jax_enable_x64", True)

    quadratic = DataFunction(lambda x: x[0]**2 - 3. * x[0] * x[1] + x[1] + 2., dependencies="X", bonus_quadorder=2,
                             name="u")
    linear = DataFunction(lambda x: 2. * x[0] - x[1] + 1., dependencies="X", bonus_quadorder=1, name="u")

    for geometry in (Triangle2D, Quadrilateral2D):
        mesh = unit_square(geometry, (3, 2))
        solution = FEVector([FESpace(H1P2(), mesh)])
        assert solve(L2BestapproximationProblem(quadratic), solution).converged
        assert evaluate(L2ErrorIntegrator(quadratic), solution)[0] < 1e-20

        solution = FEVector([FESpace(H1P2(), mesh)])
        pde = H1BestapproximationProblem(gradient(quadratic, 2), quadratic, [1, 2, 3, 4])
        assert solve(pde, solution).converged
        assert evaluate(L2ErrorIntegrator(quadratic), solution)[0] < 1e-20

    # discontinuous space
    solution = FEVector([FESpace(L2P1(), unit_square(Triangle2D, (2, 2)))])
    assert solve(L2BestapproximationProblem(linear), solution).converged
    assert evaluate(L2ErrorIntegrator(linear), solution)[0] < 1e-20


def test_pde_description():

    import jax
    import pytest

    from robustfem.boundarydata import BoundaryData, InterpolateDirichletBoundary
    from robustfem.functionoperators import Identity
    from robustfem.models import IncompressibleNavierStokesProblem, LinearElasticityProblem, PoissonProblem
    from robustfem.pdeoperators import AssemblyAlways, LinearForm, ReactionOperator
    from robustfem.userdata import DataFunction
    from robustfem.utility import ConfigurationError

    jax.config.update("jax_enable_x64", True)

    pde = PoissonProblem()
    assert pde.nunknowns == 1 and not pde.nonlinear
    with pytest.raises(ConfigurationError):
        pde.add_operator((0, 1), ReactionOperator())
    with pytest.raises(ConfigurationError):
        pde.add_rhsdata(1, LinearForm(Identity, 1.))
    with pytest.raises(ConfigurationError):
        BoundaryData((1,), InterpolateDirichletBoundary)
    with pytest.raises(ConfigurationError):
        LinearElasticityProblem(1., 0.3, mode="plain nonsense")

    index = pde.add_operator((0, 0), ReactionOperator(2.))
    pde.replace_operator((0, 0), index, ReactionOperator(3., name="mass"))
    pde.add_rhsdata(0, LinearForm(Identity, DataFunction(lambda x, t: x[0] * t, dependencies="XT", name="f")))
    pde.add_boundarydata(0, [1, 3], InterpolateDirichletBoundary, DataFunction(0., name="zero"))
    text = str(pde)
    assert "Poisson problem" in text
    assert "mass" in text
    assert "EACH_TIME_STEP" in text
    assert "INTERPOLATE on regions [1, 3], zero" in text

    stokes = IncompressibleNavierStokesProblem(nonlinear=False)
    assert stokes.nunknowns == 2 and not stokes.nonlinear
    assert stokes.algebraic == [False, True]
    assert len(stokes.constraints) == 1

    picard = IncompressibleNavierStokesProblem(nonlinear=True, newton=False)
    assert picard.nonlinear
    convection = picard.lhs[(0, 0)][-1]
    assert convection.trigger == AssemblyAlways
