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
Planar lattice flow: u = (sin(2 pi x) sin(2 pi y), cos(2 pi x) cos(2 pi y)) is a steady solution
of the Navier-Stokes equations with f = -nu lap(u), its convection term is balanced by the
pressure gradient. Bernardi-Raugel velocities and piecewise constant pressures with the
classical and the pressure-robust (RT0 reconstruction in the convection term and the right-hand
side) discretization are compared for decreasing viscosities. The velocity error of the
pressure-robust scheme does not depend on the viscosity.
"""

if __name__ == "__main__":

  import jax
  from jax import config
  import jax.numpy as jnp
  import numpy as np

  from robustfem import boundarydata, fevector, functionoperators, integrators, mesher, models, pdeoperators, solver, spaces, userdata
  from robustfem.mesh import Triangle2D

  config.update("jax_enable_x64", True)


  ### Exact solution
  def velocity(x):
    s0, s1 = jnp.sin(2 * jnp.pi * x[0]), jnp.sin(2 * jnp.pi * x[1])
    c0, c1 = jnp.cos(2 * jnp.pi * x[0]), jnp.cos(2 * jnp.pi * x[1])
    return jnp.stack([s0 * s1, c0 * c1])

  u = userdata.DataFunction(velocity, ncomponents=2, dependencies="X", bonus_quadorder=4, name="u")
  mesh = mesher.unit_square(Triangle2D, (16, 16))
  reconstruction = functionoperators.ReconstructionIdentity(spaces.HDIVRT0())


  ### Viscosity study
  print(f"{'viscosity':>10} {'classical':>12} {'robust':>12}")
  for viscosity in (1., 1e-2, 1e-4):
    f = userdata.DataFunction(lambda x, nu=viscosity: 8. * jnp.pi**2 * nu * velocity(x), ncomponents=2,
                              dependencies="X", bonus_quadorder=4, name="f")
    errors = []
    for test_operator in (functionoperators.Identity, reconstruction):
      pde = models.IncompressibleNavierStokesProblem(viscosity=viscosity, nonlinear=True, newton=True,
                                                     test_operator=test_operator)
      pde.add_rhsdata(0, pdeoperators.LinearForm(test_operator, f))
      pde.add_boundarydata(0, [1, 2, 3, 4], boundarydata.InterpolateDirichletBoundary, u)

      solution = fevector.FEVector([spaces.FESpace(spaces.H1BR(), mesh), spaces.FESpace(spaces.L2P0(), mesh)],
                                   ["velocity", "pressure"])
      result = solver.solve(pde, solution, maxiterations=20, target_residual=1e-9)
      if not result.converged:
        print(f"Warning: no convergence for viscosity {viscosity} with {test_operator}")
      errors.append(np.sqrt(integrators.evaluate(integrators.L2ErrorIntegrator(u), solution).sum()))
    print(f"{viscosity:10.0e} {errors[0]:12.4e} {errors[1]:12.4e}")
