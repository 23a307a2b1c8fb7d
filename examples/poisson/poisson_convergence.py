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
Poisson problem -lap(u) = f on the unit square with u = sin(pi x) sin(pi y).
Convergence study of P1, P2 and P3 Lagrange elements under uniform refinement.
"""

if __name__ == "__main__":

  import jax
  from jax import config
  import jax.numpy as jnp
  import numpy as np

  from robustfem import boundarydata, fevector, functionoperators, integrators, mesher, models, pdeoperators, solver, spaces, userdata
  from robustfem.mesh import Triangle2D

  config.update("jax_enable_x64", True)


  ### Exact solution and data
  def exact(x):
    return jnp.sin(jnp.pi * x[0]) * jnp.sin(jnp.pi * x[1])

  u = userdata.DataFunction(exact, dependencies="X", bonus_quadorder=4, name="u")
  grad_u = userdata.gradient(u, 2)
  f = userdata.DataFunction(lambda x: 2. * jnp.pi**2 * exact(x), dependencies="X", bonus_quadorder=4, name="f")


  ### Problem description
  pde = models.PoissonProblem()
  pde.add_rhsdata(0, pdeoperators.LinearForm(functionoperators.Identity, f))
  pde.add_boundarydata(0, [1, 2, 3, 4], boundarydata.HomogeneousDirichletBoundary)
  print(pde)


  ### Convergence study
  for fe in (spaces.H1P1(), spaces.H1P2(), spaces.H1P3()):
    print(f"\n{fe}")
    print(f"{'ndofs':>8} {'L2 error':>12} {'H1 error':>12} {'L2 rate':>8} {'H1 rate':>8}")
    mesh = mesher.unit_square(Triangle2D, (2, 2))
    previous = None
    for level in range(5):
      mesh = mesher.uniform_refine(mesh) if level > 0 else mesh
      solution = fevector.FEVector([spaces.FESpace(fe, mesh)], ["u"])
      result = solver.solve(pde, solution)

      l2 = np.sqrt(integrators.evaluate(integrators.L2ErrorIntegrator(u, bonus_quadorder=4), solution).sum())
      h1 = np.sqrt(integrators.evaluate(
          integrators.L2ErrorIntegrator(grad_u, functionoperators.Gradient, bonus_quadorder=4), solution).sum())
      if previous is None:
        rates = ("-", "-")
      else:
        rates = (f"{np.log2(previous[0] / l2):.2f}", f"{np.log2(previous[1] / h1):.2f}")
      print(f"{solution.ndofs:>8} {l2:12.4e} {h1:12.4e} {rates[0]:>8} {rates[1]:>8}")
      previous = (l2, h1)

  # Values at the mesh nodes of the last solution
  values = integrators.nodevalues(solution[0])
  print("\nMaximal nodal error of the finest P3 solution: ",
        np.abs(values[:, 0] - u.evaluate_points(mesh.coordinates)[:, 0]).max())
