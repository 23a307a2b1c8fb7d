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
Obstacle problem: membrane under a constant load that may not penetrate the obstacle psi.
The constraint u >= psi is enforced by a penalty kernel, Newton's method uses its Jacobian
computed by automatic differentiation.
"""

if __name__ == "__main__":

  import jax
  from jax import config
  import jax.numpy as jnp
  import numpy as np

  from robustfem import boundarydata, fevector, functionoperators, integrators, mesher, models, pdeoperators, solver, spaces
  from robustfem.mesh import Triangle2D

  config.update("jax_enable_x64", True)


  ### Obstacle and penalty kernel
  penalty = 1e4
  load = -10.

  def obstacle(x):
    return -0.05 - 0.1 * ((x[0] - 0.5)**2 + (x[1] - 0.5)**2)

  def kernel(u, x):
    return penalty * jnp.minimum(u - obstacle(x), 0.)


  ### Problem description
  pde = models.PoissonProblem()
  pde.add_operator((0, 0), pdeoperators.NonlinearForm(functionoperators.Identity, [functionoperators.Identity],
                                                      kernel, (1, 1), dependencies="X", bonus_quadorder=2,
                                                      name="obstacle penalty"))
  pde.add_rhsdata(0, pdeoperators.LinearForm(functionoperators.Identity, load))
  pde.add_boundarydata(0, [1, 2, 3, 4], boundarydata.HomogeneousDirichletBoundary)
  print(pde)


  ### Solve on a sequence of meshes
  mesh = mesher.unit_square(Triangle2D, (8, 8))
  for level in range(3):
    solution = fevector.FEVector([spaces.FESpace(spaces.H1P1(), mesh)], ["u"])
    result = solver.solve(pde, solution, maxiterations=50, target_residual=1e-9, verbose=1)

    values = integrators.nodevalues(solution[0])[:, 0]
    gap = values - np.asarray(jax.vmap(obstacle)(jnp.asarray(mesh.coordinates)))
    contact = gap < 1e-6
    print(f"cells: {mesh.ncells}, Newton iterations: {result.iterations}, "
          f"contact nodes: {contact.sum()}, maximal penetration: {max(-gap.min(), 0.):.3e}")
    mesh = mesher.uniform_refine(mesh)
