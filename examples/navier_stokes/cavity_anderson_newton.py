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
Lid driven cavity with Taylor-Hood elements at Reynolds number 400.
A few Anderson accelerated Picard iterations provide the initial guess for Newton's method, the
convection operator is replaced in the same PDE description.
"""

if __name__ == "__main__":

  import jax
  from jax import config
  import jax.numpy as jnp
  import numpy as np

  from robustfem import boundarydata, fevector, functionoperators, integrators, mesher, models, pdeoperators, solver, spaces, userdata
  from robustfem.mesh import Triangle2D

  config.update("jax_enable_x64", True)


  ### Problem description
  viscosity = 1. / 400.
  lid = userdata.DataFunction(lambda x: jnp.stack([16. * x[0]**2 * (1. - x[0])**2, 0. * x[1]]), ncomponents=2,
                              dependencies="X", name="lid")
  pde = models.IncompressibleNavierStokesProblem(viscosity=viscosity, nonlinear=True, newton=False)
  pde.add_boundarydata(0, [1, 2, 4], boundarydata.HomogeneousDirichletBoundary)
  pde.add_boundarydata(0, [3], boundarydata.InterpolateDirichletBoundary, lid)
  print(pde)

  mesh = mesher.unit_square(Triangle2D, (16, 16))
  solution = fevector.FEVector([spaces.FESpace(spaces.H1P2(ncomponents=2), mesh), spaces.FESpace(spaces.H1P1(), mesh)],
                               ["velocity", "pressure"])


  ### Picard iterations with Anderson acceleration of the velocity
  result = solver.solve(pde, solution, maxiterations=8, target_residual=1e-9, anderson_iterations=5,
                        anderson_unknowns=[0], verbose=1)
  print(f"Picard: {result.iterations} iterations, residual {result.residual:.3e}")


  ### Newton iterations starting from the Picard iterate
  convection = len(pde.lhs[(0, 0)]) - 1
  pde.replace_operator((0, 0), convection, pdeoperators.ConvectionOperator(0, 2, newton=True, name="convection"))
  result = solver.solve(pde, solution, maxiterations=20, target_residual=1e-9, verbose=1)
  print(f"Newton: {result.iterations} iterations, converged: {result.converged}")


  ### Postprocessing
  velocity = integrators.nodevalues(solution[0])
  pressure = integrators.nodevalues(solution[1])
  kinetic_energy = 0.5 * integrators.evaluate(integrators.L2NormIntegrator(functionoperators.Identity, 0), solution).sum()
  divergence = integrators.evaluate(integrators.L2NormIntegrator(functionoperators.Divergence, 0), solution)[0]
  center = np.argmin(np.linalg.norm(mesh.coordinates - 0.5, axis=1))
  print(f"kinetic energy: {kinetic_energy:.6e}, |div u|^2: {divergence:.3e}")
  print(f"velocity at {mesh.coordinates[center]}: {velocity[center]}, pressure range: "
        f"[{pressure.min():.4f}, {pressure.max():.4f}]")
