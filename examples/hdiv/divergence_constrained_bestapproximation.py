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
L2 best approximation of a vector field in H(div) conforming spaces whose divergence is fixed by
a Lagrange multiplier:

  (u, v) - (p, div v) = (u_exact, v),   -(div u, q) = -(div u_exact, q).

The divergence of the discrete solution equals the cellwise projection of div u_exact.
"""

if __name__ == "__main__":

  import jax
  from jax import config
  import jax.numpy as jnp
  import numpy as np

  from robustfem import fevector, functionoperators, integrators, mesher, pdedescription, pdeoperators, solver, spaces, userdata
  from robustfem.mesh import Triangle2D

  config.update("jax_enable_x64", True)


  ### Data
  def field(x):
    return jnp.stack([jnp.exp(x[0]) * jnp.sin(jnp.pi * x[1]), x[0]**2 * x[1]])

  u = userdata.DataFunction(field, ncomponents=2, dependencies="X", bonus_quadorder=3, name="u")
  div_u = userdata.divergence(u)


  ### Problem description
  pde = pdedescription.PDEDescription("H(div) best approximation")
  pde.add_unknown("u", "best approximation")
  pde.add_unknown("p", "divergence constraint", algebraic_constraint=True)
  pde.add_operator((0, 0), pdeoperators.ReactionOperator())
  pde.add_operator((0, 1), pdeoperators.LagrangeMultiplier(functionoperators.Divergence))
  pde.add_rhsdata(0, pdeoperators.LinearForm(functionoperators.Identity, u))
  pde.add_rhsdata(1, pdeoperators.LinearForm(functionoperators.Identity, div_u, factor=-1.))
  print(pde)


  ### Solve with RT0 and BDM1
  for fe in (spaces.HDIVRT0(), spaces.HDIVBDM1()):
    print(f"\n{fe}")
    mesh = mesher.unit_square(Triangle2D, (4, 4))
    for level in range(4):
      solution = fevector.FEVector([spaces.FESpace(fe, mesh), spaces.FESpace(spaces.L2P0(), mesh)], ["u", "p"])
      result = solver.solve(pde, solution)

      error = np.sqrt(integrators.evaluate(integrators.L2ErrorIntegrator(u), solution).sum())
      # cellwise mean of the divergence error vanishes
      div_error = integrators.ItemIntegrator(None, [(functionoperators.Divergence, 0)]).integrate_items(solution)[:, 0]
      div_error = div_error - integrators.integrate(mesh, div_u, 2, itemwise=True)[:, 0]
      print(f"cells: {mesh.ncells:5d}, L2 error: {error:.4e}, max cellwise divergence defect: "
            f"{np.abs(div_error).max():.2e}, converged: {result.converged}")
      mesh = mesher.uniform_refine(mesh)
