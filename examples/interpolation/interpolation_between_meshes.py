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
Interpolation of a vector-valued P2 function of a coarse triangulation onto two uniform
refinements of it. The fine P2 function reproduces the coarse one, so both have the same
distance to the interpolated data.
"""

if __name__ == "__main__":

  import jax
  from jax import config
  import jax.numpy as jnp
  import numpy as np

  from robustfem import fevector, integrators, mesher, spaces, userdata
  from robustfem.mesh import Triangle2D

  config.update("jax_enable_x64", True)


  ### Data
  def exact(x):
    return jnp.stack([jnp.sin(4. * jnp.pi * x[0]) * jnp.sin(4. * jnp.pi * x[1]),
                      jnp.cos(4. * jnp.pi * x[0]) * jnp.cos(4. * jnp.pi * x[1])])

  u = userdata.DataFunction(exact, ncomponents=2, dependencies="X", bonus_quadorder=5, name="u")


  ### Coarse and fine meshes
  coarse = mesher.uniform_refine(mesher.unit_square(Triangle2D), 4)
  fine = mesher.uniform_refine(coarse, 2)
  print(f"coarse mesh: {coarse.ncells} cells, fine mesh: {fine.ncells} cells")

  fe = spaces.H1P2(ncomponents=2)
  coarse_function = fevector.FEVector([spaces.FESpace(fe, coarse)], ["u_coarse"])
  fine_function = fevector.FEVector([spaces.FESpace(fe, fine)], ["u_fine"])
  coarse_function[0].interpolate(u)
  fine_function[0].entries = integrators.interpolate_from_parent(fine_function[0].space, coarse_function[0])


  ### Errors
  for function in (coarse_function, fine_function):
    error = np.sqrt(integrators.evaluate(integrators.L2ErrorIntegrator(u, bonus_quadorder=4), function).sum())
    print(f"{function[0].name}: ndofs = {function.ndofs}, L2 error = {error:.6e}")
