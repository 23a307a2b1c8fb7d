# models.py
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
This module contains premade PDE descriptions of common problems.

The prototypes contain the left-hand side operators, and where data is given, right-hand sides
and boundary data. Further operators, right-hand sides and boundary conditions can be added to
the returned PDEDescription, e.g.:

  >>> pde = PoissonProblem(diffusion=2.)
  >>> pde.add_rhsdata(0, LinearForm(Identity, f))
  >>> pde.add_boundarydata(0, [1, 2, 3, 4], HomogeneousDirichletBoundary)
"""

from robustfem.boundarydata import BestapproxDirichletBoundary
from robustfem.functionoperators import Divergence, Gradient, Identity
from robustfem.globalconstraints import FixedIntegralMean
from robustfem.pdedescription import PDEDescription
from robustfem.pdeoperators import (ConvectionOperator, HookStiffnessOperator2D, LagrangeMultiplier,
                                    LaplaceOperator, LinearForm, ReactionOperator)
from robustfem.utility import ConfigurationError


### Linear equations

def PoissonProblem(diffusion=1.):
  """
  Poisson problem ``-div(diffusion grad u) = f``.

  Args:
    diffusion (float or DataFunction): Diffusion coefficient.

  Returns:
    PDEDescription: One unknown "u" with a Laplace operator, rhs and boundary data are added by the user.
  """
  pde = PDEDescription("Poisson problem")
  pde.add_unknown("u", "Poisson equation")
  pde.add_operator((0, 0), LaplaceOperator(diffusion))
  return pde


def L2BestapproximationProblem(uexact, bestapprox_boundary_regions=()):
  """
  L2 best approximation ``(u, v) = (uexact, v)``.

  Args:
    uexact (DataFunction): Function to approximate.
    bestapprox_boundary_regions (list): Boundary regions with best-approximated Dirichlet data.
  """
  pde = PDEDescription("L2 best approximation problem")
  pde.add_unknown("u", "L2 best approximation")
  pde.add_operator((0, 0), ReactionOperator(1.))
  pde.add_rhsdata(0, LinearForm(Identity, uexact))
  if len(bestapprox_boundary_regions) > 0:
    pde.add_boundarydata(0, bestapprox_boundary_regions, BestapproxDirichletBoundary, uexact)
  return pde


def H1BestapproximationProblem(uexact_gradient, uexact, bestapprox_boundary_regions=()):
  """
  H1 seminorm best approximation ``(grad u, grad v) = (grad uexact, grad v)``, the constant is
  fixed by the boundary data.

  Args:
    uexact_gradient (DataFunction): Gradient of the function, componentwise flattened.
    uexact (DataFunction): The function, used for the boundary data.
    bestapprox_boundary_regions (list): Boundary regions with best-approximated Dirichlet data.
  """
  pde = PDEDescription("H1 best approximation problem")
  pde.add_unknown("u", "H1 best approximation")
  pde.add_operator((0, 0), LaplaceOperator(1.))
  pde.add_rhsdata(0, LinearForm(Gradient, uexact_gradient))
  if len(bestapprox_boundary_regions) > 0:
    pde.add_boundarydata(0, bestapprox_boundary_regions, BestapproxDirichletBoundary, uexact)
  return pde


def LinearElasticityProblem(elasticity_modulus, poisson_number, mode="plain strain"):
  """
  Linear elasticity in 2D with Hooke's law.

  Args:
    elasticity_modulus (float): Young's modulus.
    poisson_number (float): Poisson's ratio.
    mode (str): 'plain strain' or 'plain stress'.

  Returns:
    PDEDescription: One unknown "displacement" with the Hooke stiffness.
  """
  E, nu = elasticity_modulus, poisson_number
  mu = E / (2 * (1 + nu))
  if mode == "plain strain":
    lam = E * nu / ((1 + nu) * (1 - 2 * nu))
  elif mode == "plain stress":
    lam = E * nu / (1 - nu**2)
  else:
    raise ConfigurationError(f"'mode' for linear elasticity not properly set: {mode}.")

  pde = PDEDescription("linear elasticity problem")
  pde.add_unknown("displacement", "momentum equation")
  pde.add_operator((0, 0), HookStiffnessOperator2D(mu, lam))
  return pde


### Flow problems

def IncompressibleNavierStokesProblem(dim=2, viscosity=1., nonlinear=True, newton=False, test_operator=Identity,
                                      auto_fix_pressure=True):
  """
  Incompressible Navier-Stokes (or Stokes) equations

    ``-viscosity lap(u) + (u . grad) u + grad p = f,  div u = 0``

  with unknowns "velocity" and "pressure".

  Pressure-robust discretizations use a reconstruction operator as test_operator of the
  convection term and of the right-hand side, e.g. ``ReconstructionIdentity(HDIVRT0())`` for
  Bernardi-Raugel or Crouzeix-Raviart velocities.

  Args:
    dim (int): Spatial dimension.
    viscosity (float): Kinematic viscosity.
    nonlinear (bool): Include the convection term, Stokes equations otherwise.
    newton (bool): Newton linearization of the convection term, Picard iteration otherwise.
    test_operator (FunctionOperator): Test operator of the convection term.
    auto_fix_pressure (bool): Fix the integral mean of the pressure to zero.
  """
  name = "incompressible Navier-Stokes problem" if nonlinear else "incompressible Stokes problem"
  pde = PDEDescription(name)
  pde.add_unknown("velocity", "momentum equation")
  pde.add_unknown("pressure", "incompressibility constraint", algebraic_constraint=True)
  pde.add_operator((0, 0), LaplaceOperator(viscosity, name="viscosity"))
  pde.add_operator((0, 1), LagrangeMultiplier(Divergence))
  if nonlinear:
    pde.add_operator((0, 0), ConvectionOperator(0, dim, test_operator, newton=newton, name="convection"))
  if auto_fix_pressure:
    pde.add_constraint(FixedIntegralMean(1, 0.))
  return pde
