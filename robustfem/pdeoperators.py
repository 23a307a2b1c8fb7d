# pdeoperators.py
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
Operators of a PDE description.

A PDE operator lives in a block (equation, unknown) of the system and creates the assembly
patterns for that block. The assembly trigger decides how often the patterns are reassembled:

- ``AssemblyNever``: the operator is skipped.
- ``AssemblyInitial``: assembled once, e.g. constant coefficient stiffness matrices.
- ``AssemblyEachTimeStep``: reassembled once per time step, e.g. time-dependent right-hand sides.
- ``AssemblyAlways``: reassembled in every nonlinear iteration, e.g. operators with fixed arguments.
"""

from enum import IntEnum

import jax.numpy as jnp

from robustfem.assembler import AssemblyPattern, PatternArgument
from robustfem.functionoperators import Gradient, Identity, SymmetricGradient, Divergence
from robustfem.mesh import AssemblyType
from robustfem.userdata import (Action, ADJacobianAction, UserJacobianAction, DataFunction, as_action)
from robustfem.utility import ConfigurationError


class AssemblyTrigger(IntEnum):
    NEVER = 0
    INITIAL = 1
    EACH_TIME_STEP = 2
    ALWAYS = 3


AssemblyNever = AssemblyTrigger.NEVER
AssemblyInitial = AssemblyTrigger.INITIAL
AssemblyEachTimeStep = AssemblyTrigger.EACH_TIME_STEP
AssemblyAlways = AssemblyTrigger.ALWAYS


def _default_trigger(action, fixed):
    if fixed:
        return AssemblyAlways
    if 'T' in action.dependencies.upper():
        return AssemblyEachTimeStep
    return AssemblyInitial


class PDEOperator:
    """
    Base class of PDE operators.

    Attributes:
      trigger (AssemblyTrigger): Reassembly level.
      nonlinear (bool): True if the operator depends on the current solution.
      name (str): Name used in printouts.
    """
    name = "PDEOperator"
    trigger = AssemblyInitial
    nonlinear = False

    def __repr__(self):
        return self.name

    def patterns(self, row, col):
        """Assembly patterns of the operator in block (row, col), slots are unknown positions."""
        raise NotImplementedError


class BilinearForm(PDEOperator):
    """
    Bilinear form ``factor * (action(fixed..., trial_operator(u)), test_operator(v))``.

    Args:
      test_operator (FunctionOperator): Operator applied to the test function of the row unknown.
      trial_operator (FunctionOperator): Operator applied to the column unknown.
      action (Action, DataFunction, number or None): Action applied to the input, which is the
        concatenation of the fixed arguments and the trial operator values.
      fixed (list): Pairs (operator, unknown) evaluated at the current solution.
      assembly_type (AssemblyType): Items to integrate over.
      regions (tuple): Restrict to items of these regions.
      bonus_quadorder (int): Additional quadrature order.
      factor (float): Factor of the form.
      transposed_factor (float, optional): Also assemble the transposed block with this factor.
      trigger (AssemblyTrigger, optional): Defaults to AssemblyAlways with fixed arguments,
        AssemblyEachTimeStep for time-dependent actions and AssemblyInitial otherwise.
      name (str): Name used in printouts.
    """

    def __init__(self, test_operator, trial_operator, action=None, fixed=(), assembly_type=AssemblyType.ON_CELLS,
                 regions=(), bonus_quadorder=0, factor=1., transposed_factor=None, trigger=None, name=None):
        self.test_operator = test_operator
        self.trial_operator = trial_operator
        self.action = as_action(action)
        self.fixed = tuple(fixed)
        self.assembly_type = assembly_type
        self.regions = tuple(regions)
        self.bonus_quadorder = bonus_quadorder
        self.factor = factor
        self.transposed_factor = transposed_factor
        self.trigger = trigger if trigger is not None else _default_trigger(self.action, self.fixed)
        self.nonlinear = len(self.fixed) > 0
        self.name = name if name is not None else f"BilinearForm({test_operator}, {trial_operator})"

    def patterns(self, row, col):
        arguments = ((PatternArgument(self.test_operator, row, 'test'),)
                     + tuple(PatternArgument(op, unknown, 'fixed') for op, unknown in self.fixed)
                     + (PatternArgument(self.trial_operator, col, 'trial'),))
        return [AssemblyPattern('bilinear', arguments, self.action, self.assembly_type, self.regions,
                                self.bonus_quadorder, self.factor, self.transposed_factor, self.name)]


class LinearForm(PDEOperator):
    """
    Linear form ``factor * (action(fixed...), test_operator(v))``, e.g. a right-hand side
    ``LinearForm(Identity, f)``.

    Args:
      test_operator (FunctionOperator): Operator applied to the test function.
      action (Action, DataFunction or number): Without fixed arguments, the action produces the
        values of the form from the evaluation context alone.
      fixed (list): Pairs (operator, unknown) evaluated at the current solution.
    """

    def __init__(self, test_operator, action, fixed=(), assembly_type=AssemblyType.ON_CELLS, regions=(),
                 bonus_quadorder=0, factor=1., trigger=None, name=None):
        if isinstance(action, (int, float)):
            action = DataFunction(float(action))
        self.test_operator = test_operator
        self.action = as_action(action)
        self.fixed = tuple(fixed)
        self.assembly_type = assembly_type
        self.regions = tuple(regions)
        self.bonus_quadorder = bonus_quadorder
        self.factor = factor
        self.trigger = trigger if trigger is not None else _default_trigger(self.action, self.fixed)
        self.nonlinear = len(self.fixed) > 0
        self.name = name if name is not None else f"LinearForm({test_operator}, {self.action.name})"

    def patterns(self, row, col=None):
        arguments = ((PatternArgument(self.test_operator, row, 'test'),)
                     + tuple(PatternArgument(op, unknown, 'fixed') for op, unknown in self.fixed))
        return [AssemblyPattern('linear', arguments, self.action, self.assembly_type, self.regions,
                                self.bonus_quadorder, self.factor, name=self.name)]


class NonlinearForm(PDEOperator):
    """
    Nonlinear form ``factor * (kernel(op_1(u_1), ..., op_n(u_n)), test_operator(v))``.

    With ``newton=True`` the form is linearized by Newton's method, the Jacobian of the kernel is
    computed by automatic differentiation (dense or sparse) or given by the user. With
    ``newton=False`` the kernel is evaluated at the previous iterate and moved to the right-hand
    side.

    Args:
      test_operator (FunctionOperator): Operator applied to the test function.
      operators (list): Operators applied to the unknowns, their values are concatenated into the
        kernel input.
      kernel (callable): ``kernel(input, *dependencies) -> output``.
      argsizes (tuple): (output size, input size).
      coefficient_from (list, optional): Unknown of every operator, defaults to the column unknown.
      dependencies (str): Subset of "XTIL".
      jacobian (callable, optional): User Jacobian ``jacobian(input, *dependencies)``.
      sparse_jacobian (bool): Use the colored sparse AD Jacobian.
      newton (bool): Newton linearization or lagged evaluation.
    """
    trigger = AssemblyAlways
    nonlinear = True

    def __init__(self, test_operator, operators, kernel, argsizes, coefficient_from=None, dependencies="",
                 jacobian=None, sparse_jacobian=False, newton=True, assembly_type=AssemblyType.ON_CELLS, regions=(),
                 bonus_quadorder=0, factor=1., name="NonlinearForm"):
        self.test_operator = test_operator
        self.operators = tuple(operators)
        if coefficient_from is not None and len(coefficient_from) != len(self.operators):
            raise ConfigurationError(f"{name}: coefficient_from needs one unknown per operator.")
        self.coefficient_from = None if coefficient_from is None else tuple(coefficient_from)
        self.newton = newton
        self.assembly_type = assembly_type
        self.regions = tuple(regions)
        self.bonus_quadorder = bonus_quadorder
        self.factor = factor
        self.name = name
        if not newton:
            self.action = Action(kernel, argsizes, dependencies, name=f"{name}.kernel")
        elif jacobian is not None:
            self.action = UserJacobianAction(kernel, jacobian, argsizes, dependencies, name=f"{name}.kernel")
        else:
            self.action = ADJacobianAction(kernel, argsizes, dependencies, sparse_jacobian=sparse_jacobian,
                                           name=f"{name}.kernel")

    def patterns(self, row, col):
        unknowns = self.coefficient_from if self.coefficient_from is not None else (col,) * len(self.operators)
        role = 'trial' if self.newton else 'fixed'
        arguments = ((PatternArgument(self.test_operator, row, 'test'),)
                     + tuple(PatternArgument(op, u, role) for op, u in zip(self.operators, unknowns)))
        if self.newton:
            return [AssemblyPattern('nonlinear', arguments, self.action, self.assembly_type, self.regions,
                                    self.bonus_quadorder, self.factor, name=self.name)]
        return [AssemblyPattern('linear', arguments, self.action, self.assembly_type, self.regions,
                                self.bonus_quadorder, -self.factor, name=self.name)]


### Operator library

def _coefficient(coefficient):
    """Splits a coefficient into (action, factor)."""
    if isinstance(coefficient, DataFunction):
        return coefficient, 1.
    return None, float(coefficient)


class LaplaceOperator(BilinearForm):
    """Diffusion ``(coefficient * grad(u), grad(v))``, componentwise for vector unknowns."""

    def __init__(self, coefficient=1., regions=(), trigger=None, name="Laplace"):
        action, factor = _coefficient(coefficient)
        super().__init__(Gradient, Gradient, action, regions=regions, factor=factor, trigger=trigger, name=name)


class ReactionOperator(BilinearForm):
    """Mass term ``(coefficient * u, v)``."""

    def __init__(self, coefficient=1., regions=(), trigger=None, name="Reaction"):
        action, factor = _coefficient(coefficient)
        super().__init__(Identity, Identity, action, regions=regions, factor=factor, trigger=trigger, name=name)


class _DataConvection(Action):
    """``grad(u) beta`` with a given velocity field beta."""

    def __init__(self, beta):
        self.beta = beta
        self.dim = None
        super().__init__(lambda input: input, None, beta.dependencies, beta.bonus_quadorder, name=f"Convection({beta.name})")

    def check_argsizes(self, nout, nin):
        if nin != nout * self.beta.ncomponents:
            raise ConfigurationError(f"{self.name}: gradient of size {nin} does not fit to {nout} output components.")

    def prepare(self, dim):
        self.dim = dim

    def apply(self, input, ctx):
        return jnp.reshape(input, (-1, self.dim)) @ self.beta.evaluate(ctx)


class _LaggedConvection(Action):
    """``grad(u) w`` with w the first dim entries of the input (fixed velocity)."""

    def __init__(self):
        self.dim = None
        super().__init__(lambda input: input, None, name="LaggedConvection")

    def check_argsizes(self, nout, nin):
        if nin != nout * (nout + 1):
            raise ConfigurationError(f"{self.name}: input of size {nin} does not fit to {nout} output components.")

    def prepare(self, dim):
        self.dim = dim

    def apply(self, input, ctx):
        w = input[:self.dim]
        return jnp.reshape(input[self.dim:], (self.dim, self.dim)) @ w


def ConvectionOperator(beta, dim=2, test_operator=Identity, newton=False, regions=(), bonus_quadorder=0, factor=1.,
                       name="Convection"):
    """
    Convection ``((beta . grad) u, test_operator(v))``.

    Args:
      beta (DataFunction or int): Given velocity field, or the position of the velocity unknown
        for the self-convection ``(u . grad) u`` of the Navier-Stokes equations.
      dim (int): Spatial dimension, used for self-convection.
      test_operator (FunctionOperator): E.g. a reconstruction operator for pressure-robust schemes.
      newton (bool): Newton linearization of the self-convection, Picard iteration otherwise.

    Returns:
      PDEOperator: A bilinear form (given field, Picard) or a nonlinear form (Newton).
    """
    if isinstance(beta, DataFunction):
        return BilinearForm(test_operator, Gradient, _DataConvection(beta), regions=regions,
                            bonus_quadorder=bonus_quadorder, factor=factor, name=name)
    if newton:
        def kernel(input):
            return jnp.reshape(input[dim:], (dim, dim)) @ input[:dim]
        return NonlinearForm(test_operator, [Identity, Gradient], kernel, (dim, dim + dim * dim),
                             coefficient_from=[beta, beta], regions=regions, bonus_quadorder=bonus_quadorder,
                             factor=factor, name=name)
    return BilinearForm(test_operator, Gradient, _LaggedConvection(), fixed=[(Identity, beta)], regions=regions,
                        bonus_quadorder=bonus_quadorder, factor=factor, name=name)


class LagrangeMultiplier(BilinearForm):
    """
    Constraint ``operator(u) = 0`` with multiplier p: assembles ``-(p, operator(v))`` into the
    block (u, p) and its transpose ``-(q, operator(u))`` into (p, u).
    """

    def __init__(self, operator=Divergence, factor=-1., regions=(), name=None):
        super().__init__(operator, Identity, None, regions=regions, factor=factor, transposed_factor=factor,
                         name=name if name is not None else f"LagrangeMultiplier({operator})")


class HookStiffnessOperator2D(BilinearForm):
    """
    Linear elasticity ``(C eps(u), eps(v))`` in 2D with the isotropic Hooke tensor of the Lame
    parameters mu and lam (plane strain).
    """

    def __init__(self, mu, lam, regions=(), name="HookStiffness2D"):
        def hooke(eps):
            return jnp.array([(2 * mu + lam) * eps[0] + lam * eps[1],
                              lam * eps[0] + (2 * mu + lam) * eps[1],
                              mu * eps[2]])
        super().__init__(SymmetricGradient, SymmetricGradient, Action(hooke, (3, 3), name="Hooke"), regions=regions,
                         name=name)
        self.mu = mu
        self.lam = lam
