# assembler.py
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
Assembly of weak form contributions into global sparse matrices and vectors.

An :class:`AssemblyPattern` declares which function operators are applied to which argument
slots, which action combines them and over which items of the mesh they are integrated. Slots
refer to blocks of the coefficient vector passed to the assembly routines (the unknowns of a
PDE). The :class:`Assembler` instantiated from a pattern prepares the quadrature and the basis
evaluators once and evaluates the action vectorized over all items and quadrature points.

Pattern kinds:

- ``"bilinear"``: one test and one trial argument, optional fixed arguments; the action has to be
  linear in the trial values. Produces a matrix block (test slot, trial slot).
- ``"linear"``: one test argument, optional fixed arguments. Produces a vector block.
- ``"nonlinear"``: one test argument and trial arguments, the action provides its Jacobian. Produces
  the Newton linearization ``A u = J u_old - F(u_old)``.
- ``"integral"``: fixed arguments only, the action output is integrated over every item.
"""

from dataclasses import dataclass
import time

import jax
import jax.numpy as jnp
import numpy as np

from robustfem.feevaluator import ItemQuadrature, FEEvaluator
from robustfem.mesh import AssemblyType
from robustfem.userdata import EvaluationContext, NoAction, ScalarAction
from robustfem.utility import ConfigurationError


@dataclass(frozen=True)
class PatternArgument:
    """
    Function operator applied to the field in a slot.

    Attributes:
      operator (FunctionOperator): The function operator.
      slot (int): Block of the coefficient vector that provides the finite element space (and values).
      role (str): 'test', 'trial' or 'fixed'.
    """
    operator: object
    slot: int
    role: str = 'trial'


@dataclass(frozen=True)
class AssemblyPattern:
    """
    Declarative description of one weak form contribution.

    Attributes:
      kind (str): 'bilinear', 'linear', 'nonlinear' or 'integral'.
      arguments (tuple): PatternArguments; the action input is the concatenation of the values of
        all non-test arguments in the given order.
      action (Action): Pointwise map from the input to the test function operator.
      assembly_type (AssemblyType): Items to integrate over.
      regions (tuple): Regions of the items, empty means all.
      bonus_quadorder (int): Additional quadrature order.
      factor (float): Factor of all contributions.
      transposed_factor (float, optional): For bilinear patterns, additionally assemble the transposed
        block scaled by this factor.
      name (str): Name used in printouts.
    """
    kind: str
    arguments: tuple
    action: object
    assembly_type: AssemblyType = AssemblyType.ON_CELLS
    regions: tuple = ()
    bonus_quadorder: int = 0
    factor: float = 1.
    transposed_factor: float = None
    name: str = "pattern"

    def __post_init__(self):
        roles = [a.role for a in self.arguments]
        if any(role not in ('test', 'trial', 'fixed') for role in roles):
            raise ConfigurationError(f"{self.name}: unknown argument role in {roles}.")
        ntest, ntrial = roles.count('test'), roles.count('trial')
        match self.kind:
            case 'bilinear':
                valid = ntest == 1 and ntrial == 1
            case 'linear':
                valid = ntest == 1 and ntrial == 0
            case 'nonlinear':
                valid = ntest == 1 and ntrial >= 1
            case 'integral':
                valid = ntest == 0 and ntrial == 0
            case _:
                raise ConfigurationError(f"{self.name}: unknown pattern kind '{self.kind}'.")
        if not valid:
            raise ConfigurationError(f"{self.name}: invalid roles {roles} for a {self.kind} pattern.")
        if self.kind == 'nonlinear' and not self.action.has_jacobian:
            raise ConfigurationError(f"{self.name}: nonlinear patterns need an action with a Jacobian.")

    @property
    def test(self):
        return next((a for a in self.arguments if a.role == 'test'), None)

    @property
    def inputs(self):
        return [a for a in self.arguments if a.role != 'test']


class Assembler:
    """
    Assembler of an AssemblyPattern.

    States: 'uninitialized' -> 'prepared' (quadrature and evaluators for the current spaces) ->
    'assembled'. Preparation is skipped on repeated calls with skip_preps=True as long as the finite
    element spaces of the slots did not change.

    Args:
      pattern (AssemblyPattern): The pattern.
      verbose (int): Print assembly times if >= 2.
    """

    def __init__(self, pattern, verbose=0):
        self.pattern = pattern
        self.verbose = verbose
        self.state = 'uninitialized'
        self._spaces_key = None

    def __repr__(self):
        return f"Assembler({self.pattern.name}, {self.pattern.kind}, state={self.state})"

    def quadrature_order(self, sources):
        """
        Quadrature order: sum over all arguments of the polynomial order of the element (of the
        target element for reconstruction operators) plus the operator shift, clamped at zero,
        plus the bonus orders of the action and the pattern.
        """
        order = 0
        for argument in self.pattern.arguments:
            space = sources[argument.slot].space
            fe = argument.operator.target if argument.operator.target is not None else space.fe
            order += max(fe.polynomial_order(space.mesh.geometry) + argument.operator.quadorder_shift, 0)
        return order + self.pattern.action.bonus_quadorder + self.pattern.bonus_quadorder

    def prepare(self, sources, skip_preps=False):
        """
        Builds quadrature, evaluators and the vectorized action for the spaces of the sources.

        Args:
          sources: Sequence of FEVectorBlocks (e.g. an FEVector) indexed by the argument slots.
          skip_preps (bool): Keep an existing preparation if the spaces did not change.

        Raises:
          ConfigurationError: If operators, elements and action do not fit together.
        """
        pattern = self.pattern
        key = tuple(id(sources[a.slot].space) for a in pattern.arguments)
        if skip_preps and self.state != 'uninitialized' and key == self._spaces_key:
            return self
        if len(pattern.arguments) > 0:
            mesh = sources[pattern.arguments[0].slot].space.mesh
        else:
            raise ConfigurationError(f"{pattern.name}: a pattern needs at least one argument.")

        self.quadrature = ItemQuadrature(mesh, pattern.assembly_type, self.quadrature_order(sources), pattern.regions)
        self.evaluators = [FEEvaluator(sources[a.slot].space, a.operator, self.quadrature) for a in pattern.arguments]
        self.test_index = next((i for i, a in enumerate(pattern.arguments) if a.role == 'test'), None)
        self.input_indices = [i for i, a in enumerate(pattern.arguments) if a.role != 'test']
        sizes = [self.evaluators[i].ncomponents for i in self.input_indices]
        self.input_offsets = np.concatenate([[0], np.cumsum(sizes)]).astype(int)
        nin = int(self.input_offsets[-1])
        if self.test_index is not None:
            nout = self.evaluators[self.test_index].ncomponents
        else:
            nout = pattern.action.argsizes[0] if pattern.action.argsizes is not None else nin
        pattern.action.check_argsizes(nout, nin)
        pattern.action.prepare(mesh.dim)
        self.nin, self.nout = nin, nout

        q = self.quadrature
        n, nq = q.nitems, q.npoints
        item_info = np.stack([q.items, q.cells[:, 0], q.regions], axis=1)
        normals = q.normals if q.normals is not None else np.zeros((n, nq, mesh.dim))
        self.context = EvaluationContext(
            x=jnp.asarray(q.x.reshape(n * nq, -1)),
            time=jnp.zeros(n * nq),
            item=jnp.asarray(np.repeat(item_info, nq, axis=0)),
            xref=jnp.asarray(q.xref[0].reshape(n * nq, -1)),
            normal=jnp.asarray(normals.reshape(n * nq, -1)),
        )

        action = pattern.action
        self._apply = jax.jit(jax.vmap(action.apply))
        self._apply_per_dof = jax.jit(jax.vmap(jax.vmap(action.apply, in_axes=(0, None)), in_axes=(0, 0)))
        if action.has_jacobian:
            self._value_and_jacobian = jax.jit(jax.vmap(action.value_and_jacobian))

        self._spaces_key = key
        self.state = 'prepared'
        return self

    def _context(self, time):
        return self.context._replace(time=jnp.full(self.context.time.shape, time, dtype=float))

    def _input_values(self, sources):
        """Concatenated values of all non-test arguments, shape (nitems * nq, nin)."""
        q = self.quadrature
        if self.nin == 0:
            return np.zeros((q.nitems * q.npoints, 0))
        values = [self.evaluators[i].evaluate(sources[self.pattern.arguments[i].slot].entries)
                  for i in self.input_indices]
        return np.concatenate(values, axis=-1).reshape(q.nitems * q.npoints, self.nin)

    def _start(self, sources, skip_preps):
        self.prepare(sources, skip_preps)
        return time.time()

    def _finish(self, start):
        self.state = 'assembled'
        if self.verbose >= 2:
            print(f"Assembly of {self.pattern.name} on {self.quadrature.nitems} items: {time.time() - start:.3f} s")

    def assemble_matrix(self, matrix, sources, time=0., skip_preps=True):
        """
        Assembles a bilinear pattern into the block (test slot, trial slot) of matrix.

        Args:
          matrix (FEMatrix): Target matrix, staged until flushed.
          sources: Sequence of FEVectorBlocks, providing spaces and the values of fixed arguments.
          time (float): Time passed to the action.
          skip_preps (bool): Reuse the preparation if possible.
        """
        pattern = self.pattern
        if pattern.kind != 'bilinear':
            raise ConfigurationError(f"{pattern.name}: assemble_matrix needs a bilinear pattern, not {pattern.kind}.")
        start = self._start(sources, skip_preps)
        q = self.quadrature
        if q.nitems == 0:
            self._finish(start)
            return matrix
        n, nq = q.nitems, q.npoints
        test_values, test_dofs = self.evaluators[self.test_index].update_basis()
        trial_index = next(i for i, a in enumerate(pattern.arguments) if a.role == 'trial')
        trial_values, trial_dofs = self.evaluators[trial_index].update_basis()
        ndofs_trial = trial_values.shape[-1]

        action = pattern.action
        if isinstance(action, (NoAction, ScalarAction)) and self.nin == trial_values.shape[2]:
            out = trial_values if isinstance(action, NoAction) else action.value * trial_values
        else:
            # action input for every trial basis function: fixed values and the trial basis values
            fixed = self._input_values_fixed(sources, trial_index)
            blocks = []
            for i in self.input_indices:
                if i == trial_index:
                    basis = np.transpose(trial_values, (0, 1, 3, 2)).reshape(n * nq, ndofs_trial, -1)
                    blocks.append(basis)
                else:
                    blocks.append(np.broadcast_to(fixed[i][:, None, :], (n * nq, ndofs_trial, fixed[i].shape[-1])))
            inputs = jnp.asarray(np.concatenate(blocks, axis=-1))
            out = np.asarray(self._apply_per_dof(inputs, self._context(time)))
            out = np.transpose(out.reshape(n, nq, ndofs_trial, self.nout), (0, 1, 3, 2))

        local = np.einsum('nq,nqci,nqcj->nij', q.weights, test_values, out)
        test_slot = pattern.arguments[self.test_index].slot
        trial_slot = pattern.arguments[trial_index].slot
        rows = np.broadcast_to(test_dofs[:, :, None], local.shape)
        cols = np.broadcast_to(trial_dofs[:, None, :], local.shape)
        with matrix.assembling():
            matrix[test_slot, trial_slot].add(rows, cols, pattern.factor * local)
            if pattern.transposed_factor is not None:
                matrix[trial_slot, test_slot].add(cols, rows, pattern.transposed_factor * local)
        self._finish(start)
        return matrix

    def _input_values_fixed(self, sources, trial_index):
        q = self.quadrature
        fixed = {}
        for i in self.input_indices:
            if i != trial_index:
                values = self.evaluators[i].evaluate(sources[self.pattern.arguments[i].slot].entries)
                fixed[i] = values.reshape(q.nitems * q.npoints, -1)
        return fixed

    def assemble_vector(self, vector, sources, time=0., skip_preps=True):
        """
        Assembles a linear pattern into the block of the test slot of vector.

        Args:
          vector (FEVector): Target vector.
          sources: Sequence of FEVectorBlocks, providing spaces and the values of fixed arguments.
          time (float): Time passed to the action.
          skip_preps (bool): Reuse the preparation if possible.
        """
        pattern = self.pattern
        if pattern.kind != 'linear':
            raise ConfigurationError(f"{pattern.name}: assemble_vector needs a linear pattern, not {pattern.kind}.")
        start = self._start(sources, skip_preps)
        q = self.quadrature
        if q.nitems == 0:
            self._finish(start)
            return vector
        test_values, test_dofs = self.evaluators[self.test_index].update_basis()
        inputs = self._input_values(sources)
        out = np.asarray(self._apply(jnp.asarray(inputs), self._context(time))).reshape(q.nitems, q.npoints, self.nout)
        local = np.einsum('nq,nqci,nqc->ni', q.weights, test_values, out)
        with vector.assembling():
            vector[pattern.arguments[self.test_index].slot].add(test_dofs, pattern.factor * local)
        self._finish(start)
        return vector

    def assemble_newton(self, matrix, vector, sources, time=0., skip_preps=True):
        """
        Assembles the Newton linearization of a nonlinear pattern at the current values of sources:
        the Jacobian blocks (test slot, trial slots) into matrix and ``J u_old - F(u_old)`` into vector.
        """
        pattern = self.pattern
        if pattern.kind != 'nonlinear':
            raise ConfigurationError(f"{pattern.name}: assemble_newton needs a nonlinear pattern, not {pattern.kind}.")
        start = self._start(sources, skip_preps)
        q = self.quadrature
        if q.nitems == 0:
            self._finish(start)
            return matrix, vector
        n, nq = q.nitems, q.npoints
        test_values, test_dofs = self.evaluators[self.test_index].update_basis()
        inputs = self._input_values(sources)
        value, jacobian = self._value_and_jacobian(jnp.asarray(inputs), self._context(time))
        value, jacobian = np.asarray(value), np.asarray(jacobian)

        trial_mask = np.zeros(self.nin)
        for k, i in enumerate(self.input_indices):
            if pattern.arguments[i].role == 'trial':
                trial_mask[self.input_offsets[k]:self.input_offsets[k + 1]] = 1.
        rhs = np.einsum('Nij,Nj->Ni', jacobian, inputs * trial_mask[None, :]) - value
        local_rhs = np.einsum('nq,nqci,nqc->ni', q.weights, test_values, rhs.reshape(n, nq, self.nout))
        test_slot = pattern.arguments[self.test_index].slot

        with matrix.assembling(), vector.assembling():
            vector[test_slot].add(test_dofs, pattern.factor * local_rhs)
            for k, i in enumerate(self.input_indices):
                argument = pattern.arguments[i]
                if argument.role != 'trial':
                    continue
                trial_values, trial_dofs = self.evaluators[i].update_basis()
                block = jacobian[:, :, self.input_offsets[k]:self.input_offsets[k + 1]].reshape(n, nq, self.nout, -1)
                out = np.einsum('nqck,nqkj->nqcj', block, trial_values)
                local = np.einsum('nq,nqci,nqcj->nij', q.weights, test_values, out)
                rows = np.broadcast_to(test_dofs[:, :, None], local.shape)
                cols = np.broadcast_to(trial_dofs[:, None, :], local.shape)
                matrix[test_slot, argument.slot].add(rows, cols, pattern.factor * local)
        self._finish(start)
        return matrix, vector

    def integrate_items(self, sources, time=0., skip_preps=True):
        """
        Integrates the action output of an integral pattern over every item.

        Returns:
          np.ndarray: Integrals of shape (nitems, nout), scaled by the pattern factor.
        """
        pattern = self.pattern
        if pattern.kind != 'integral':
            raise ConfigurationError(f"{pattern.name}: integrate_items needs an integral pattern, not {pattern.kind}.")
        start = self._start(sources, skip_preps)
        q = self.quadrature
        if q.nitems == 0:
            self._finish(start)
            return np.zeros((0, self.nout))
        inputs = self._input_values(sources)
        out = np.asarray(self._apply(jnp.asarray(inputs), self._context(time))).reshape(q.nitems, q.npoints, self.nout)
        self._finish(start)
        return pattern.factor * np.einsum('nq,nqc->nc', q.weights, out)
