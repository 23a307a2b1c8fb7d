# userdata.py
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
User data: data functions and actions.

Kernels are pure JAX functions that return their result. Which of the evaluation point ``x``,
the time ``t``, the item information ``i`` and the local (reference) coordinates ``l`` a kernel
needs is declared once by a dependency string, e.g. ``"XT"``, and is passed after the regular
arguments in this fixed order:

- data functions: ``kernel(x, t) -> values``
- actions: ``kernel(input, x, t) -> output``

Everything a kernel may depend on is carried by an explicit :class:`EvaluationContext` that the
caller (e.g. the assembler) owns, so instances hold no per-evaluation state.
"""

from itertools import product
from typing import NamedTuple

import jax
import jax.numpy as jnp
from jax.experimental import sparse as jsparse
import sparsejac

from robustfem.utility import ConfigurationError, jacobian_sparsity


class EvaluationContext(NamedTuple):
    """
    Evaluation point of data functions and actions.

    Attributes:
      x: Physical coordinates (dim,).
      time: Time.
      item: Integer array (item id, cell id, region).
      xref: Reference coordinates in the cell (dim,).
      normal: Face normal (dim,), zeros on cells.
    """
    x: jnp.ndarray
    time: float
    item: jnp.ndarray
    xref: jnp.ndarray
    normal: jnp.ndarray


def make_context(x, time=0., item=None, xref=None, normal=None):
    """
    Batched evaluation context for points x of shape (n, dim). Missing fields are filled with zeros.
    """
    x = jnp.asarray(x, dtype=float)
    n = x.shape[0]
    return EvaluationContext(
        x=x,
        time=jnp.broadcast_to(jnp.asarray(time, dtype=float), (n,)),
        item=jnp.zeros((n, 3), dtype=int) if item is None else jnp.asarray(item),
        xref=jnp.zeros_like(x) if xref is None else jnp.asarray(xref, dtype=float),
        normal=jnp.zeros_like(x) if normal is None else jnp.asarray(normal, dtype=float),
    )


### Dependency dispatch

_TAGS = ('X', 'T', 'I', 'L')
_FIELDS = ('x', 'time', 'item', 'xref')


def parse_dependencies(dependencies):
    """
    Parses a dependency string into flags for (space, time, item, local coordinates).

    Raises:
      ConfigurationError: For unknown tags.
    """
    tags = set(dependencies.upper())
    unknown = tags - set(_TAGS)
    if unknown:
        raise ConfigurationError(f"Unknown dependency tags {sorted(unknown)} in '{dependencies}', "
                                 f"allowed are {''.join(_TAGS)}.")
    return tuple(tag in tags for tag in _TAGS)


def _make_adapter(flags):
    fields = tuple(field for flag, field in zip(flags, _FIELDS) if flag)

    def adapter(kernel):
        def bound(ctx, *args):
            return kernel(*args, *(getattr(ctx, field) for field in fields))
        return bound
    return adapter


# One adapter per dependency combination, selected once per kernel
DISPATCH = {flags: _make_adapter(flags) for flags in product((False, True), repeat=len(_TAGS))}


def bind_kernel(kernel, flags):
    """Returns kernel bound to the call signature (ctx, *args) selected by the dependency flags."""
    if not any(flags):
        def bound(ctx, *args):
            return kernel(*args)
        return bound
    return DISPATCH[flags](kernel)


### Data functions

class DataFunction:
    """
    Function of space, time, item and local coordinates.

    Args:
      kernel (callable or array): Kernel ``kernel(*dependencies) -> values`` or constant values.
      ncomponents (int, optional): Number of components. Inferred from constant values.
      dependencies (str): Subset of "XTIL".
      bonus_quadorder (int): Additional quadrature order for integrals of this function.
      name (str): Name used in printouts.
    """

    def __init__(self, kernel, ncomponents=None, dependencies="", bonus_quadorder=0, name="DataFunction"):
        if not callable(kernel):
            value = jnp.atleast_1d(jnp.asarray(kernel, dtype=float)).reshape(-1)
            ncomponents = value.shape[0]
            dependencies = ""

            def kernel():
                return value
        self.kernel = kernel
        self.ncomponents = 1 if ncomponents is None else ncomponents
        self.dependencies = dependencies
        self.flags = parse_dependencies(dependencies)
        self.bonus_quadorder = bonus_quadorder
        self.name = name
        self._bound = bind_kernel(kernel, self.flags)
        self._batched = jax.jit(jax.vmap(self.evaluate))

    def __repr__(self):
        return f"{self.name}(ncomponents={self.ncomponents}, dependencies='{self.dependencies}')"

    @property
    def is_constant(self):
        return not any(self.flags)

    @property
    def time_dependent(self):
        return self.flags[1]

    def evaluate(self, ctx):
        """Values of shape (ncomponents,) at one evaluation context."""
        return jnp.reshape(jnp.asarray(self._bound(ctx), dtype=float), (self.ncomponents,))

    def __call__(self, x, time=0.):
        x = jnp.atleast_1d(jnp.asarray(x, dtype=float))
        ctx = EvaluationContext(x, jnp.asarray(time, dtype=float), jnp.zeros(3, dtype=int), jnp.zeros_like(x),
                                jnp.zeros_like(x))
        return self.evaluate(ctx)

    def evaluate_points(self, x, time=0., item=None, xref=None, normal=None):
        """Values of shape (n, ncomponents) at points x of shape (n, dim)."""
        return self.evaluate_context(make_context(x, time, item, xref, normal))

    def evaluate_context(self, ctx):
        """Values of shape (n, ncomponents) for a batched context."""
        return self._batched(ctx)


class _DerivedDataFunction(DataFunction):
    """Data function evaluated by differentiating a parent data function at the same context."""

    def __init__(self, parent, derivative, ncomponents, name):
        self.parent = parent
        self.derivative = derivative
        super().__init__(parent.kernel, ncomponents, parent.dependencies, parent.bonus_quadorder, name)

    def evaluate(self, ctx):
        return jnp.reshape(self.derivative(self.parent, ctx), (self.ncomponents,))


def _jacobian_x(parent, ctx):
    return jax.jacfwd(lambda x: parent.evaluate(ctx._replace(x=x)))(ctx.x)


def gradient(f, dim):
    """Gradient of a data function (component-major), evaluated by automatic differentiation."""
    return _DerivedDataFunction(f, lambda p, ctx: _jacobian_x(p, ctx).reshape(-1), f.ncomponents * dim,
                                f"grad({f.name})")


def divergence(f):
    """Divergence of a vector-valued data function."""
    return _DerivedDataFunction(f, lambda p, ctx: jnp.trace(_jacobian_x(p, ctx)), 1, f"div({f.name})")


def laplacian(f):
    """Componentwise Laplacian of a data function."""
    def derivative(p, ctx):
        H = jax.hessian(lambda x: p.evaluate(ctx._replace(x=x)))(ctx.x)
        return jnp.trace(H, axis1=-2, axis2=-1)
    return _DerivedDataFunction(f, derivative, f.ncomponents, f"laplace({f.name})")


def curl(f, dim):
    """
    Curl of a data function. In 2D the curl of a scalar function is the rotated gradient
    (df/dx2, -df/dx1) and the curl of a vector field is scalar.
    """
    def derivative(p, ctx):
        g = _jacobian_x(p, ctx)
        if dim == 2 and p.ncomponents == 1:
            return jnp.stack([g[0, 1], -g[0, 0]])
        if dim == 2:
            return g[1, 0] - g[0, 1]
        return jnp.stack([g[2, 1] - g[1, 2], g[0, 2] - g[2, 0], g[1, 0] - g[0, 1]])

    if dim == 2:
        ncomponents = 2 if f.ncomponents == 1 else 1
    else:
        ncomponents = 3
    return _DerivedDataFunction(f, derivative, ncomponents, f"curl({f.name})")


def time_derivative(f):
    """Time derivative of a data function."""
    return _DerivedDataFunction(f, lambda p, ctx: jax.jacfwd(lambda t: p.evaluate(ctx._replace(time=t)))(ctx.time),
                                f.ncomponents, f"dt({f.name})")


### Actions

class Action:
    """
    Pointwise map from the operator values of the pattern arguments to the input of the test
    function operator.

    Args:
      kernel (callable): ``kernel(input, *dependencies) -> output``.
      argsizes (tuple): (output size, input size).
      dependencies (str): Subset of "XTIL".
      bonus_quadorder (int): Additional quadrature order needed by the kernel.
      name (str): Name used in printouts.
    """
    has_jacobian = False

    def __init__(self, kernel, argsizes, dependencies="", bonus_quadorder=0, name="Action"):
        self.kernel = kernel
        self.argsizes = None if argsizes is None else tuple(int(a) for a in argsizes)
        self.dependencies = dependencies
        self.flags = parse_dependencies(dependencies)
        self.bonus_quadorder = bonus_quadorder
        self.name = name
        self._bound = bind_kernel(kernel, self.flags)

    def __repr__(self):
        return f"{self.name}(argsizes={self.argsizes}, dependencies='{self.dependencies}')"

    def check_argsizes(self, nout, nin):
        """
        Raises a ConfigurationError if the action does not fit to the sizes of the operators.

        Args:
          nout (int): Number of components of the test function operator.
          nin (int): Total number of components of the argument operators.
        """
        if self.argsizes is not None and self.argsizes != (nout, nin):
            raise ConfigurationError(
                f"{self.name}: argsizes {self.argsizes} do not match the operators, which need ({nout}, {nin}).")

    def prepare(self, dim):
        """Hook that is called once before assembly with the spatial dimension."""

    def apply(self, input, ctx):
        """Output of the action at one evaluation context."""
        return jnp.asarray(self._bound(ctx, input))


class NoAction(Action):
    """Identity action, the input is passed to the test function operator unchanged."""

    def __init__(self):
        super().__init__(lambda input: input, None, name="NoAction")

    def check_argsizes(self, nout, nin):
        if nout != nin:
            raise ConfigurationError(f"NoAction needs operators of equal size, got ({nout}, {nin}).")


class ScalarAction(Action):
    """Multiplication of the input with a constant."""

    def __init__(self, value):
        self.value = value
        super().__init__(lambda input: value * input, None, name=f"ScalarAction({value})")

    def check_argsizes(self, nout, nin):
        if nout != nin:
            raise ConfigurationError(f"{self.name} needs operators of equal size, got ({nout}, {nin}).")


class DataAction(Action):
    """
    Multiplication of the input with the values of a data function (scalar or componentwise).
    Without input, the action returns the values of the data function.
    """

    def __init__(self, data):
        self.data = data
        super().__init__(lambda input: input, None, data.dependencies, data.bonus_quadorder, name=f"DataAction({data.name})")

    def check_argsizes(self, nout, nin):
        if nin == 0:
            valid = nout == self.data.ncomponents
        else:
            valid = nout == nin and self.data.ncomponents in (1, nin)
        if not valid:
            raise ConfigurationError(
                f"{self.name} with {self.data.ncomponents} components does not fit to operators of size ({nout}, {nin}).")

    def apply(self, input, ctx):
        if input.shape[0] == 0:
            return self.data.evaluate(ctx)
        return self.data.evaluate(ctx) * input


class ADJacobianAction(Action):
    """
    Nonlinear action whose Jacobian with respect to the input is computed by forward-mode
    automatic differentiation.

    In dense mode, value and Jacobian are computed by a single ``jax.jacfwd`` pass. In sparse mode,
    prepare() detects the structural sparsity pattern of the Jacobian once from the jaxpr of the
    kernel and builds a sparsejac Jacobian with one forward pass per color of the column
    intersection graph. The pattern contains every entry that is nonzero at some input, so dense
    and sparse mode give the same Jacobian everywhere.

    Args:
      kernel (callable): ``kernel(input, *dependencies) -> output``.
      argsizes (tuple): (output size, input size).
      dependencies (str): Subset of "XTIL".
      bonus_quadorder (int): Additional quadrature order.
      sparse_jacobian (bool): Use the colored sparse Jacobian.
      name (str): Name used in printouts.
    """
    has_jacobian = True

    def __init__(self, kernel, argsizes, dependencies="", bonus_quadorder=0, sparse_jacobian=False,
                 name="ADJacobianAction"):
        super().__init__(kernel, argsizes, dependencies, bonus_quadorder, name)
        if self.argsizes is None:
            raise ConfigurationError(f"{name} needs argsizes (output size, input size).")
        self.sparse_jacobian = sparse_jacobian
        self.sparsity = None
        self._sparse_jacobian = None

    def prepare(self, dim):
        """Detects the sparsity pattern and builds the colored Jacobian in sparse mode."""
        if not self.sparse_jacobian or self.sparsity is not None:
            return
        nout, nin = self.argsizes
        ctx = EvaluationContext(jnp.zeros(dim), jnp.zeros(()), jnp.zeros(3, dtype=int), jnp.zeros(dim), jnp.zeros(dim))
        pattern = jacobian_sparsity(self.apply, jnp.zeros(nin), ctx)
        if pattern.shape != (nout, nin):
            raise ConfigurationError(f"{self.name}: kernel returns {pattern.shape[0]} values, argsizes say {nout}.")
        self.sparsity = jsparse.BCOO.fromdense(jnp.asarray(pattern, dtype=float))
        self.nnz = int(pattern.sum())
        if self.nnz > 0:
            # built outside of any trace, the coloring needs concrete indices
            self._sparse_jacobian = sparsejac.jacfwd(self.apply, sparsity=self.sparsity, argnums=0)

    def value_and_jacobian(self, input, ctx):
        """Returns the output (nout,) and its Jacobian (nout, nin) at one evaluation context."""
        if self.sparse_jacobian:
            if self.sparsity is None:
                raise ConfigurationError(f"{self.name}: prepare() has to be called before sparse Jacobians are evaluated.")
            value = self.apply(input, ctx)
            if self.nnz == 0:
                return value, jnp.zeros(self.argsizes)
            return value, self._sparse_jacobian(input, ctx).todense()

        def value_twice(u):
            value = self.apply(u, ctx)
            return value, value
        jacobian, value = jax.jacfwd(value_twice, has_aux=True)(input)
        return value, jacobian


class UserJacobianAction(Action):
    """
    Nonlinear action with a user supplied Jacobian ``jacobian(input, *dependencies) -> (nout, nin)``.
    """
    has_jacobian = True

    def __init__(self, kernel, jacobian, argsizes, dependencies="", bonus_quadorder=0, name="UserJacobianAction"):
        super().__init__(kernel, argsizes, dependencies, bonus_quadorder, name)
        self._bound_jacobian = bind_kernel(jacobian, self.flags)

    def value_and_jacobian(self, input, ctx):
        return self.apply(input, ctx), jnp.asarray(self._bound_jacobian(ctx, input))


def as_action(action):
    """Converts None, numbers and data functions into actions."""
    match action:
        case None:
            return NoAction()
        case Action():
            return action
        case DataFunction():
            return DataAction(action)
        case int() | float():
            return ScalarAction(action)
        case _:
            raise ConfigurationError(f"Can not convert {action!r} into an action.")
