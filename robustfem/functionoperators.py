# functionoperators.py
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
Function operators that are applied to finite element basis functions.

A function operator declares

- which derivatives of the basis it needs (0, 1 or 2),
- a shift of the quadrature order (e.g. -1 for first derivatives),
- the number of output components for a field with C components in d dimensions,
- a check that raises a ConfigurationError for unsupported element/geometry combinations,
- a reduction of the pushed forward basis data to its output.

Basis data arrays carry the layout ``values[item, qp, dof, component]`` and
``gradients[item, qp, dof, component, direction]``. Gradients are stored component-major,
i.e. ``[du1/dx1, du1/dx2, du2/dx1, du2/dx2]`` for a two-dimensional vector field.

Composite operators:

- ``Jump(op)``: value on the cell with the larger index minus value on the cell with the smaller index
- ``Average(op)``: arithmetic mean of both sides
- ``ReconstructionIdentity(target)`` etc.: the operator applied to the reconstruction of the basis
  in the target element family
"""

from typing import NamedTuple, Optional

import numpy as np

from robustfem.spaces import H1P1, H1CR, H1BR, HDIVRT0, HDIVBDM1
from robustfem.utility import ConfigurationError


class BasisData(NamedTuple):
    values: np.ndarray
    gradients: Optional[np.ndarray] = None
    hessians: Optional[np.ndarray] = None
    normals: Optional[np.ndarray] = None


class FunctionOperator:
    """
    Base class of the function operators.

    Attributes:
      name (str): Name used in printouts.
      derivatives (int): Highest derivative of the basis the reduction needs.
      quadorder_shift (int): Change of the polynomial order caused by the operator.
      needs_normals (bool): True if the operator can only be evaluated on faces.
    """
    name = 'Operator'
    derivatives = 0
    quadorder_shift = 0
    needs_normals = False

    def __repr__(self):
        return self.name

    def ncomponents(self, ncomponents, dim):
        return ncomponents

    def check(self, fe, geometry):
        """Raises a ConfigurationError if the operator can not be applied to fe on geometry."""
        self.ncomponents(fe.ncomponents, geometry.dim)
        if self.derivatives > 1 and fe.kind in ('Hdiv', 'Hcurl'):
            raise ConfigurationError(f"{self} is not available for {fe.kind} element {fe}.")

    def reduce(self, data):
        raise NotImplementedError

    @property
    def base(self):
        """The operator applied to the basis of the (possibly reconstructed) element."""
        return self

    @property
    def side(self):
        return None

    @property
    def target(self):
        return None


def _require(condition, message):
    if not condition:
        raise ConfigurationError(message)


class _Identity(FunctionOperator):
    name = 'Identity'

    def reduce(self, data):
        return data.values


class IdentityComponent(FunctionOperator):
    """Identity of a single component."""

    def __init__(self, component):
        self.component = component
        self.name = f'IdentityComponent({component})'

    def ncomponents(self, ncomponents, dim):
        _require(self.component < ncomponents, f"{self} needs at least {self.component + 1} components.")
        return 1

    def reduce(self, data):
        return data.values[..., self.component:self.component + 1]


class _Gradient(FunctionOperator):
    name = 'Gradient'
    derivatives = 1
    quadorder_shift = -1

    def ncomponents(self, ncomponents, dim):
        return ncomponents * dim

    def reduce(self, data):
        g = data.gradients
        return g.reshape(g.shape[:-2] + (-1,))


class _SymmetricGradient(FunctionOperator):
    """Symmetric gradient in Voigt notation with doubled off-diagonal entries."""
    name = 'SymmetricGradient'
    derivatives = 1
    quadorder_shift = -1

    def ncomponents(self, ncomponents, dim):
        _require(ncomponents == dim and dim in (2, 3), f"{self} needs a vector field with {dim} components.")
        return 3 if dim == 2 else 6

    def reduce(self, data):
        g = data.gradients
        if g.shape[-1] == 2:
            return np.stack([g[..., 0, 0], g[..., 1, 1], g[..., 0, 1] + g[..., 1, 0]], axis=-1)
        return np.stack([g[..., 0, 0], g[..., 1, 1], g[..., 2, 2], g[..., 1, 2] + g[..., 2, 1],
                         g[..., 0, 2] + g[..., 2, 0], g[..., 0, 1] + g[..., 1, 0]], axis=-1)


class _Divergence(FunctionOperator):
    name = 'Divergence'
    derivatives = 1
    quadorder_shift = -1

    def ncomponents(self, ncomponents, dim):
        _require(ncomponents == dim, f"{self} needs a vector field with {dim} components.")
        return 1

    def reduce(self, data):
        return np.trace(data.gradients, axis1=-2, axis2=-1)[..., None]


class _CurlScalar(FunctionOperator):
    """Rotated gradient (du/dx2, -du/dx1) of a scalar field in 2D."""
    name = 'CurlScalar'
    derivatives = 1
    quadorder_shift = -1

    def ncomponents(self, ncomponents, dim):
        _require(ncomponents == 1 and dim == 2, f"{self} needs a scalar field in 2D.")
        return 2

    def reduce(self, data):
        g = data.gradients[..., 0, :]
        return np.stack([g[..., 1], -g[..., 0]], axis=-1)


class _Curl2D(FunctionOperator):
    name = 'Curl2D'
    derivatives = 1
    quadorder_shift = -1

    def ncomponents(self, ncomponents, dim):
        _require(ncomponents == 2 and dim == 2, f"{self} needs a vector field in 2D.")
        return 1

    def reduce(self, data):
        g = data.gradients
        return (g[..., 1, 0] - g[..., 0, 1])[..., None]


class _Curl3D(FunctionOperator):
    name = 'Curl3D'
    derivatives = 1
    quadorder_shift = -1

    def ncomponents(self, ncomponents, dim):
        _require(ncomponents == 3 and dim == 3, f"{self} needs a vector field in 3D.")
        return 3

    def reduce(self, data):
        g = data.gradients
        return np.stack([g[..., 2, 1] - g[..., 1, 2], g[..., 0, 2] - g[..., 2, 0], g[..., 1, 0] - g[..., 0, 1]], axis=-1)


class _Laplacian(FunctionOperator):
    name = 'Laplacian'
    derivatives = 2
    quadorder_shift = -2

    def reduce(self, data):
        return np.trace(data.hessians, axis1=-2, axis2=-1)


class _Hessian(FunctionOperator):
    name = 'Hessian'
    derivatives = 2
    quadorder_shift = -2

    def ncomponents(self, ncomponents, dim):
        return ncomponents * dim * dim

    def reduce(self, data):
        h = data.hessians
        return h.reshape(h.shape[:-3] + (-1,))


class _NormalFlux(FunctionOperator):
    """Normal component u.n with respect to the global face normal."""
    name = 'NormalFlux'
    needs_normals = True

    def ncomponents(self, ncomponents, dim):
        _require(ncomponents == dim, f"{self} needs a vector field with {dim} components.")
        return 1

    def reduce(self, data):
        return np.einsum('nqdc,nqc->nqd', data.values, data.normals)[..., None]


class _TangentFlux(FunctionOperator):
    """Tangential component u.t with t = (-n2, n1) in 2D."""
    name = 'TangentFlux'
    needs_normals = True

    def ncomponents(self, ncomponents, dim):
        _require(ncomponents == 2 and dim == 2, f"{self} needs a vector field in 2D.")
        return 1

    def reduce(self, data):
        n = data.normals
        t = np.stack([-n[..., 1], n[..., 0]], axis=-1)
        return np.einsum('nqdc,nqc->nqd', data.values, t)[..., None]


class _Trace(FunctionOperator):
    """Trace of a matrix-valued field stored row-major."""
    name = 'Trace'

    def ncomponents(self, ncomponents, dim):
        _require(ncomponents == dim * dim, f"{self} needs a matrix-valued field with {dim * dim} components.")
        return 1

    def reduce(self, data):
        v = data.values
        dim = int(round(np.sqrt(v.shape[-1])))
        return np.sum(v[..., ::dim + 1], axis=-1, keepdims=True)


class _Deviator(FunctionOperator):
    """Deviatoric part of a matrix-valued field stored row-major."""
    name = 'Deviator'

    def ncomponents(self, ncomponents, dim):
        _require(ncomponents == dim * dim, f"{self} needs a matrix-valued field with {dim * dim} components.")
        return ncomponents

    def reduce(self, data):
        v = data.values
        dim = int(round(np.sqrt(v.shape[-1])))
        trace = np.sum(v[..., ::dim + 1], axis=-1, keepdims=True)
        return v - trace * np.eye(dim).reshape(-1) / dim


Identity = _Identity()
Gradient = _Gradient()
SymmetricGradient = _SymmetricGradient()
Divergence = _Divergence()
CurlScalar = _CurlScalar()
Curl2D = _Curl2D()
Curl3D = _Curl3D()
Laplacian = _Laplacian()
Hessian = _Hessian()
NormalFlux = _NormalFlux()
TangentFlux = _TangentFlux()
Trace = _Trace()
Deviator = _Deviator()


class _TwoSided(FunctionOperator):
    """Operator that combines the evaluations of both cells adjacent to a face."""
    needs_normals = True
    kind = None

    def __init__(self, operator):
        _require(operator.side is None, f"{operator} can not be nested in another two-sided operator.")
        self.operator = operator
        self.name = f'{self.kind}({operator})'
        self.derivatives = operator.derivatives
        self.quadorder_shift = operator.quadorder_shift

    def ncomponents(self, ncomponents, dim):
        return self.operator.ncomponents(ncomponents, dim)

    def check(self, fe, geometry):
        self.operator.check(fe, geometry)

    def reduce(self, data):
        return self.operator.reduce(data)

    @property
    def base(self):
        return self.operator

    @property
    def side(self):
        return self.kind

    @property
    def target(self):
        return self.operator.target


class Jump(_TwoSided):
    kind = 'Jump'


class Average(_TwoSided):
    kind = 'Average'


# (source family, target family) pairs with a reconstruction operator
RECONSTRUCTION_PAIRS = {
    (H1BR, HDIVRT0),
    (H1BR, HDIVBDM1),
    (H1CR, HDIVRT0),
    (H1P1, HDIVRT0),
}


class _Reconstruction(FunctionOperator):
    """Applies operator to the reconstruction of the basis into the target family."""
    operator = None

    def __init__(self, target):
        self._target = target
        self.name = f'Reconstruction{self.operator}({target})'
        self.derivatives = self.operator.derivatives
        self.quadorder_shift = self.operator.quadorder_shift

    def ncomponents(self, ncomponents, dim):
        return self.operator.ncomponents(ncomponents, dim)

    def check(self, fe, geometry):
        if (type(fe), type(self._target)) not in RECONSTRUCTION_PAIRS:
            raise ConfigurationError(f"No reconstruction of {fe} into {self._target} is registered.")
        _require(fe.ncomponents == geometry.dim, f"{self} needs a vector field with {geometry.dim} components.")
        self._target.check_geometry(geometry)
        self.operator.check(self._target, geometry)

    def reduce(self, data):
        return self.operator.reduce(data)

    @property
    def target(self):
        return self._target


class ReconstructionIdentity(_Reconstruction):
    operator = Identity


class ReconstructionDivergence(_Reconstruction):
    operator = Divergence


class ReconstructionGradient(_Reconstruction):
    operator = Gradient
