# utility.py
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
This module contains some useful functions, including:

- Error classes for misconfigured assembly and unflushed sparse structures
- Functions for manipulating index arrays (unique rows, region masks)
- Structural sparsity patterns of Jacobians, traced from the jaxpr of a kernel
"""

import jax
import numpy as np


class ConfigurationError(ValueError):
    """
    Raised when an operator, finite element, geometry, action or solver option
    cannot be combined as requested. Detected while building patterns and evaluators.
    """


class UnflushedWriteError(RuntimeError):
    """
    Raised when a sparse structure with staged writes is read before flush()
    or when it is written to while an assembly into it is in progress.
    """


def unique_rows(rows):
    """
    Unique rows of an array, sorted lexicographically.

    Args:
      rows (np.ndarray): Array of shape (n, m).

    Returns:
      tuple: (unique rows, index of first occurrence, inverse mapping)
    """
    rows = np.asarray(rows)
    unique, first, inverse = np.unique(rows, axis=0, return_index=True, return_inverse=True)
    return unique, first, inverse.reshape(-1)


def regions_mask(item_regions, regions):
    """
    Boolean mask of items whose region is contained in regions. An empty selection means all regions.
    """
    item_regions = np.asarray(item_regions)
    if regions is None or len(regions) == 0:
        return np.ones(item_regions.shape[0], dtype=bool)
    return np.isin(item_regions, np.asarray(regions))


### Structural Jacobian sparsity

# Primitives whose output element i depends on element i of every operand (scalars broadcast).
_ELEMENTWISE = frozenset([
    "abs", "acos", "acosh", "add", "add_any", "and", "asin", "asinh", "atan", "atan2", "atanh", "cbrt", "ceil",
    "clamp", "conj", "convert_element_type", "copy", "copy_p", "cos", "cosh", "digamma", "div", "eq", "erf",
    "erf_inv", "erfc", "exp", "exp2", "expm1", "floor", "ge", "gt", "imag", "integer_pow", "is_finite", "le",
    "lgamma", "log", "log1p", "logistic", "lt", "max", "min", "mul", "ne", "neg", "nextafter", "not", "or", "pow",
    "real", "reduce_precision", "rem", "round", "rsqrt", "select_n", "sign", "sin", "sinh", "sqrt", "square",
    "stop_gradient", "sub", "tan", "tanh", "xor"])
_RESHAPING = frozenset(["broadcast_in_dim", "reshape", "squeeze", "concatenate", "slice", "transpose"])
_REDUCTIONS = frozenset(["reduce_sum", "reduce_max", "reduce_min", "reduce_prod", "reduce_and", "reduce_or",
                         "argmax", "argmin"])
_CALLS = frozenset(["pjit", "jit", "closed_call", "core_call", "custom_jvp_call", "custom_vjp_call",
                    "custom_vjp_call_jaxpr", "remat", "checkpoint"])


def jacobian_sparsity(fn, x, *args):
    """
    Structural sparsity pattern of the Jacobian of ``fn(x, *args)`` with respect to the vector x.

    The jaxpr of fn is traced once and the dependence of every array element on the entries of x
    is propagated through its equations. Branches (``where``, ``min``, ``max``) contribute all of
    their operands, so the pattern does not depend on the point of evaluation. Primitives without a
    dedicated rule make each of their outputs depend on everything their operands depend on.

    Args:
      fn (callable): Function returning a vector.
      x (jnp.ndarray): Vector of shape (n,), only its shape and dtype are used.
      *args: Further arguments of fn, treated as independent of x.

    Returns:
      np.ndarray: Boolean array of shape (output size, n).
    """
    closed = jax.make_jaxpr(fn)(x, *args)
    jaxpr = closed.jaxpr
    nin = int(np.size(x))
    deps = [np.eye(nin, dtype=bool).reshape(np.shape(x) + (nin,))]
    deps += [np.zeros(tuple(v.aval.shape) + (nin,), dtype=bool) for v in jaxpr.invars[1:]]
    (out,) = _jaxpr_dependencies(jaxpr, deps, [None] * len(deps), nin, closed.consts)
    return out.reshape(-1, nin)


def _jaxpr_dependencies(jaxpr, deps, values, nin, consts=()):
    env, known = {}, {}
    for v, d, value in zip(jaxpr.invars, deps, values):
        env[v] = d
        if value is not None:
            known[v] = value
    for i, v in enumerate(jaxpr.constvars):
        env[v] = np.zeros(tuple(v.aval.shape) + (nin,), dtype=bool)
        if i < len(consts):
            known[v] = np.asarray(consts[i])

    def read(v):
        if hasattr(v, "val"):  # literal
            return np.zeros(np.shape(v.val) + (nin,), dtype=bool), np.asarray(v.val)
        return env[v], known.get(v)

    for eqn in jaxpr.eqns:
        in_deps, in_values = zip(*[read(v) for v in eqn.invars]) if eqn.invars else ((), ())
        out_deps = _equation_dependencies(eqn, list(in_deps), list(in_values), nin)
        for v, d in zip(eqn.outvars, out_deps):
            env[v] = d
        name = eqn.primitive.name
        if (name in _ELEMENTWISE or name in _RESHAPING) and all(val is not None for val in in_values):
            with jax.ensure_compile_time_eval():
                known[eqn.outvars[0]] = np.asarray(eqn.primitive.bind(*in_values, **eqn.params))
    return [read(v)[0] for v in jaxpr.outvars]


def _equation_dependencies(eqn, deps, values, nin):
    name = eqn.primitive.name
    params = eqn.params
    shapes = [tuple(v.aval.shape) for v in eqn.outvars]

    if name in _ELEMENTWISE:
        out = np.zeros(shapes[0] + (nin,), dtype=bool)
        for d in deps:
            out = out | d
        return [out]
    if name == "broadcast_in_dim":
        d = deps[0]
        expanded = [1] * len(shapes[0])
        for i, dim in enumerate(params["broadcast_dimensions"]):
            expanded[dim] = d.shape[i]
        return [np.broadcast_to(d.reshape(expanded + [nin]), shapes[0] + (nin,))]
    if name == "squeeze" or (name == "reshape" and params.get("dimensions") is None):
        return [deps[0].reshape(shapes[0] + (nin,))]
    if name == "transpose":
        permutation = tuple(params["permutation"])
        return [deps[0].transpose(permutation + (len(permutation),))]
    if name == "concatenate":
        return [np.concatenate(deps, axis=params["dimension"])]
    if name == "slice":
        strides = params["strides"] or (None,) * len(params["start_indices"])
        index = tuple(slice(s, l, st) for s, l, st in zip(params["start_indices"], params["limit_indices"], strides))
        return [deps[0][index]]
    if name in _REDUCTIONS:
        return [deps[0].any(axis=tuple(params["axes"]))]
    if name == "dot_general":
        return [_dot_general_dependencies(deps[0], deps[1], params["dimension_numbers"], nin)]
    if name in ("dynamic_slice", "dynamic_update_slice"):
        nstart = 1 if name == "dynamic_slice" else 2
        starts = values[nstart:]
        if all(s is not None for s in starts):
            sizes = params["slice_sizes"] if name == "dynamic_slice" else deps[1].shape[:-1]
            # start indices are clamped into the operand as in lax
            index = tuple(slice(int(min(max(int(s), 0), n - size)), int(min(max(int(s), 0), n - size)) + size)
                          for s, n, size in zip(starts, deps[0].shape[:-1], sizes))
            if name == "dynamic_slice":
                return [deps[0][index]]
            out = deps[0].copy()
            out[index] = deps[1]
            return [out]
    if name == "gather" and values[1] is not None:
        # gather the element ids of the operand, filled entries are clipped into range
        size = int(np.prod(deps[0].shape[:-1]))
        ids = np.arange(size).reshape(deps[0].shape[:-1])
        with jax.ensure_compile_time_eval():
            taken = np.asarray(eqn.primitive.bind(ids, values[1], **params)).reshape(-1)
        taken = np.clip(taken, 0, max(size - 1, 0))
        return [deps[0].reshape(-1, nin)[taken].reshape(shapes[0] + (nin,))]
    if name in _CALLS:
        for key in ("jaxpr", "call_jaxpr", "fun_jaxpr"):
            if key in params:
                inner = params[key]
                inner_jaxpr = getattr(inner, "jaxpr", inner)
                if len(inner_jaxpr.invars) == len(deps):
                    return _jaxpr_dependencies(inner_jaxpr, deps, values, nin, getattr(inner, "consts", ()))
                break

    union = np.zeros(nin, dtype=bool)
    for d in deps:
        union |= d.reshape(-1, nin).any(axis=0)
    return [np.broadcast_to(union, shape + (nin,)).copy() for shape in shapes]


def _dot_general_dependencies(a, b, dimension_numbers, nin):
    (lc, rc), (lb, rb) = dimension_numbers
    ranka, rankb = a.ndim - 1, b.ndim - 1
    lfree = [i for i in range(ranka) if i not in lc and i not in lb]
    rfree = [i for i in range(rankb) if i not in rc and i not in rb]
    batch = tuple(a.shape[i] for i in lb)
    a = a.transpose(list(lb) + lfree + list(lc) + [ranka])
    a = a.reshape(batch + tuple(a.shape[len(lb):len(lb) + len(lfree)]) + (-1, nin)).any(axis=-2)
    b = b.transpose(list(rb) + rfree + list(rc) + [rankb])
    b = b.reshape(batch + tuple(b.shape[len(rb):len(rb) + len(rfree)]) + (-1, nin)).any(axis=-2)
    a = a.reshape(a.shape[:-1] + (1,) * len(rfree) + (nin,))
    b = b.reshape(batch + (1,) * len(lfree) + b.shape[len(batch):])
    return a | b
