# solver.py
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
Solution of PDE descriptions: assembly of the block system per assembly trigger, Dirichlet and
global constraints, direct sparse solves and the fixed-point loop for nonlinear problems (Picard
or Newton, with optional damping and Anderson acceleration).

Example:
  >>> pde = PoissonProblem()
  >>> pde.add_rhsdata(0, LinearForm(Identity, f))
  >>> pde.add_boundarydata(0, [1, 2, 3, 4], HomogeneousDirichletBoundary)
  >>> solution = FEVector([FESpace(H1P2(), mesh)])
  >>> result = solve(pde, solution, verbose=1)
"""

from collections import deque
from dataclasses import dataclass, field
import time

import jax
import numpy as np
import scipy as scp
import scipy.sparse as sparse
from flax.core import FrozenDict

from robustfem.assembler import Assembler
from robustfem.boundarydata import apply_essential_constraint, boundarydata
from robustfem.fevector import FEMatrix, FEVector
from robustfem.pdeoperators import AssemblyAlways, AssemblyEachTimeStep, AssemblyNever
from robustfem.utility import ConfigurationError

_clock = time.time


### Configuration

_DEFAULTS = {
    "maxiterations": None,
    "target_residual": 1e-10,
    "damping": 0.,
    "anderson_iterations": 0,
    "anderson_damping": 1.,
    "anderson_unknowns": None,
    "anderson_metric": "l2",
    "fixed_penalty": 1e60,
    "linsolver": "lapack",
    "skip_preps": True,
    "verbose": 0,
}


def solver_config(nonlinear=False, **kwargs):
    """
    Validated, immutable solver configuration.

    Args:
      nonlinear (bool): Selects the default of maxiterations (10 for nonlinear, 1 for linear problems).
      **kwargs: Options, see the table below.

    Options:
      maxiterations (int): Maximal number of linear solves.
      target_residual (float): Nonlinear iterations stop below this residual.
      damping (float): Weight of the old iterate in the update, 0 means no damping.
      anderson_iterations (int): Depth of the Anderson acceleration, 0 switches it off.
      anderson_damping (float): Damping of the Anderson update, 1 means no damping.
      anderson_unknowns (list): Unknowns that are accelerated, all if None.
      anderson_metric (str): Metric of the least squares problem, only 'l2'.
      fixed_penalty (float): Penalty of fixed dofs.
      linsolver (str): 'lapack' or 'umfpack'.
      skip_preps (bool): Reuse prepared assemblers.
      verbose (int): 0 silent, 1 residuals, 2 also timings.

    Returns:
      FrozenDict: The configuration.

    Raises:
      ConfigurationError: For unknown options or values.
    """
    unknown = set(kwargs) - set(_DEFAULTS)
    if unknown:
        raise ConfigurationError(f"Unknown solver options {sorted(unknown)}, available are {sorted(_DEFAULTS)}.")
    config = {**_DEFAULTS, **kwargs}
    if config["maxiterations"] is None:
        config["maxiterations"] = 10 if nonlinear else 1
    if config["linsolver"] not in ("lapack", "umfpack"):
        raise ConfigurationError(f"Type of solver '{config['linsolver']}' not supported. Choose 'lapack' or 'umfpack'.")
    if config["anderson_metric"] != "l2":
        raise ConfigurationError(f"Anderson metric '{config['anderson_metric']}' not supported, only 'l2'.")
    if config["anderson_unknowns"] is not None:
        config["anderson_unknowns"] = tuple(config["anderson_unknowns"])
    return FrozenDict(config)


@jax.tree_util.register_dataclass
@dataclass
class SolverResult:
    """
    Outcome of a solve, non-convergence is reported here and not raised.

    Attributes:
      residual: Final residual.
      iterations: Number of linear solves.
      converged: True if the target residual was reached.
      residuals: Residual after every iteration.
    """
    residual: float
    iterations: int
    converged: bool
    residuals: list = field(default_factory=list)


### Linear algebra

def linear_solve_scipy(mat, rhs, solver="lapack", verbose=0):
    """
    Solves a sparse linear system with a SciPy direct solver.

    Args:
      mat (scipy.sparse matrix): System matrix.
      rhs (np.ndarray): Right-hand side.
      solver (str): 'lapack' or 'umfpack'.
      verbose (int): Print the relative residual and the solver time if >= 2.

    Returns:
      np.ndarray: Solution vector.
    """
    if verbose >= 2:
        start = time.time()

    match solver:
        case "lapack":
            x = scp.sparse.linalg.spsolve(mat.tocsc(), rhs)
        case "umfpack":
            x = scp.sparse.linalg.spsolve(mat.tocsc(), rhs, use_umfpack=True)
        case _:
            raise ConfigurationError("Type of solver not supported. Choose 'lapack' or 'umfpack'")

    if verbose >= 2:
        residual = rhs - mat @ x
        print(f"The relative residual is: {np.linalg.norm(residual) / (np.linalg.norm(rhs) + 1e-12)}.")
        print("Direct solver time: ", time.time() - start)
    return x


class AndersonAcceleration:
    """
    Anderson acceleration of a fixed-point iteration ``x -> g(x)`` on a subset of the dofs.

    Keeps the last depth differences of the fixed-point values and residuals and extrapolates the
    next iterate by a small least squares problem.

    Args:
      depth (int): Number of stored differences.
      damping (float): Mixing of the residual, 1 means undamped.
      dofs (np.ndarray, optional): Accelerated dofs, all if None.
    """

    def __init__(self, depth, damping=1., dofs=None):
        self.depth = depth
        self.damping = damping
        self.dofs = dofs
        self.values = deque(maxlen=depth + 1)
        self.residuals = deque(maxlen=depth + 1)

    def update(self, x, gx):
        """Next iterate from the old iterate x and the fixed-point value gx."""
        idx = self.dofs if self.dofs is not None else slice(None)
        f = gx[idx] - x[idx]
        self.values.append(gx[idx].copy())
        self.residuals.append(f.copy())
        out = gx.copy()
        if len(self.residuals) < 2:
            out[idx] = x[idx] + self.damping * f
            return out
        dF = np.stack([b - a for a, b in zip(list(self.residuals)[:-1], list(self.residuals)[1:])], axis=1)
        dG = np.stack([b - a for a, b in zip(list(self.values)[:-1], list(self.values)[1:])], axis=1)
        gamma, *_ = np.linalg.lstsq(dF, f, rcond=1e-8)
        out[idx] = gx[idx] - dG @ gamma - (1. - self.damping) * (f - dF @ gamma)
        return out


### System assembly

class SystemAssembly:
    """
    Block system of a PDE description, assembled per assembly trigger.

    The contributions of every trigger level are kept in separate matrices and vectors, so that
    e.g. constant stiffness matrices are assembled once while operators with fixed arguments are
    reassembled in every iteration.

    Args:
      pde (PDEDescription): The problem.
      solution (FEVector): Provides the spaces of the unknowns.
      verbose (int): Verbosity level.
    """

    def __init__(self, pde, solution, verbose=0):
        if len(solution) != pde.nunknowns:
            raise ConfigurationError(f"{pde.name} has {pde.nunknowns} unknowns, the solution has {len(solution)} blocks.")
        self.pde = pde
        self.spaces = [block.space for block in solution]
        self.verbose = verbose
        self.entries = []
        for operator, row, col in pde.operators():
            if operator.trigger == AssemblyNever:
                continue
            for pattern in operator.patterns(row, col):
                self.entries.append((operator.trigger, Assembler(pattern, verbose)))
        self.levels = {}
        self._boundary = None

    def __repr__(self):
        return f"SystemAssembly({self.pde.name}, {len(self.entries)} patterns)"

    @property
    def ndofs(self):
        return sum(space.ndofs for space in self.spaces)

    def assemble(self, solution, time=0., reassemble=AssemblyEachTimeStep, skip_preps=True):
        """
        Reassembles all trigger levels >= reassemble and the levels that were never assembled.

        Returns:
          tuple: (A, b) as csr matrix and array, sums over all levels.
        """
        if self.verbose >= 2:
            start = _clock()
        for trigger in sorted({t for t, _ in self.entries}):
            if trigger in self.levels and trigger < reassemble:
                continue
            A = FEMatrix(self.spaces)
            b = FEVector(self.spaces)
            for t, assembler in self.entries:
                if t != trigger:
                    continue
                match assembler.pattern.kind:
                    case 'bilinear':
                        assembler.assemble_matrix(A, solution, time, skip_preps)
                    case 'linear':
                        assembler.assemble_vector(b, solution, time, skip_preps)
                    case 'nonlinear':
                        assembler.assemble_newton(A, b, solution, time, skip_preps)
            self.levels[trigger] = (A.flush(), b)
        if self.verbose >= 2:
            print(f"System assembly time: {_clock() - start:.3f} s")
        return self.system()

    def system(self):
        """Sum of the current matrices and vectors of all levels."""
        A = sparse.csr_matrix((self.ndofs, self.ndofs))
        b = np.zeros(self.ndofs)
        for matrix, vector in self.levels.values():
            A = A + matrix.csr
            b = b + vector.entries
        return A.tocsr(), b

    def boundary_values(self, solution, time, config):
        """Global dofs and values of all Dirichlet conditions, cached for time-independent data."""
        time_dependent = any(b.time_dependent for bs in self.pde.boundary.values() for b in bs)
        if self._boundary is not None and (not time_dependent or self._boundary[0] == time):
            return self._boundary[1]
        dofs, values = [np.zeros(0, dtype=int)], [np.zeros(0)]
        for unknown, boundaries in self.pde.boundary.items():
            if not boundaries:
                continue
            block = solution[unknown]
            bdofs, bvalues = boundarydata(block, boundaries, time, config["fixed_penalty"], config["linsolver"])
            dofs.append(block.offset + bdofs)
            values.append(bvalues)
        self._boundary = (time, (np.concatenate(dofs), np.concatenate(values)))
        return self._boundary[1]


def _constrained_system(system, solution, A, b, dofs, values, config):
    """Applies global constraints and Dirichlet penalties. Returns (A, b, free)."""
    free = np.ones(len(b), dtype=bool)
    for constraint in system.pde.constraints:
        A, b, fixed = constraint.apply(A, b, solution, config["fixed_penalty"])
        free[fixed] = False
    A, b = apply_essential_constraint(A, b, dofs, values, config["fixed_penalty"])
    free[dofs] = False
    return A, b, free


def _anderson_dofs(solution, unknowns):
    if unknowns is None:
        return None
    return np.concatenate([np.arange(solution[u].offset, solution[u].last) for u in unknowns])


def fixed_point_iteration(system, solution, config, time=0., transform=None, reassemble=AssemblyEachTimeStep):
    """
    Solves the (linearized) system until the residual drops below the target residual or
    maxiterations linear solves are done. Linear problems are solved once.

    Args:
      system (SystemAssembly): Assembly of the problem.
      solution (FEVector): Initial guess, overwritten by the solution.
      config (FrozenDict): Solver configuration.
      time (float): Time passed to the data.
      transform (callable, optional): ``transform(A, b) -> (A, b)`` applied to the assembled
        system before constraints, e.g. by time integration rules.
      reassemble (AssemblyTrigger): Lowest trigger level reassembled in the first iteration.

    Returns:
      SolverResult: Residual, number of iterations and convergence flag.
    """
    verbose = config["verbose"]
    nonlinear = system.pde.nonlinear
    anderson = None
    if config["anderson_iterations"] > 0:
        anderson = AndersonAcceleration(config["anderson_iterations"], config["anderson_damping"],
                                        _anderson_dofs(solution, config["anderson_unknowns"]))

    residuals = []
    residual = np.inf
    converged = False
    iterations = 0
    while True:
        dofs, values = system.boundary_values(solution, time, config)
        solution.entries[dofs] = values
        A, b = system.assemble(solution, time, reassemble if iterations == 0 else AssemblyAlways, config["skip_preps"])
        if transform is not None:
            A, b = transform(A, b)
        A, b, free = _constrained_system(system, solution, A, b, dofs, values, config)

        if nonlinear and iterations > 0:
            residual = float(np.linalg.norm((A @ solution.entries - b)[free]))
            residuals.append(residual)
            if verbose >= 1:
                print(f"Residual after iteration {iterations}: {residual}")
            if residual < config["target_residual"]:
                converged = True
                break
            if iterations >= config["maxiterations"]:
                break

        x = linear_solve_scipy(A, b, config["linsolver"], verbose)
        iterations += 1
        if anderson is not None:
            x = anderson.update(solution.entries, x)
        elif config["damping"] > 0:
            x = config["damping"] * solution.entries + (1. - config["damping"]) * x
        solution.entries[:] = x
        for constraint in system.pde.constraints:
            constraint.realize(solution)

        if not nonlinear:
            residual = float(np.linalg.norm((A @ solution.entries - b)[free]))
            residuals.append(residual)
            scale = max(1., float(np.linalg.norm(b[free])))
            converged = bool(np.isfinite(residual) and residual < config["target_residual"] * scale)
            if verbose >= 1:
                print(f"Residual after iteration {iterations}: {residual}")
            break

    if not converged and verbose >= 0:
        print(f"Warning: {system.pde.name} could not converge! Residual {residual} after {iterations} iterations.")
    elif verbose >= 1:
        print(f"{system.pde.name} converged after {iterations} iterations with residual {residual}.")
    return SolverResult(residual, iterations, converged, residuals)


def solve(pde, solution, **kwargs):
    """
    Solves a PDE description, the solution vector holds the initial guess and is overwritten.

    Args:
      pde (PDEDescription): The problem.
      solution (FEVector): One block per unknown of pde.
      **kwargs: Solver options, see solver_config.

    Returns:
      SolverResult: Non-convergence is reported here and not raised.
    """
    config = solver_config(pde.nonlinear, **kwargs)
    system = SystemAssembly(pde, solution, config["verbose"])
    return fixed_point_iteration(system, solution, config)
