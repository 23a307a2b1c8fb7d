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


def test_solver_config():

    import pytest

    from robustfem.solver import solver_config
    from robustfem.utility import ConfigurationError

    config = solver_config()
    assert config["maxiterations"] == 1
    assert solver_config(nonlinear=True)["maxiterations"] == 10
    assert solver_config(nonlinear=True, maxiterations=3)["maxiterations"] == 3
    assert solver_config(anderson_unknowns=[0, 1])["anderson_unknowns"] == (0, 1)

    with pytest.raises(ConfigurationError):
        solver_config(maxiteration=3)
    with pytest.raises(ConfigurationError):
        solver_config(linsolver="pardiso")
    with pytest.raises(ConfigurationError):
        solver_config(anderson_metric="h1")

    # the configuration is immutable
    with pytest.raises(Exception):
        config["verbose"] = 2


def test_anderson_acceleration():

    import numpy as np

    from robustfem.solver import AndersonAcceleration

    # linear contraction g(x) = G x + c with a slowly converging fixed-point iteration
    rng = np.random.default_rng(3)
    n = 6
    Q, _ = np.linalg.qr(rng.standard_normal((n, n)))
    G = Q @ np.diag(np.linspace(0.5, 0.95, n)) @ Q.T
    c = rng.standard_normal(n)
    exact = np.linalg.solve(np.eye(n) - G, c)

    x_plain = np.zeros(n)
    x = np.zeros(n)
    anderson = AndersonAcceleration(depth=n)
    for _ in range(25):
        x_plain = G @ x_plain + c
        x = anderson.update(x, G @ x + c)

    assert np.linalg.norm(x_plain - exact) > 1e-2
    assert np.linalg.norm(x - exact) < 1e-6

    # only the selected dofs are extrapolated, the others take the fixed-point value
    anderson = AndersonAcceleration(depth=2, dofs=np.array([0, 1]))
    x = np.zeros(n)
    for _ in range(3):
        gx = G @ x + c
        x_new = anderson.update(x, gx)
        assert np.allclose(x_new[2:], gx[2:])
        x = x_new


def test_periodic_coupling_1d():

    import jax
    import numpy as np

    from robustfem.boundarydata import HomogeneousDirichletBoundary
    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Identity
    from robustfem.globalconstraints import CombineDofs
    from robustfem.mesher import unit_interval
    from robustfem.models import PoissonProblem
    from robustfem.pdeoperators import LinearForm
    from robustfem.solver import solve
    from robustfem.spaces import FESpace, H1P1

    jax.config.update("jax_enable_x64", True)

    # -u'' = 1 with u(0) = 0 and the right end tied to the left end
    mesh = unit_interval(8)
    space = FESpace(H1P1(), mesh)
    x = mesh.coordinates[:, 0]
    left, right = int(np.argmin(x)), int(np.argmax(x))

    pde = PoissonProblem()
    pde.add_rhsdata(0, LinearForm(Identity, 1.))
    pde.add_boundarydata(0, [1], HomogeneousDirichletBoundary)
    pde.add_constraint(CombineDofs(0, 0, [right], [left]))

    solution = FEVector([space])
    assert solve(pde, solution).converged
    assert np.allclose(solution.entries, 0.5 * x * (1. - x), atol=1e-12)


def test_fixed_dofs_and_verbose_output(capsys):

    import jax
    import numpy as np

    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Identity
    from robustfem.globalconstraints import FixedDofs
    from robustfem.mesher import unit_interval
    from robustfem.models import PoissonProblem
    from robustfem.pdeoperators import LinearForm
    from robustfem.solver import solve
    from robustfem.spaces import FESpace, H1P1

    jax.config.update("jax_enable_x64", True)

    mesh = unit_interval(4)
    x = mesh.coordinates[:, 0]
    ends = np.where((x == 0.) | (x == 1.))[0]

    pde = PoissonProblem()
    pde.add_rhsdata(0, LinearForm(Identity, 1.))
    pde.add_constraint(FixedDofs(0, ends, 0.))

    solution = FEVector([FESpace(H1P1(), mesh)])
    result = solve(pde, solution, verbose=1)
    assert result.converged
    assert np.allclose(solution.entries, 0.5 * x * (1. - x), atol=1e-12)
    assert "converged" in capsys.readouterr().out


def test_essential_constraint_on_nonsymmetric_system():

    import jax
    import numpy as np
    import scipy.sparse as sparse

    from robustfem.boundarydata import apply_essential_constraint
    from robustfem.solver import linear_solve_scipy

    jax.config.update("jax_enable_x64", True)

    rng = np.random.default_rng(7)
    n = 12
    dense = rng.standard_normal((n, n)) + 6. * np.eye(n)
    fixed = np.array([0, 4, 11])
    # constrained rows with entries that dominate their columns
    dense[fixed] *= 1e3
    b = rng.standard_normal(n)
    values = np.array([1., -2., 0.5])

    A, rhs = apply_essential_constraint(sparse.csr_matrix(dense), b, fixed, values, 1e60)

    # constrained rows are replaced by their penalized diagonal entry
    rows = A[fixed].toarray()
    assert np.allclose(rows[np.arange(3), fixed], 1e60)
    rows[np.arange(3), fixed] = 0.
    assert np.all(rows == 0.)
    free = np.setdiff1d(np.arange(n), fixed)
    assert np.array_equal(A[free].toarray(), dense[free])

    x = linear_solve_scipy(A, rhs, 'lapack', 0)
    assert np.allclose(x[fixed], values, rtol=1e-14)
    expected = np.linalg.solve(dense[np.ix_(free, free)], b[free] - dense[np.ix_(free, fixed)] @ values)
    assert np.allclose(x[free], expected, rtol=1e-10, atol=1e-12)
