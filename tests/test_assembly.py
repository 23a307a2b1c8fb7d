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


def test_mass_and_stiffness():

    import jax
    import numpy as np
    import pytest

    from robustfem.assembler import Assembler
    from robustfem.fevector import FEMatrix, FEVector
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.pdeoperators import LaplaceOperator, ReactionOperator
    from robustfem.spaces import FESpace, H1P1, H1P2
    from robustfem.userdata import DataFunction
    from robustfem.utility import UnflushedWriteError

    jax.config.update("jax_enable_x64", True)

    mesh = unit_square(Triangle2D, (4, 4))

    # the entries of the P1 mass matrix sum up to the area
    space = FESpace(H1P1(), mesh)
    sources = FEVector([space])
    M = FEMatrix([space])
    for pattern in ReactionOperator().patterns(0, 0):
        Assembler(pattern).assemble_matrix(M, sources)
    with pytest.raises(UnflushedWriteError):
        M.csr
    M.flush()
    assert np.isclose(M.csr.sum(), 1.)
    assert np.allclose((M.csr - M.csr.T).data, 0.)

    # constants are in the kernel of the stiffness matrix
    space = FESpace(H1P2(), mesh)
    sources = FEVector([space])
    A = FEMatrix([space])
    for pattern in LaplaceOperator().patterns(0, 0):
        Assembler(pattern).assemble_matrix(A, sources)
    A.flush()
    assert np.allclose(A.csr @ np.ones(space.ndofs), 0., atol=1e-12)

    # x^T A x is the Dirichlet energy of the interpolant
    sources[0].interpolate(DataFunction(lambda x: x[0], dependencies="X"))
    assert np.isclose(sources.entries @ (A.csr @ sources.entries), 1.)

    # fill keeps the pattern
    nnz = A.csr.nnz
    A.fill(0.)
    assert A.csr.nnz == nnz and np.all(A.csr.data == 0.)


def test_linear_forms_with_fixed_arguments():

    import jax
    import numpy as np

    from robustfem.assembler import Assembler
    from robustfem.fevector import FEMatrix, FEVector
    from robustfem.functionoperators import Identity
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.pdeoperators import LinearForm, ReactionOperator
    from robustfem.spaces import FESpace, H1P2

    jax.config.update("jax_enable_x64", True)

    mesh = unit_square(Triangle2D, (3, 3))
    space = FESpace(H1P2(), mesh)
    solution = FEVector([space])
    rng = np.random.default_rng(2)
    solution.entries[:] = rng.standard_normal(space.ndofs)

    M = FEMatrix([space])
    for pattern in ReactionOperator().patterns(0, 0):
        Assembler(pattern).assemble_matrix(M, solution)
    M.flush()

    # (u, v) with u fixed at the current solution equals M u
    b = FEVector([space])
    for pattern in LinearForm(Identity, None, fixed=[(Identity, 0)]).patterns(0):
        Assembler(pattern).assemble_vector(b, solution)
    assert np.allclose(b.entries, M.csr @ solution.entries, atol=1e-12)

    # constant right-hand side: the entries sum to the integral
    b = FEVector([space])
    for pattern in LinearForm(Identity, 2.).patterns(0):
        Assembler(pattern).assemble_vector(b, solution)
    assert np.isclose(b.entries.sum(), 2.)


def test_assembly_is_linear_in_fixed_arguments():

    import jax
    import numpy as np

    from robustfem.assembler import Assembler
    from robustfem.fevector import FEMatrix, FEVector
    from robustfem.functionoperators import Gradient
    from robustfem.mesh import Quadrilateral2D
    from robustfem.mesher import unit_square
    from robustfem.pdeoperators import LaplaceOperator, LinearForm
    from robustfem.spaces import FESpace, H1P2

    jax.config.update("jax_enable_x64", True)

    mesh = unit_square(Quadrilateral2D, (3, 2))
    space = FESpace(H1P2(), mesh)
    rng = np.random.default_rng(5)
    u1, u2 = FEVector([space]), FEVector([space])
    u1.entries[:] = rng.standard_normal(space.ndofs)
    u2.entries[:] = rng.standard_normal(space.ndofs)
    alpha, beta = 0.7, -2.3
    combined = FEVector([space])
    combined.entries[:] = alpha * u1.entries + beta * u2.entries

    (pattern,) = LinearForm(Gradient, None, fixed=[(Gradient, 0)]).patterns(0)
    assembler = Assembler(pattern)
    vectors = []
    for sources in (u1, u2, combined):
        b = FEVector([space])
        assembler.assemble_vector(b, sources)
        vectors.append(b.entries.copy())
    assert np.allclose(vectors[2], alpha * vectors[0] + beta * vectors[1], atol=1e-12)

    # and agrees with the stiffness matrix applied to the combination
    A = FEMatrix([space])
    for pattern in LaplaceOperator().patterns(0, 0):
        Assembler(pattern).assemble_matrix(A, combined)
    A.flush()
    assert np.allclose(vectors[2], A.csr @ combined.entries, atol=1e-11)


def test_face_integrals():

    import jax
    import jax.numpy as jnp
    import numpy as np

    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Identity, Jump, Average, NormalFlux
    from robustfem.integrators import ItemIntegrator, L2NormIntegrator, evaluate, integrate
    from robustfem.mesh import AssemblyType, Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.spaces import FESpace, H1P1, L2P0, HDIVRT0
    from robustfem.userdata import DataFunction

    jax.config.update("jax_enable_x64", True)

    mesh = unit_square(Triangle2D, (3, 3))
    one = DataFunction(1.)
    assert np.isclose(integrate(mesh, one, 0, AssemblyType.ON_BFACES)[0], 4.)
    assert np.allclose(integrate(mesh, one, 0, AssemblyType.ON_BFACES, regions=[1, 3], itemwise=True).sum(), 2.)
    assert np.isclose(integrate(mesh, DataFunction(lambda x: x[0] * x[1], dependencies="X"), 2)[0], 0.25)

    linear = DataFunction(lambda x: 1. + x[0] - 2. * x[1], dependencies="X")

    # continuous functions have no jumps
    solution = FEVector([FESpace(H1P1(), mesh)])
    solution[0].interpolate(linear)
    jumps = evaluate(L2NormIntegrator(Jump(Identity), assembly_type=AssemblyType.ON_IFACES), solution)
    assert jumps[0] < 1e-24
    averages = evaluate(L2NormIntegrator(Average(Identity), assembly_type=AssemblyType.ON_IFACES), solution)
    assert averages[0] > 0.

    # discontinuous functions do
    solution = FEVector([FESpace(L2P0(), mesh)])
    solution[0].interpolate(linear)
    jumps = evaluate(L2NormIntegrator(Jump(Identity), assembly_type=AssemblyType.ON_IFACES), solution)
    assert jumps[0] > 1e-3

    # normal fluxes of RT0 functions are continuous and their boundary integral is the divergence integral
    space = FESpace(HDIVRT0(), mesh)
    solution = FEVector([space])
    solution[0].interpolate(DataFunction(lambda x: jnp.stack([x[0], x[1]]), ncomponents=2, dependencies="X"))
    jumps = evaluate(L2NormIntegrator(Jump(NormalFlux), assembly_type=AssemblyType.ON_IFACES), solution)
    assert jumps[0] < 1e-24
    outflow = ItemIntegrator(None, [(NormalFlux, 0)], AssemblyType.ON_BFACES).integrate_items(solution)
    assert np.isclose(outflow.sum(), 2.)


def test_configuration_errors():

    import jax
    import pytest

    from robustfem.assembler import Assembler, AssemblyPattern, PatternArgument
    from robustfem.fevector import FEVector
    from robustfem.functionoperators import Divergence, Identity, NormalFlux
    from robustfem.integrators import ItemIntegrator
    from robustfem.mesh import Triangle2D
    from robustfem.mesher import unit_square
    from robustfem.spaces import FESpace, H1P1
    from robustfem.userdata import NoAction
    from robustfem.utility import ConfigurationError, UnflushedWriteError

    jax.config.update("jax_enable_x64", True)

    mesh = unit_square(Triangle2D, (1, 1))
    solution = FEVector([FESpace(H1P1(), mesh)])

    # divergence of a scalar field
    with pytest.raises(ConfigurationError):
        ItemIntegrator(None, [(Divergence, 0)]).integrate_items(solution)

    # normal fluxes need faces
    with pytest.raises(ConfigurationError):
        ItemIntegrator(None, [(NormalFlux, 0)]).integrate_items(FEVector([FESpace(H1P1(ncomponents=2), mesh)]))

    # roles do not fit to the kind of the pattern
    with pytest.raises(ConfigurationError):
        AssemblyPattern('bilinear', (PatternArgument(Identity, 0, 'test'),), NoAction())
    with pytest.raises(ConfigurationError):
        AssemblyPattern('quadrilinear', (PatternArgument(Identity, 0, 'test'),), NoAction())

    # wrong assembly routine
    pattern = AssemblyPattern('linear', (PatternArgument(Identity, 0, 'test'),), NoAction())
    with pytest.raises(ConfigurationError):
        Assembler(pattern).integrate_items(solution)

    # nested assembly into the same target
    with solution.assembling():
        with pytest.raises(UnflushedWriteError):
            with solution.assembling():
                pass
