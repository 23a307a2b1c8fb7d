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


def test_ad_jacobians():

    import jax
    import jax.numpy as jnp
    import numpy as np

    from robustfem.userdata import ADJacobianAction, UserJacobianAction, EvaluationContext

    jax.config.update("jax_enable_x64", True)

    def kernel(u):
        return jnp.stack([u[0]**2 * u[1], jnp.sin(u[1]) + u[2], jnp.exp(u[0])])

    def jacobian(u):
        return jnp.array([[2. * u[0] * u[1], u[0]**2, 0.],
                          [0., jnp.cos(u[1]), 1.],
                          [jnp.exp(u[0]), 0., 0.]])

    dense = ADJacobianAction(kernel, (3, 3))
    sparse = ADJacobianAction(kernel, (3, 3), sparse_jacobian=True)
    sparse.prepare(2)
    user = UserJacobianAction(kernel, jacobian, (3, 3))

    # the sparsity pattern is detected once
    assert sparse.nnz == 5

    ctx = EvaluationContext(jnp.zeros(2), 0., jnp.zeros(3, dtype=int), jnp.zeros(2), jnp.zeros(2))
    rng = np.random.default_rng(0)
    for _ in range(5):
        u = jnp.asarray(rng.standard_normal(3))
        value, J = dense.value_and_jacobian(u, ctx)
        assert np.allclose(value, kernel(u), rtol=1e-12)
        assert np.allclose(J, jacobian(u), rtol=1e-10, atol=1e-14)

        value_sparse, J_sparse = sparse.value_and_jacobian(u, ctx)
        assert np.allclose(value_sparse, value, rtol=1e-12)
        assert np.allclose(J_sparse, J, rtol=1e-12, atol=1e-14)

        value_user, J_user = user.value_and_jacobian(u, ctx)
        assert np.allclose(J_user, J, rtol=1e-10, atol=1e-14)

    # batched evaluation as in the assembler
    batch = jnp.asarray(rng.standard_normal((4, 3)))
    ctxs = EvaluationContext(jnp.zeros((4, 2)), jnp.zeros(4), jnp.zeros((4, 3), dtype=int), jnp.zeros((4, 2)),
                             jnp.zeros((4, 2)))
    _, J_batch = jax.jit(jax.vmap(sparse.value_and_jacobian))(batch, ctxs)
    assert np.allclose(J_batch, jax.vmap(jacobian)(batch), rtol=1e-10, atol=1e-14)


def test_sparse_jacobians_of_piecewise_kernels():

    import jax
    import jax.numpy as jnp
    import numpy as np

    from robustfem.userdata import ADJacobianAction, EvaluationContext
    from robustfem.utility import jacobian_sparsity

    jax.config.update("jax_enable_x64", True)

    def clipped(u):
        return jnp.stack([jnp.minimum(u[0] + 3., 0.), u[1]])

    def switched(u):
        return jnp.stack([jnp.where(u[1] > 5., u[1]**2, 0.), u[0] * u[2], jnp.maximum(u[2], u[0])])

    # branches contribute all of their operands, independent of the evaluation point
    assert np.array_equal(jacobian_sparsity(clipped, jnp.zeros(2)), [[True, False], [False, True]])
    assert np.array_equal(jacobian_sparsity(switched, jnp.zeros(3)),
                          [[False, True, False], [True, False, True], [True, False, True]])

    ctx = EvaluationContext(jnp.zeros(2), 0., jnp.zeros(3, dtype=int), jnp.zeros(2), jnp.zeros(2))
    for kernel, argsizes, points in ((clipped, (2, 2), [[-4., 0.], [1., 2.]]),
                                     (switched, (3, 3), [[0., 7., 1.], [2., 0., -1.], [-1., 6., 3.]])):
        dense = ADJacobianAction(kernel, argsizes)
        sparse = ADJacobianAction(kernel, argsizes, sparse_jacobian=True)
        sparse.prepare(2)
        for u in points:
            u = jnp.asarray(u)
            _, J = dense.value_and_jacobian(u, ctx)
            _, J_sparse = sparse.value_and_jacobian(u, ctx)
            assert np.allclose(J_sparse, J, rtol=1e-12, atol=1e-14), (kernel.__name__, u)

        # jit compiled and vectorized as in the assembler
        batch = jnp.asarray(points)
        m = batch.shape[0]
        ctxs = EvaluationContext(jnp.zeros((m, 2)), jnp.zeros(m), jnp.zeros((m, 3), dtype=int), jnp.zeros((m, 2)),
                                 jnp.zeros((m, 2)))
        _, J_batch = jax.jit(jax.vmap(sparse.value_and_jacobian))(batch, ctxs)
        _, J_dense = jax.vmap(dense.value_and_jacobian)(batch, ctxs)
        assert np.allclose(J_batch, J_dense, rtol=1e-12, atol=1e-14)


def test_dependencies():

    import jax
    import jax.numpy as jnp
    import numpy as np
    import pytest

    from robustfem.userdata import (Action, DataFunction, make_context, parse_dependencies, gradient, divergence,
                                    laplacian, curl, time_derivative)
    from robustfem.utility import ConfigurationError

    jax.config.update("jax_enable_x64", True)

    assert parse_dependencies("XT") == (True, True, False, False)
    assert parse_dependencies("il") == (False, False, True, True)
    with pytest.raises(ConfigurationError):
        parse_dependencies("XQ")

    f = DataFunction(lambda x, t: x[0]**2 * x[1] * t, dependencies="XT", name="f")
    assert f.time_dependent
    assert np.isclose(f(jnp.array([2., 3.]), 0.5)[0], 6.)

    # derivative data functions
    x = jnp.array([1., 2.])
    assert np.allclose(gradient(f, 2)(x, 1.), [4., 1.])
    assert np.allclose(laplacian(f)(x, 1.), [4.])
    assert np.allclose(time_derivative(f)(x, 3.), [2.])
    assert np.allclose(curl(f, 2)(x, 1.), [1., -4.])

    v = DataFunction(lambda x: jnp.stack([x[0] * x[1], -x[1]**2]), ncomponents=2, dependencies="X")
    assert np.allclose(divergence(v)(x), [x[1] - 2. * x[1]])
    assert np.allclose(curl(v, 2)(x), [0. - x[0]])

    # constants
    c = DataFunction([1., 2.])
    assert c.ncomponents == 2 and c.is_constant
    assert np.allclose(c.evaluate_points(np.zeros((3, 2))), [[1., 2.]] * 3)

    # region dependent data through the item information
    g = DataFunction(lambda item: jnp.where(item[2] == 2, 1., 0.), dependencies="I")
    ctx = make_context(np.zeros((2, 2)), item=np.array([[0, 0, 1], [1, 1, 2]]))
    assert np.allclose(g.evaluate_context(ctx), [[0.], [1.]])

    # action sizes are checked against the operators
    action = Action(lambda u: 2. * u, (2, 1))
    action.check_argsizes(2, 1)
    with pytest.raises(ConfigurationError):
        action.check_argsizes(1, 1)
