"""Tests for core modules."""

import numpy as np
import pytest

from regoptim.core.deformation import GridDeformation, compose
from regoptim.core.errors import ConfigurationError, NonConvergenceWarning, RegoptimError
from regoptim.core.mismatch import InterpolationOrder, MismatchSurrogate
from regoptim.core.parameters import OptimizerParameters, SolverMethod
from regoptim.core.penalty import AffinePenalty, TemporalPenalty
from regoptim.core.status import TerminationStatus
from regoptim.utils.arrays import REGISTER_HALF, node_grid


def numeric_gradient(f, u, eps=1e-6):
    """Central finite differences of a scalar function of an array."""
    grad = np.zeros_like(u)
    for idx in np.ndindex(*u.shape):
        up = u.copy()
        down = u.copy()
        up[idx] += eps
        down[idx] -= eps
        grad[idx] = (f(up) - f(down)) / (2 * eps)
    return grad


class TestStatus:
    """Tests for TerminationStatus enum."""

    def test_values(self):
        """Test status values."""
        assert TerminationStatus.LOCALLY_OPTIMAL == 1
        assert TerminationStatus.ITERATION_LIMIT == 0
        assert TerminationStatus.NOT_OPTIMAL == -1

    def test_is_optimal(self):
        """Only LOCALLY_OPTIMAL counts as converged."""
        assert TerminationStatus.LOCALLY_OPTIMAL.is_optimal
        assert not TerminationStatus.ITERATION_LIMIT.is_optimal
        assert not TerminationStatus.NOT_OPTIMAL.is_optimal

    def test_from_scipy(self):
        """Test mapping of scipy status codes."""
        assert TerminationStatus.from_lbfgsb(0) == TerminationStatus.LOCALLY_OPTIMAL
        assert TerminationStatus.from_lbfgsb(1) == TerminationStatus.ITERATION_LIMIT
        assert TerminationStatus.from_lbfgsb(2) == TerminationStatus.NOT_OPTIMAL
        assert TerminationStatus.from_trust_constr(1) == TerminationStatus.LOCALLY_OPTIMAL
        assert TerminationStatus.from_trust_constr(2) == TerminationStatus.LOCALLY_OPTIMAL
        assert TerminationStatus.from_trust_constr(0) == TerminationStatus.ITERATION_LIMIT
        assert TerminationStatus.from_trust_constr(3) == TerminationStatus.NOT_OPTIMAL


class TestErrors:
    """Tests for the exception hierarchy."""

    def test_configuration_error_is_value_error(self):
        """ConfigurationError can be caught as ValueError or RegoptimError."""
        with pytest.raises(ValueError):
            raise ConfigurationError("bad")
        with pytest.raises(RegoptimError):
            raise ConfigurationError("bad")

    def test_nonconvergence_is_warning(self):
        """NonConvergenceWarning is a UserWarning."""
        assert issubclass(NonConvergenceWarning, UserWarning)


class TestOptimizerParameters:
    """Tests for OptimizerParameters."""

    def test_default_values(self):
        """Test default parameter values."""
        params = OptimizerParameters()

        assert params.step_size == 1.0
        assert params.tol == 1e-6
        assert params.max_iter == 3000
        assert params.x_tol == 1e-4
        assert params.method == SolverMethod.LBFGSB
        assert params.trust_radius == 0.1
        assert params.progress is False

    def test_validate_valid(self):
        """Test validation of valid parameters."""
        assert OptimizerParameters().validate()

    @pytest.mark.parametrize(
        "field, value",
        [
            ("step_size", 0.0),
            ("tol", -1e-6),
            ("max_iter", 0),
            ("max_iter", 2.5),
            ("max_subgradient_iter", 0),
            ("cg_rtol", 0.0),
            ("trust_radius", -0.1),
            ("x_tol", np.nan),
        ],
    )
    def test_validate_invalid(self, field, value):
        """Out-of-range values raise ConfigurationError."""
        params = OptimizerParameters(**{field: value})

        with pytest.raises(ConfigurationError, match=field):
            params.validate()

    def test_validate_method(self):
        """An unknown method is rejected."""
        params = OptimizerParameters(method="newton")

        with pytest.raises(ConfigurationError):
            params.validate()

    def test_to_dict(self):
        """Test conversion to dictionary."""
        params = OptimizerParameters(step_size=0.5, method=SolverMethod.INTERIOR_POINT)
        d = params.to_dict()

        assert d["step_size"] == 0.5
        assert d["method"] == "interior-point"

    def test_from_dict(self):
        """Test creation from dictionary."""
        d = {"tol": 1e-8, "max_iter": 100, "method": "interior-point"}
        params = OptimizerParameters.from_dict(d)

        assert params.tol == 1e-8
        assert params.max_iter == 100
        assert params.method == SolverMethod.INTERIOR_POINT
        assert params.step_size == 1.0


class TestGridDeformation:
    """Tests for GridDeformation."""

    def test_identity(self, nodes_4x4):
        """Test the identity constructor and properties."""
        phi = GridDeformation.identity(nodes_4x4)

        assert phi.ndim == 2
        assert phi.gridsize == (4, 4)
        assert phi.nnodes == 16
        assert phi.u.shape == (4, 4, 2)
        assert phi.is_identity

    def test_shape_mismatch(self, nodes_4x4):
        """Displacements must match the grid."""
        with pytest.raises(ConfigurationError):
            GridDeformation(np.zeros((4, 3, 2)), nodes_4x4)
        with pytest.raises(ConfigurationError):
            GridDeformation(np.zeros((4, 4, 3)), nodes_4x4)

    def test_nodes_must_ascend(self):
        """Non-ascending nodes are rejected."""
        with pytest.raises(ConfigurationError):
            GridDeformation(np.zeros((3, 1)), (np.array([1.0, 3.0, 2.0]),))

    def test_copy_is_independent(self, nodes_4x4):
        """Copies do not share displacement storage."""
        phi = GridDeformation.identity(nodes_4x4)
        other = phi.copy()
        other.u[0, 0, 0] = 1.0

        assert phi.is_identity
        assert not other.is_identity

    def test_node_positions(self, nodes_4x4):
        """Node positions follow ij indexing."""
        pos = GridDeformation.identity(nodes_4x4).node_positions()

        assert pos.shape == (4, 4, 2)
        np.testing.assert_allclose(pos[2, 1], [nodes_4x4[0][2], nodes_4x4[1][1]])

    def test_interpolate_at_nodes(self, nodes_4x4, rng):
        """Interpolation reproduces nodal values."""
        phi = GridDeformation(rng.standard_normal((4, 4, 2)), nodes_4x4)

        values, _ = phi.interpolate(phi.node_positions())

        np.testing.assert_allclose(values, phi.u, atol=1e-12)

    def test_interpolate_affine_field(self, nodes_4x4):
        """Multilinear interpolation is exact for affine fields."""
        M = np.array([[0.1, -0.2], [0.05, 0.3]])
        pos = node_grid(nodes_4x4)
        phi = GridDeformation(pos @ M.T + [1.0, -2.0], nodes_4x4)
        points = np.array([[3.3, 7.1], [15.2, 2.5], [10.0, 10.0]])

        values, jac = phi.interpolate(points)

        np.testing.assert_allclose(values, points @ M.T + [1.0, -2.0], atol=1e-12)
        np.testing.assert_allclose(jac, np.broadcast_to(M, (3, 2, 2)), atol=1e-12)

    def test_interpolate_clamps_outside(self, nodes_4x4, rng):
        """Points outside the grid take edge values with zero derivative."""
        phi = GridDeformation(rng.standard_normal((4, 4, 2)), nodes_4x4)

        values, jac = phi.interpolate(np.array([[-5.0, 1.0]]))

        np.testing.assert_allclose(values[0], phi.u[0, 0])
        np.testing.assert_allclose(jac[0, :, 0], 0.0)


class TestCompose:
    """Tests for deformation composition."""

    def test_identity_prior(self, nodes_4x4, rng):
        """Composing with the identity returns the correction unchanged."""
        phi = GridDeformation(rng.standard_normal((4, 4, 2)), nodes_4x4)

        comp = compose(GridDeformation.identity(nodes_4x4), phi)

        np.testing.assert_allclose(comp.deformation.u, phi.u)
        np.testing.assert_allclose(comp.jacobian, np.broadcast_to(np.eye(2), (4, 4, 2, 2)))

    def test_uniform_prior(self, nodes_4x4, rng):
        """A uniform prior adds a constant."""
        phi_old = GridDeformation(np.broadcast_to([0.5, -1.5], (4, 4, 2)).copy(), nodes_4x4)
        phi = GridDeformation(0.3 * rng.standard_normal((4, 4, 2)), nodes_4x4)

        comp = compose(phi_old, phi)

        np.testing.assert_allclose(comp.deformation.u, phi.u + [0.5, -1.5])

    def test_mismatched_nodes(self, nodes_4x4):
        """Composition requires identical grids."""
        other = (np.linspace(1, 20, 4), np.linspace(1, 16, 4))

        with pytest.raises(ConfigurationError):
            compose(GridDeformation.identity(nodes_4x4), GridDeformation.identity(other))


class TestAffinePenalty:
    """Tests for AffinePenalty."""

    def test_affine_field_is_free(self, penalty_4x4, nodes_4x4):
        """Affine displacement fields have zero penalty."""
        pos = node_grid(nodes_4x4)
        u = pos @ np.array([[0.1, 0.2], [-0.3, 0.05]]).T + [2.0, 1.0]

        assert penalty_4x4.evaluate(u) == pytest.approx(0.0, abs=1e-20)

    def test_basis_is_orthonormal(self, penalty_4x4):
        """F has orthonormal columns spanning the affine functions."""
        F = penalty_4x4.F

        assert F.shape == (16, 3)
        np.testing.assert_allclose(F.T @ F, np.eye(3), atol=1e-12)

    def test_degenerate_axis(self):
        """An axis with a single node does not add a basis column."""
        penalty = AffinePenalty((np.array([1.0, 2.0, 5.0]), np.array([3.0])), 1.0)

        assert penalty.F.shape == (3, 2)

    def test_gradient(self, penalty_4x4, rng):
        """Analytic gradient matches finite differences."""
        u = rng.standard_normal((4, 4, 2))
        grad = np.empty_like(u)

        penalty_4x4.evaluate(u, grad)

        np.testing.assert_allclose(grad, numeric_gradient(penalty_4x4.evaluate, u), atol=1e-6)

    def test_explicit_weight(self, penalty_4x4, rng):
        """An explicit weight scales the value without changing the penalty."""
        u = rng.standard_normal((4, 4, 2))

        v1 = penalty_4x4.evaluate(u)
        v3 = penalty_4x4.evaluate(u, weight=3.0)

        assert v3 == pytest.approx(3.0 * v1)
        assert penalty_4x4.weight == 1.0

    def test_time_axis_sums(self, penalty_4x4, rng):
        """A leading time axis sums the per-frame penalties."""
        us = rng.standard_normal((3, 4, 4, 2))

        total = penalty_4x4.evaluate(us)

        assert total == pytest.approx(sum(penalty_4x4.evaluate(u) for u in us))

    def test_shape_mismatch(self, penalty_4x4):
        """Displacements on another grid are rejected."""
        with pytest.raises(ConfigurationError):
            penalty_4x4.evaluate(np.zeros((4, 5, 2)))

    def test_negative_weight(self, nodes_4x4):
        """Negative weights are rejected."""
        with pytest.raises(ConfigurationError):
            AffinePenalty(nodes_4x4, -1.0)

    def test_composed_gradient(self, penalty_4x4, nodes_4x4, rng):
        """Gradient through a composition matches finite differences."""
        phi_old = GridDeformation(rng.standard_normal((4, 4, 2)), nodes_4x4)
        u = 0.5 * rng.standard_normal((4, 4, 2))

        def value(x):
            return penalty_4x4.evaluate_composed(compose(phi_old, GridDeformation(x, nodes_4x4)))

        grad = np.empty_like(u)
        penalty_4x4.evaluate_composed(compose(phi_old, GridDeformation(u, nodes_4x4)), grad)

        np.testing.assert_allclose(grad, numeric_gradient(value, u), atol=1e-5)


class TestTemporalPenalty:
    """Tests for TemporalPenalty."""

    def test_value(self):
        """Test the value on a simple sequence."""
        us = np.array([[0.0], [1.0], [3.0]])

        assert TemporalPenalty(2.0).evaluate(us) == pytest.approx(0.5 * 2.0 * (1.0 + 4.0))

    def test_gradient(self, rng):
        """Analytic gradient matches finite differences."""
        temporal = TemporalPenalty(0.7)
        us = rng.standard_normal((4, 3, 2))
        grad = np.empty_like(us)

        temporal.evaluate(us, grad)

        np.testing.assert_allclose(grad, numeric_gradient(temporal.evaluate, us), atol=1e-6)

    def test_accumulate_adds(self):
        """accumulate adds lambda_t * T u to the output."""
        u = np.array([[1.0], [0.0], [0.0]])
        out = np.ones((3, 1))

        TemporalPenalty(2.0).accumulate(u, out)

        np.testing.assert_allclose(out[:, 0], [3.0, -1.0, 1.0])

    def test_single_time_point(self):
        """One time point has no temporal coupling."""
        us = np.ones((1, 2, 2))
        grad = np.full_like(us, 5.0)

        assert TemporalPenalty(1.0).evaluate(us, grad) == 0.0
        np.testing.assert_array_equal(grad, 0.0)


class TestMismatchSurrogate:
    """Tests for MismatchSurrogate."""

    def test_properties(self, quadratic_mismatch):
        """Test maxshift, gridsize and bounds."""
        centers = np.zeros((3, 2, 2))
        Qs = np.broadcast_to(np.eye(2), (3, 2, 2, 2))
        nums, denoms = quadratic_mismatch(centers, Qs, (3, 2))

        mmis = MismatchSurrogate(nums, denoms)

        assert mmis.gridsize == (3, 2)
        assert mmis.maxshift == (3, 2)
        assert mmis.order == InterpolationOrder.QUADRATIC
        np.testing.assert_allclose(mmis.bounds(), [3 - REGISTER_HALF, 2 - REGISTER_HALF])

    def test_even_shift_axis(self):
        """Even-length shift axes are rejected."""
        with pytest.raises(ConfigurationError, match="odd"):
            MismatchSurrogate(np.zeros((2, 4)), np.ones((2, 4)))

    def test_shape_mismatch(self):
        """Numerator and denominator must have the same shape."""
        with pytest.raises(ConfigurationError):
            MismatchSurrogate(np.zeros((2, 5)), np.ones((2, 3)))

    def test_interpolation_order(self):
        """Only quadratic and cubic interpolation are smooth."""
        assert not InterpolationOrder.LINEAR.is_smooth
        assert InterpolationOrder.QUADRATIC.is_smooth
        assert InterpolationOrder.CUBIC.is_smooth

    def test_quadratic_is_exact(self, quadratic_mismatch):
        """Quadratic interpolation reproduces quadratic data between samples."""
        Q = np.array([[2.0, 0.3], [0.3, 1.0]])
        centers = np.array([[[0.4, -1.2]]])
        nums, denoms = quadratic_mismatch(centers, Q[None, None], (3, 3))
        mmis = MismatchSurrogate(nums, denoms)
        shift = np.array([0.7, 0.25])

        num, den = mmis.evaluate((0, 0), shift)
        dnum, dden = mmis.gradient(0, shift)

        d = shift - centers[0, 0]
        assert num == pytest.approx(d @ Q @ d, abs=1e-10)
        assert den == pytest.approx(1.0)
        np.testing.assert_allclose(dnum, 2 * Q @ d, atol=1e-9)
        np.testing.assert_allclose(dden, 0.0, atol=1e-10)

    def test_penalty_gradient(self, rng):
        """Data penalty gradient matches finite differences."""
        nums = rng.random((2, 3, 5, 5)) + 0.5
        denoms = rng.random((2, 3, 5, 5)) + 1.0
        mmis = MismatchSurrogate(nums, denoms, InterpolationOrder.QUADRATIC)
        u = 0.8 * rng.uniform(-1, 1, (2, 3, 2))
        grad = np.empty_like(u)

        mmis.penalty(u, grad)

        np.testing.assert_allclose(grad, numeric_gradient(mmis.penalty, u), atol=1e-5)

    def test_penalty_below_threshold(self):
        """A vanishing denominator total gives +inf and a zero gradient."""
        mmis = MismatchSurrogate(np.ones((2, 3)), np.zeros((2, 3)), InterpolationOrder.LINEAR)
        grad = np.ones((2, 1))

        value = mmis.penalty(np.zeros((2, 1)), grad)

        assert value == np.inf
        np.testing.assert_array_equal(grad, 0.0)

    def test_non_finite_apertures_are_dropped(self):
        """Apertures with non-finite data do not contribute."""
        nums = np.ones((2, 3))
        nums[1] = np.nan
        mmis = MismatchSurrogate(nums, np.ones((2, 3)), InterpolationOrder.LINEAR)

        assert list(mmis.keep) == [True, False]
        assert mmis.penalty(np.zeros((2, 1))) == pytest.approx(1.0)

    def test_penalty_shape_mismatch(self):
        """Displacements on another grid are rejected."""
        mmis = MismatchSurrogate(np.ones((2, 3)), np.ones((2, 3)), InterpolationOrder.LINEAR)

        with pytest.raises(ConfigurationError):
            mmis.penalty(np.zeros((3, 1)))
