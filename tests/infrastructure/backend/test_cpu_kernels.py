import unittest
from unittest import TestCase

import numpy as np

from tapegrad.domain import ShapeError
from tapegrad.infrastructure.backend import CPU_KERNELS, register_kernel


def _k(name):
    return CPU_KERNELS[name]


class TestKernelRegistry(TestCase):
    def test_expected_kernels_registered(self):
        expected = {
            "fill", "copy", "concat", "add", "accumulate", "mul", "mul_scalar",
            "add_mul", "mul_mul_add", "sigmoid", "sigmoid_grad", "tanh",
            "tanh_grad", "add_tanh", "relu", "relu_grad", "softmax",
            "softmax_grad", "addmm", "addmm_batch", "narrow", "select",
            "permute", "transpose", "view", "layer_norm", "layer_norm_grad",
            "bernoulli_mask", "position_encoding",
        }
        self.assertTrue(expected <= set(CPU_KERNELS))

    def test_duplicate_registration_rejected(self):
        with self.assertRaises(ValueError):
            register_kernel("add")(lambda out, a, b: None)


class TestBlendKernels(TestCase):
    def test_accumulate_beta_zero_ignores_destination(self):
        dst = np.full((2,), np.nan, dtype=np.float32)
        _k("accumulate")(dst, 0.0, np.array([1.0, 2.0], dtype=np.float32))
        np.testing.assert_array_equal(dst, [1.0, 2.0])

    def test_accumulate_with_alpha(self):
        dst = np.ones((2,), dtype=np.float32)
        _k("accumulate")(dst, 1.0, np.array([1.0, 2.0], dtype=np.float32), 3.0)
        np.testing.assert_array_equal(dst, [4.0, 7.0])

    def test_add_mul(self):
        dst = np.ones((2,), dtype=np.float32)
        _k("add_mul")(dst, 1.0, np.array([2.0, 3.0]), np.array([4.0, 5.0]))
        np.testing.assert_array_equal(dst, [9.0, 16.0])

    def test_addmm_beta_zero_ignores_uninitialised_output(self):
        a = np.arange(6, dtype=np.float32).reshape(2, 3)
        b = np.arange(6, dtype=np.float32).reshape(3, 2)
        out = np.full((2, 2), np.nan, dtype=np.float32)
        _k("addmm")(out, 0.0, out, 1.0, a, b)
        np.testing.assert_allclose(out, a @ b)

    def test_addmm_accumulates_in_place(self):
        a = np.eye(2, dtype=np.float32)
        out = np.ones((2, 2), dtype=np.float32)
        _k("addmm")(out, 1.0, out, 2.0, a, a)
        np.testing.assert_allclose(out, np.ones((2, 2)) + 2.0 * np.eye(2))

    def test_addmm_rejects_3d(self):
        x = np.zeros((1, 2, 2), dtype=np.float32)
        with self.assertRaises(ShapeError):
            _k("addmm")(x, 0.0, x, 1.0, x, x)


class TestViewKernels(TestCase):
    def test_narrow_and_select_are_views(self):
        x = np.arange(12, dtype=np.float32).reshape(3, 4)
        n = _k("narrow")(x, 1, 1, 2)
        s = _k("select")(x, 0, 2)
        self.assertTrue(np.shares_memory(n, x))
        self.assertTrue(np.shares_memory(s, x))
        np.testing.assert_array_equal(s, [8, 9, 10, 11])

    def test_view_rejects_copying_reshape(self):
        x = np.arange(6, dtype=np.float32).reshape(2, 3).T
        with self.assertRaises(ShapeError):
            _k("view")(x, (6,))

    def test_view_element_count(self):
        with self.assertRaises(ShapeError):
            _k("view")(np.zeros((2, 3), dtype=np.float32), (4,))


class TestNormalizationKernels(TestCase):
    def test_layer_norm_grad_bias_is_column_sum(self):
        rng = np.random.default_rng(0)
        x = rng.standard_normal((3, 4)).astype(np.float32)
        g = rng.standard_normal((3, 4)).astype(np.float32)
        alpha = np.ones((1, 4), dtype=np.float32)
        dx, dalpha, dbeta = _k("layer_norm_grad")(g, x, alpha, 1e-5)
        self.assertEqual(dx.shape, (3, 4))
        self.assertEqual(dalpha.shape, (1, 4))
        np.testing.assert_allclose(dbeta, g.sum(axis=0, keepdims=True), rtol=1e-6)
        # normalization removes the row mean, so dx rows sum to zero
        np.testing.assert_allclose(dx.sum(axis=-1), np.zeros(3), atol=1e-5)

    def test_bernoulli_mask_values(self):
        out = np.empty((50, 50), dtype=np.float32)
        _k("bernoulli_mask")(out, 0.7, np.random.default_rng(0))
        self.assertTrue(set(np.unique(out)) <= {0.0, 1.0})
        self.assertAlmostEqual(float(out.mean()), 0.7, delta=0.05)


if __name__ == "__main__":
    unittest.main()
