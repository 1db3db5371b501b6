import unittest
from unittest import TestCase

import numpy as np

from tapegrad.domain import DisposedTensorAccessError, ShapeError
from tapegrad.infrastructure.backend import NumpyBackend
from tapegrad.infrastructure.tensor import TensorFactory
from tapegrad.infrastructure.tensor._tensor import resolve_shape


class TestResolveShape(TestCase):
    def test_infers_single_wildcard(self):
        self.assertEqual(resolve_shape("view", (2, -1), 6), (2, 3))

    def test_rejects_bad_shapes(self):
        with self.assertRaises(ShapeError):
            resolve_shape("view", (-1, -1), 6)
        with self.assertRaises(ShapeError):
            resolve_shape("view", (4, -1), 6)
        with self.assertRaises(ShapeError):
            resolve_shape("view", (0, 6), 6)
        with self.assertRaises(ShapeError):
            resolve_shape("view", (2, 2), 6)


class TestTensorViews(TestCase):
    def setUp(self):
        self.backend = NumpyBackend()
        self.factory = TensorFactory(self.backend)
        self.x = self.factory.from_numpy(np.arange(12, dtype=np.float32).reshape(3, 4))

    def test_narrow_shares_value(self):
        v = self.x.narrow(0, 1, 2)
        self.assertTrue(v.is_view)
        self.assertEqual(v.shape, (2, 4))
        v.value[0, 0] = -1.0
        self.assertEqual(float(self.x.value[1, 0]), -1.0)

    def test_narrow_range_checked(self):
        with self.assertRaises(ShapeError):
            self.x.narrow(0, 2, 2)
        with self.assertRaises(ShapeError):
            self.x.narrow(1, 0, 0)
        with self.assertRaises(ShapeError):
            self.x.narrow(2, 0, 1)

    def test_select(self):
        v = self.x.select(1, 2)
        self.assertEqual(v.shape, (3,))
        np.testing.assert_array_equal(v.to_numpy(), [2, 6, 10])
        with self.assertRaises(ShapeError):
            self.x.select(0, 3)

    def test_permute(self):
        v = self.x.permute(1, 0)
        self.assertEqual(v.shape, (4, 3))
        np.testing.assert_array_equal(v.to_numpy(), self.x.to_numpy().T)
        with self.assertRaises(ShapeError):
            self.x.permute(0, 0)

    def test_reshape(self):
        v = self.x.reshape(-1)
        self.assertEqual(v.shape, (12,))
        self.assertTrue(np.shares_memory(v.value, self.x.value))

    def test_reshape_of_strided_view_rejected(self):
        t = self.x.permute(1, 0)
        with self.assertRaises(ShapeError):
            t.reshape(12)

    def test_gradient_shared_when_present(self):
        self.x.ensure_grad()
        row = self.x.narrow(0, 2, 1)
        row.accumulate_grad(np.ones((1, 4), dtype=np.float32))
        np.testing.assert_array_equal(self.x.grad[2], np.ones(4))
        np.testing.assert_array_equal(self.x.grad[:2], np.zeros((2, 4)))

    def test_gradient_not_shared_when_absent(self):
        row = self.x.narrow(0, 0, 1)
        row.accumulate_grad(np.ones((1, 4), dtype=np.float32))
        self.assertIsNone(self.x.grad)

    def test_ensure_grad_before_view_connects_gradients(self):
        self.x.ensure_grad()
        col = self.x.select(1, 3)
        col.accumulate_grad(np.full(3, 2.0, dtype=np.float32))
        np.testing.assert_array_equal(self.x.grad[:, 3], [2.0, 2.0, 2.0])

    def test_owning_view_survives_source_disposal(self):
        v = self.x.select(0, 1)
        self.x.dispose()
        np.testing.assert_array_equal(v.to_numpy(), [4, 5, 6, 7])
        self.assertEqual(self.backend.live_buffers, 1)
        v.dispose()
        self.assertEqual(self.backend.live_buffers, 0)

    def test_borrowed_view_dies_with_source(self):
        v = self.x.select(0, 1, owning=False)
        self.x.dispose()
        with self.assertRaises(DisposedTensorAccessError):
            _ = v.value
        v.dispose()
        self.assertEqual(self.backend.live_buffers, 0)

    def test_view_of_disposed_tensor_rejected(self):
        self.x.dispose()
        with self.assertRaises(DisposedTensorAccessError):
            self.x.narrow(0, 0, 1)


if __name__ == "__main__":
    unittest.main()
