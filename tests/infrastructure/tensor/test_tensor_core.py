import threading
import unittest
from unittest import TestCase

import numpy as np

from tapegrad.domain import DisposedTensorAccessError, ITensor, ShapeError
from tapegrad.infrastructure.backend import NumpyBackend
from tapegrad.infrastructure.tensor import OwnedBuffer, TensorFactory


class TestTensorBasics(TestCase):
    def setUp(self):
        self.backend = NumpyBackend()
        self.factory = TensorFactory(self.backend)

    def test_create_is_zero_without_grad(self):
        t = self.factory.create((2, 3), "cpu", name="w")
        self.assertIsInstance(t, ITensor)
        self.assertEqual(t.shape, (2, 3))
        self.assertEqual((t.rows, t.columns), (2, 3))
        self.assertEqual(t.numel(), 6)
        self.assertEqual(t.name, "w")
        np.testing.assert_array_equal(t.to_numpy(), np.zeros((2, 3)))
        self.assertIsNone(t.grad)
        self.assertFalse(t.has_grad)
        self.assertFalse(t.is_view)

    def test_from_numpy_copies(self):
        src = np.arange(4, dtype=np.float64).reshape(2, 2)
        t = self.factory.from_numpy(src)
        src[0, 0] = 100.0
        self.assertEqual(t.value.dtype, np.float32)
        np.testing.assert_array_equal(t.to_numpy(), [[0, 1], [2, 3]])

    def test_copy_from_numpy_shape_checked(self):
        t = self.factory.create((2, 2))
        with self.assertRaises(ShapeError):
            t.copy_from_numpy(np.ones((3,)))
        t.copy_from_numpy(np.full((2, 2), 5.0))
        np.testing.assert_array_equal(t.to_numpy(), np.full((2, 2), 5.0))

    def test_repr_mentions_shape(self):
        t = self.factory.create((2, 2), name="h")
        self.assertIn("(2, 2)", repr(t))
        self.assertIn("h", repr(t))
        t.dispose()
        self.assertIn("disposed", repr(t))


class TestGradientAccumulation(TestCase):
    def setUp(self):
        self.backend = NumpyBackend()
        self.factory = TensorFactory(self.backend)

    def test_borrowed_data_is_copied(self):
        t = self.factory.create((2,))
        g = np.array([1.0, 2.0], dtype=np.float32)
        t.accumulate_grad(g)
        g[0] = 99.0
        np.testing.assert_array_equal(t.grad, [1.0, 2.0])

    def test_owned_buffer_is_adopted_without_copy(self):
        t = self.factory.create((2,))
        h = OwnedBuffer.allocate(self.backend, (2,))
        h.array[...] = [3.0, 4.0]
        arr = h.array
        t.accumulate_grad(h)
        self.assertIs(t.grad, arr)
        self.assertFalse(h.released)

    def test_second_contribution_adds_and_releases(self):
        t = self.factory.create((2,))
        t.accumulate_grad(np.ones(2, dtype=np.float32))
        live = self.backend.live_buffers
        h = OwnedBuffer.allocate(self.backend, (2,))
        h.array[...] = 2.0
        t.accumulate_grad(h)
        np.testing.assert_array_equal(t.grad, [3.0, 3.0])
        self.assertTrue(h.released)
        self.assertEqual(self.backend.live_buffers, live)

    def test_shape_mismatch(self):
        t = self.factory.create((2, 2))
        with self.assertRaises(ShapeError):
            t.accumulate_grad(np.ones((2, 3), dtype=np.float32))
        h = OwnedBuffer.allocate(self.backend, (4,))
        with self.assertRaises(ShapeError):
            t.accumulate_grad(h)
        self.assertTrue(h.released)

    def test_grad_target_blend_factor(self):
        t = self.factory.create((3,))
        dst, beta = t.grad_target()
        self.assertEqual(beta, 0.0)
        dst[...] = 1.0
        dst2, beta2 = t.grad_target()
        self.assertIs(dst2, dst)
        self.assertEqual(beta2, 1.0)

    def test_take_grad_detaches(self):
        t = self.factory.create((2,))
        t.accumulate_grad(np.ones(2, dtype=np.float32))
        h = t.take_grad()
        self.assertIsNone(t.grad)
        np.testing.assert_array_equal(h.array, [1.0, 1.0])
        h.release()
        self.assertIsNone(t.take_grad())

    def test_zero_grad(self):
        t = self.factory.create((2,))
        t.zero_grad()
        self.assertIsNone(t.grad)
        t.accumulate_grad(np.ones(2, dtype=np.float32))
        t.zero_grad()
        np.testing.assert_array_equal(t.grad, [0.0, 0.0])

    def test_concurrent_ensure_grad_allocates_once(self):
        t = self.factory.create((16, 16))
        seen = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            seen.append(t.ensure_grad())

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()
        self.assertTrue(all(s is seen[0] for s in seen))
        self.assertEqual(self.backend.live_buffers, 2)


class TestDisposal(TestCase):
    def setUp(self):
        self.backend = NumpyBackend()
        self.factory = TensorFactory(self.backend)

    def test_dispose_is_idempotent(self):
        t = self.factory.create((2, 2))
        t.ensure_grad()
        self.assertEqual(self.backend.live_buffers, 2)
        t.dispose()
        t.dispose()
        self.assertTrue(t.is_disposed)
        self.assertEqual(self.backend.live_buffers, 0)

    def test_access_after_dispose(self):
        t = self.factory.create((2,), name="x")
        t.dispose()
        with self.assertRaises(DisposedTensorAccessError) as cm:
            _ = t.value
        self.assertEqual(cm.exception.name, "x")
        with self.assertRaises(DisposedTensorAccessError):
            _ = t.grad
        with self.assertRaises(DisposedTensorAccessError):
            t.accumulate_grad(np.ones(2, dtype=np.float32))

    def test_release_value_keeps_grad(self):
        t = self.factory.create((2,))
        t.accumulate_grad(np.ones(2, dtype=np.float32))
        t.release_value()
        with self.assertRaises(DisposedTensorAccessError):
            _ = t.value
        np.testing.assert_array_equal(t.grad, [1.0, 1.0])
        t.dispose()
        self.assertEqual(self.backend.live_buffers, 0)


class TestRowsPending(TestCase):
    def test_counts_per_row(self):
        t = TensorFactory(NumpyBackend()).create((5, 2))
        t.mark_rows_pending([0, 3, 3])
        t.mark_rows_pending(range(2))
        self.assertEqual(t.rows_pending, {0: 2, 1: 1, 3: 2})

    def test_returns_a_copy(self):
        t = TensorFactory(NumpyBackend()).create((2, 2))
        t.mark_rows_pending([1])
        snapshot = t.rows_pending
        snapshot[1] = 100
        self.assertEqual(t.rows_pending, {1: 1})
        t.clear_rows_pending()
        self.assertEqual(t.rows_pending, {})

    def test_out_of_range_row(self):
        t = TensorFactory(NumpyBackend()).create((2, 2))
        with self.assertRaises(ShapeError):
            t.mark_rows_pending([2])
        self.assertEqual(t.rows_pending, {})

    def test_concurrent_marks(self):
        t = TensorFactory(NumpyBackend()).create((4, 1))

        def worker():
            for _ in range(500):
                t.mark_rows_pending([0, 1, 2, 3])

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()
        self.assertEqual(t.rows_pending, {i: 4000 for i in range(4)})


if __name__ == "__main__":
    unittest.main()
