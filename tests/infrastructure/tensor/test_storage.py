import gc
import unittest
from unittest import TestCase

import numpy as np

from tapegrad.domain import DisposedTensorAccessError
from tapegrad.infrastructure.backend import NumpyBackend
from tapegrad.infrastructure.tensor import BorrowedView, OwnedBuffer, SharedView


class TestStorageHandles(TestCase):
    def setUp(self):
        self.backend = NumpyBackend()

    def test_owned_buffer_frees_once(self):
        h = OwnedBuffer.allocate(self.backend, (2, 2))
        self.assertEqual(self.backend.live_buffers, 1)
        h.release()
        h.release()
        self.assertTrue(h.released)
        self.assertEqual(self.backend.live_buffers, 0)
        with self.assertRaises(DisposedTensorAccessError):
            _ = h.array

    def test_shared_view_keeps_storage_alive(self):
        h = OwnedBuffer.allocate(self.backend, (3, 2))
        h.array[...] = np.arange(6).reshape(3, 2)
        v = h.view(h.array[1:], owning=True)
        self.assertIsInstance(v, SharedView)
        self.assertEqual(h.storage.refcount, 2)

        h.release()
        self.assertEqual(self.backend.live_buffers, 1)
        np.testing.assert_array_equal(v.array, [[2, 3], [4, 5]])

        v.release()
        self.assertEqual(self.backend.live_buffers, 0)

    def test_borrowed_view_dies_with_owner(self):
        h = OwnedBuffer.allocate(self.backend, (2, 2))
        v = h.view(h.array[0], owning=False)
        self.assertIsInstance(v, BorrowedView)
        self.assertEqual(h.storage.refcount, 1)
        h.release()
        with self.assertRaises(DisposedTensorAccessError):
            _ = v.array
        v.release()
        self.assertEqual(self.backend.live_buffers, 0)

    def test_view_of_released_handle_rejected(self):
        h = OwnedBuffer.allocate(self.backend, (2,))
        arr = h.array
        h.release()
        with self.assertRaises(DisposedTensorAccessError):
            h.view(arr)

    def test_dropped_storage_is_reclaimed(self):
        h = OwnedBuffer.allocate(self.backend, (4,))
        self.assertEqual(self.backend.live_buffers, 1)
        del h
        gc.collect()
        self.assertEqual(self.backend.live_buffers, 0)

    def test_adopt_registers_array(self):
        arr = np.ones((2, 3), dtype=np.float32)
        h = OwnedBuffer.adopt(self.backend, arr)
        self.assertIs(h.array, arr)
        self.assertEqual(self.backend.live_bytes, arr.nbytes)
        h.release()
        self.assertEqual(self.backend.live_bytes, 0)


if __name__ == "__main__":
    unittest.main()
