import unittest
from unittest import TestCase

import numpy as np

from tapegrad.domain import DeviceNotSupportedError, ShapeError
from tapegrad.domain.device import Device
from tapegrad.infrastructure.backend import NumpyBackend
from tapegrad.infrastructure.tensor import OwnedBuffer, Tensor, TensorFactory


class TestTensorFactory(TestCase):
    def setUp(self):
        self.backend = NumpyBackend()
        self.factory = TensorFactory(self.backend)

    def test_default_backend_is_shared(self):
        self.assertIs(TensorFactory().backend, TensorFactory.default().backend)
        self.assertEqual(TensorFactory().backend.device, Device("cpu"))

    def test_create_accepts_int_shape(self):
        t = self.factory.create(5)
        self.assertIsInstance(t, Tensor)
        self.assertEqual(t.shape, (5,))
        self.assertEqual(t.device, Device("cpu"))

    def test_create_rejects_non_positive_dims(self):
        with self.assertRaises(ShapeError):
            self.factory.create((3, 0))
        with self.assertRaises(ShapeError):
            self.factory.create(())

    def test_unsupported_device(self):
        with self.assertRaises(DeviceNotSupportedError) as cm:
            self.factory.create((2, 2), "cuda:0")
        self.assertEqual(cm.exception.device, "cuda:0")
        self.assertEqual(self.backend.live_buffers, 0)

    def test_from_numpy_scalar_becomes_vector(self):
        t = self.factory.from_numpy(3.5)
        self.assertEqual(t.shape, (1,))
        np.testing.assert_array_equal(t.to_numpy(), [3.5])

    def test_adopt_avoids_copy(self):
        arr = np.arange(6, dtype=np.float32).reshape(2, 3)
        t = self.factory.adopt(arr, name="k")
        self.assertIs(t.value, arr)
        self.assertEqual(t.name, "k")
        t.dispose()
        self.assertEqual(self.backend.live_buffers, 0)

    def test_wrap_moves_handles(self):
        value = OwnedBuffer.allocate(self.backend, (2,))
        grad = OwnedBuffer.allocate(self.backend, (2,))
        t = self.factory.wrap(value, grad=grad)
        self.assertIs(t.value, value.array)
        self.assertIs(t.grad, grad.array)
        t.dispose()
        self.assertTrue(value.released)
        self.assertTrue(grad.released)
        self.assertEqual(self.backend.live_buffers, 0)

    def test_wrap_rejects_mismatched_grad(self):
        value = OwnedBuffer.allocate(self.backend, (2,))
        grad = OwnedBuffer.allocate(self.backend, (3,))
        with self.assertRaises(ShapeError):
            self.factory.wrap(value, grad=grad)


if __name__ == "__main__":
    unittest.main()
