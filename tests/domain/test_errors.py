import unittest
from unittest import TestCase

from tapegrad.domain import (
    DeviceAllocationError,
    DeviceMismatchError,
    DeviceNotSupportedError,
    DisposedTensorAccessError,
    GraphInvalidatedError,
    OutOfOrderDisposalError,
    ShapeError,
    TapeError,
    TapeOverflowError,
    TapeReentrancyError,
)


class TestErrorTaxonomy(TestCase):
    def test_shape_error_is_value_error(self):
        e = ShapeError("matmul", "inner dimensions differ")
        self.assertIsInstance(e, ValueError)
        self.assertEqual(e.op, "matmul")
        self.assertEqual(str(e), "matmul: inner dimensions differ")

    def test_allocation_error_is_memory_error(self):
        e = DeviceAllocationError((2, 3), 24, "cpu")
        self.assertIsInstance(e, MemoryError)
        self.assertEqual(e.shape, (2, 3))
        self.assertEqual(e.nbytes, 24)
        self.assertIn("batch size", str(e))

    def test_graph_invalidated_keeps_cause(self):
        cause = DeviceAllocationError((1,), 4, "cpu")
        e = GraphInvalidatedError(cause)
        self.assertIsInstance(e, RuntimeError)
        self.assertIs(e.cause, cause)

    def test_tape_errors(self):
        overflow = TapeOverflowError(10)
        self.assertIsInstance(overflow, TapeError)
        self.assertEqual(overflow.max_steps, 10)
        self.assertIn("10", str(overflow))

        reentrant = TapeReentrancyError("add")
        self.assertIsInstance(reentrant, TapeError)
        self.assertIn("add", str(reentrant))

    def test_disposal_errors(self):
        e = DisposedTensorAccessError("grad", "emb")
        self.assertEqual(e.what, "grad")
        self.assertIn("emb", str(e))

        strict = OutOfOrderDisposalError("h", 3)
        self.assertIsInstance(strict, DisposedTensorAccessError)
        self.assertEqual(strict.pending, 3)
        self.assertIn("3 tape step", str(strict))

    def test_device_errors(self):
        e = DeviceNotSupportedError(op="layer_norm", device="cuda:0")
        self.assertEqual((e.op, e.device), ("layer_norm", "cuda:0"))
        m = DeviceMismatchError("cpu", "cuda:0")
        self.assertIn("cuda:0", str(m))


if __name__ == "__main__":
    unittest.main()
