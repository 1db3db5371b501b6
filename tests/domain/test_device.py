import unittest
from unittest import TestCase

from tapegrad.domain.device import Device, DeviceType


class TestDevice(TestCase):
    def test_cpu(self):
        d = Device("cpu")
        self.assertTrue(d.is_cpu())
        self.assertFalse(d.is_cuda())
        self.assertEqual(str(d), "cpu")
        self.assertEqual(repr(d), "Device('cpu')")

    def test_cuda_index(self):
        d = Device("cuda:1")
        self.assertTrue(d.is_cuda())
        self.assertEqual(d.index, 1)
        self.assertEqual(d.type, DeviceType.CUDA)
        self.assertEqual(str(d), "cuda:1")

    def test_invalid_strings(self):
        for bad in ("gpu", "cuda", "cuda:x", "cuda:-1", ""):
            with self.subTest(device=bad):
                with self.assertRaises(ValueError):
                    Device(bad)

    def test_equality_and_hash(self):
        self.assertEqual(Device("cuda:0"), Device("cuda:0"))
        self.assertNotEqual(Device("cuda:0"), Device("cuda:1"))
        self.assertNotEqual(Device("cpu"), Device("cuda:0"))
        self.assertEqual(len({Device("cpu"), Device("cpu"), Device("cuda:0")}), 2)

    def test_parse_accepts_device_or_string(self):
        d = Device("cpu")
        self.assertIs(Device.parse(d), d)
        self.assertEqual(Device.parse("cuda:2"), Device("cuda:2"))


if __name__ == "__main__":
    unittest.main()
