import unittest
from unittest import TestCase

from tapegrad import GraphConfig
from tapegrad.infrastructure._config import DEFAULT_MAX_TAPE_STEPS


class TestGraphConfig(TestCase):
    def test_defaults(self):
        cfg = GraphConfig()
        self.assertEqual(cfg.max_tape_steps, DEFAULT_MAX_TAPE_STEPS)
        self.assertEqual(cfg.max_tape_steps, 1_024_000)
        self.assertFalse(cfg.strict_disposal)
        self.assertIsNone(cfg.seed)

    def test_rejects_non_positive_cap(self):
        with self.assertRaises(ValueError):
            GraphConfig(max_tape_steps=0)
        with self.assertRaises(ValueError):
            GraphConfig(max_tape_steps=-5)

    def test_is_frozen(self):
        cfg = GraphConfig()
        with self.assertRaises(AttributeError):
            cfg.seed = 3

    def test_from_empty_env(self):
        self.assertEqual(GraphConfig.from_env({}), GraphConfig())

    def test_from_env_overrides(self):
        cfg = GraphConfig.from_env(
            {
                "TAPEGRAD_MAX_TAPE_STEPS": " 64 ",
                "TAPEGRAD_STRICT_DISPOSAL": "yes",
                "TAPEGRAD_SEED": "7",
            }
        )
        self.assertEqual(cfg, GraphConfig(max_tape_steps=64, strict_disposal=True, seed=7))

    def test_strict_falsy_values(self):
        for raw in ("0", "", "false", "FALSE", "No", " no "):
            with self.subTest(raw=raw):
                cfg = GraphConfig.from_env({"TAPEGRAD_STRICT_DISPOSAL": raw})
                self.assertFalse(cfg.strict_disposal)

    def test_blank_seed_means_unseeded(self):
        self.assertIsNone(GraphConfig.from_env({"TAPEGRAD_SEED": "  "}).seed)

    def test_invalid_values(self):
        with self.assertRaises(ValueError):
            GraphConfig.from_env({"TAPEGRAD_MAX_TAPE_STEPS": "lots"})
        with self.assertRaises(ValueError):
            GraphConfig.from_env({"TAPEGRAD_MAX_TAPE_STEPS": "0"})
        with self.assertRaises(ValueError):
            GraphConfig.from_env({"TAPEGRAD_SEED": "1.5"})


if __name__ == "__main__":
    unittest.main()
