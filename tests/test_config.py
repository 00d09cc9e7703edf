"""Tests for settings loading."""

import json
import os
import tempfile
import unittest
from unittest.mock import patch
import sys
from pathlib import Path

# Add src to path so we can import bustrack
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bustrack.config import KMB_API_BASE, Settings, load_settings


class TestLoadSettings(unittest.TestCase):
    """Test the JSON settings loader."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def write(self, payload):
        path = Path(self.tmpdir.name) / "settings.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        return str(path)

    @patch.dict(os.environ, {}, clear=True)
    def test_partial_file_keeps_defaults(self):
        """Test that missing sections fall back to defaults."""
        settings = load_settings(self.write({"nearby": {"radius_m": 800}, "retry": {"max_attempts": 5}}))

        self.assertEqual(settings.nearby.radius_m, 800)
        self.assertEqual(settings.nearby.max_groups, 30)
        self.assertEqual(settings.retry.max_attempts, 5)
        self.assertEqual(settings.cache.stops_ttl_ms, 20 * 60 * 1000)
        self.assertEqual(settings.api_base, KMB_API_BASE)

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_file(self):
        """Test that a missing file is reported."""
        with self.assertRaises(FileNotFoundError):
            load_settings(str(Path(self.tmpdir.name) / "nope.json"))

    @patch.dict(os.environ, {}, clear=True)
    def test_unknown_key_rejected(self):
        """Test that typos in section keys are rejected."""
        with self.assertRaises(ValueError):
            load_settings(self.write({"nearby": {"radius": 800}}))

    @patch.dict(os.environ, {}, clear=True)
    def test_invalid_values_rejected(self):
        """Test range validation."""
        with self.assertRaises(ValueError):
            load_settings(self.write({"nearby": {"radius_m": -1}}))
        with self.assertRaises(ValueError):
            load_settings(self.write({"retry": {"max_attempts": 0}}))
        with self.assertRaises(ValueError):
            load_settings(self.write({"cache": "fast"}))

    @patch.dict(os.environ, {"GOOGLE_API_KEY": "env-key", "BUSTRACK_API_BASE": "http://localhost:8000/"}, clear=True)
    def test_environment_overrides(self):
        """Test that environment variables win over the file."""
        settings = load_settings(self.write({"api_base": "http://example.org", "directions": {"google_api_key": "file-key"}}))

        self.assertEqual(settings.api_base, "http://localhost:8000")
        self.assertEqual(settings.directions.google_api_key, "env-key")

    @patch.dict(os.environ, {}, clear=True)
    def test_from_env_defaults(self):
        """Test defaults when no environment is set."""
        settings = Settings.from_env()

        self.assertEqual(settings.api_base, KMB_API_BASE)
        self.assertIsNone(settings.directions.google_api_key)


if __name__ == "__main__":
    unittest.main()
