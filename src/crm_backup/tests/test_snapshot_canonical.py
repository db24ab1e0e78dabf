#!/usr/bin/env python3
"""
Unit tests for canonical serialization and data checksums.
"""

import sys
import unittest
from datetime import datetime, timezone
from pathlib import Path

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from crm_backup.snapshot.canonical import (
    canonicalize,
    compute_data_checksum,
    verify_data_checksum,
)


class TestCanonicalize(unittest.TestCase):
    """Test cases for canonical JSON serialization."""

    def test_keys_sorted_at_every_level(self):
        obj = {"z": {"b": 1, "a": 2}, "a": 0}
        self.assertEqual(canonicalize(obj), '{"a":0,"z":{"a":2,"b":1}}')

    def test_list_order_preserved(self):
        self.assertEqual(canonicalize({"items": [3, 1, 2]}), '{"items":[3,1,2]}')

    def test_unicode_normalization(self):
        """An accented letter as one code point or as letter + combining mark."""
        composed = "Ren\u00e9"
        decomposed = "Rene\u0301"
        self.assertNotEqual(composed, decomposed)
        self.assertEqual(canonicalize({"name": composed}), canonicalize({"name": decomposed}))

    def test_non_ascii_kept(self):
        self.assertEqual(canonicalize({"city": "Z\u00fcrich"}), '{"city":"Z\u00fcrich"}')

    def test_booleans_and_null(self):
        self.assertEqual(
            canonicalize({"a": True, "b": None, "c": 1}),
            '{"a":true,"b":null,"c":1}',
        )

    def test_datetime_serialized_as_iso(self):
        dt = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        self.assertEqual(canonicalize({"at": dt}), '{"at":"2024-05-01T12:00:00+00:00"}')


class TestDataChecksum(unittest.TestCase):
    """Test cases for snapshot data checksums."""

    def setUp(self):
        self.data = {
            "users": [{"id": 1, "username": "anna"}],
            "properties": [{"id": 1, "title": "Loft", "price": 420000.0}],
        }

    def test_prefixed_sha256(self):
        checksum = compute_data_checksum(self.data)
        self.assertTrue(checksum.startswith("sha256:"))
        self.assertEqual(len(checksum), len("sha256:") + 64)

    def test_key_order_irrelevant(self):
        reordered = {
            "properties": [{"price": 420000.0, "title": "Loft", "id": 1}],
            "users": [{"username": "anna", "id": 1}],
        }
        self.assertEqual(compute_data_checksum(self.data), compute_data_checksum(reordered))

    def test_record_order_matters(self):
        swapped = {"users": [{"id": 2}, {"id": 1}]}
        original = {"users": [{"id": 1}, {"id": 2}]}
        self.assertNotEqual(compute_data_checksum(swapped), compute_data_checksum(original))

    def test_verify(self):
        checksum = compute_data_checksum(self.data)
        self.assertTrue(verify_data_checksum(self.data, checksum))

        self.data["users"][0]["username"] = "bert"
        self.assertFalse(verify_data_checksum(self.data, checksum))

    def test_unknown_algorithm_rejected(self):
        digest = compute_data_checksum(self.data).split(":", 1)[1]
        self.assertFalse(verify_data_checksum(self.data, f"md5:{digest}"))


if __name__ == "__main__":
    unittest.main()
