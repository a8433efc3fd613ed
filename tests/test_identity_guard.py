from __future__ import annotations

import unittest

from api.helpers.identity import validate_user_id
from ingestion.errors import InvalidIdentity

VALID_USER_ID = "12345678-1234-1234-1234-123456789012"


class IdentityGuardTests(unittest.TestCase):
    def test_accepts_uuid_and_normalizes_case_and_whitespace(self) -> None:
        resolved = validate_user_id("  ABCDEF12-1234-1234-1234-123456789ABC ", "creating audit record")
        self.assertEqual(resolved, "abcdef12-1234-1234-1234-123456789abc")

    def test_accepts_plain_uuid(self) -> None:
        self.assertEqual(validate_user_id(VALID_USER_ID), VALID_USER_ID)

    def test_rejects_none_naming_context(self) -> None:
        with self.assertRaises(InvalidIdentity) as ctx:
            validate_user_id(None, "creating voice event")
        self.assertIn("creating voice event", str(ctx.exception))
        self.assertEqual(ctx.exception.context, "creating voice event")

    def test_rejects_empty_and_blank_strings(self) -> None:
        for value in ("", "   "):
            with self.subTest(value=value):
                with self.assertRaises(InvalidIdentity):
                    validate_user_id(value, "querying product registry")

    def test_rejects_non_string_values_before_format_check(self) -> None:
        for value in (0, 1, False, True, float("nan"), 12.5, {"id": VALID_USER_ID}, [VALID_USER_ID]):
            with self.subTest(value=value):
                with self.assertRaises(InvalidIdentity) as ctx:
                    validate_user_id(value, "creating audit record")
                self.assertIn("must be a string", str(ctx.exception))

    def test_rejects_malformed_strings(self) -> None:
        for value in ("user-1", "12345678123412341234123456789012", "undefined", "null", VALID_USER_ID + "0"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidIdentity) as ctx:
                    validate_user_id(value, "creating audit record")
                self.assertIn("invalid format", str(ctx.exception))

    def test_invalid_identity_is_a_value_error(self) -> None:
        with self.assertRaises(ValueError):
            validate_user_id("nope")


if __name__ == "__main__":
    unittest.main()
