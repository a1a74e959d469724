from __future__ import annotations

import unittest

import repack_fixtures  # noqa: F401
import repacker_gen as gen


class TagParserTests(unittest.TestCase):
    def test_lookup_finds_repack_key(self) -> None:
        self.assertEqual(gen.lookup_tag('repack:"id"'), ("id", True))

    def test_missing_key_is_distinct_from_empty_value(self) -> None:
        self.assertEqual(gen.lookup_tag('json:"name"'), ("", False))
        self.assertEqual(gen.lookup_tag(""), ("", False))
        self.assertEqual(gen.lookup_tag('repack:""'), ("", True))

    def test_lookup_among_several_keys(self) -> None:
        raw = 'json:"name,omitempty" repack:"user_id" db:"uid"'
        self.assertEqual(gen.lookup_tag(raw), ("user_id", True))
        self.assertEqual(gen.lookup_tag(raw, "db"), ("uid", True))

    def test_sub_options_are_captured(self) -> None:
        tag = gen.parse_tag('repack:"id,omitempty,string"')["repack"]
        self.assertEqual(tag, gen.NormalizedTag(key="repack", name="id", options=("omitempty", "string")))
        self.assertEqual(gen.lookup_tag('repack:"id,omitempty"'), ("id,omitempty", True))

    def test_single_space_after_colon_is_accepted(self) -> None:
        self.assertEqual(gen.lookup_tag('repack: "id"'), ("id", True))

    def test_first_occurrence_wins(self) -> None:
        self.assertEqual(gen.lookup_tag('repack:"a" repack:"b"'), ("a", True))

    def test_bare_key_without_value_is_not_found(self) -> None:
        self.assertEqual(gen.lookup_tag("repack"), ("", False))
        self.assertEqual(gen.parse_tag("repack omitempty"), {})

    def test_restricted_charset(self) -> None:
        self.assertEqual(gen.lookup_tag('repack:"a=b&(c)-d"'), ("a=b&(c)-d", True))
        self.assertEqual(gen.lookup_tag('repack:"user id"'), ("", False))


if __name__ == "__main__":
    unittest.main()
