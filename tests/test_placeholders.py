import unittest

from merge_doctor.placeholders import (
    canonical_text,
    extract,
    extract_all,
    strip_markup,
    to_plain_text,
)


class ExtractTests(unittest.TestCase):
    def test_order_preserving_and_deduplicated(self):
        tokens = extract("Hi [First Name], your [Plan] plan. Thanks [First Name]!")
        self.assertEqual([t.literal for t in tokens], ["[First Name]", "[Plan]"])

    def test_markup_is_stripped_before_matching(self):
        markup = "<p>Dear <b>[Customer Name]</b>,</p><p>Renew by [Expiration Date].</p>"
        self.assertEqual([t.literal for t in extract(markup)], ["[Customer Name]", "[Expiration Date]"])

    def test_tag_inside_token_breaks_it_into_visible_text(self):
        self.assertEqual(strip_markup("[<i>Name</i>]"), "[ Name ]")
        self.assertEqual([t.literal for t in extract("[<i>Name</i>]")], ["[ Name ]"])

    def test_doubled_brackets_are_matched_whole(self):
        tokens = extract("Hello [[First Name]] and [Plan]]")
        self.assertEqual([t.literal for t in tokens], ["[[First Name]]", "[Plan]]"])
        self.assertEqual(tokens[0].name, "First Name")
        self.assertEqual(tokens[0].canonical, "firstname")

    def test_no_tokens(self):
        self.assertEqual(extract("Nothing to merge here."), [])
        self.assertEqual(extract(""), [])
        self.assertEqual(extract("[]"), [])
        self.assertEqual(extract("Checklist: [ ] done, [[  ]] pending"), [])

    def test_extract_is_idempotent_on_its_own_literals(self):
        text = "A [One] b [Two] c [[Three]]"
        first = [t.literal for t in extract(text)]
        second = [t.literal for t in extract(" ".join(first))]
        self.assertEqual(first, second)

    def test_extract_all_merges_templates(self):
        email = "<p>Hi [Name], your [Plan] renews [Renewal Date].</p>"
        sms = "Hi [Name], call [Phone]"
        self.assertEqual(
            [t.literal for t in extract_all(email, sms)],
            ["[Name]", "[Plan]", "[Renewal Date]", "[Phone]"],
        )


class TextHelperTests(unittest.TestCase):
    def test_canonical_text(self):
        self.assertEqual(canonical_text("[Expiration Date]"), "expirationdate")
        self.assertEqual(canonical_text("Expiration_Date"), "expirationdate")
        self.assertEqual(canonical_text("  e-mail "), "email")

    def test_to_plain_text(self):
        markup = "<p>Hello&nbsp;[Name] &amp; co</p><p>Second<br>line</p>"
        self.assertEqual(to_plain_text(markup), "Hello\xa0[Name] & co\nSecond\nline")


if __name__ == "__main__":
    unittest.main()
