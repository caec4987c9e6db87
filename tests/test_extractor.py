# -*- coding: utf-8 -*-
"""
Tests for extractor.py - task record extraction from notification content.
"""

import dataclasses
import re
import unittest

from extractor import (
    TaskRecord,
    extract_links,
    extract_task_record,
    normalize_date,
    parse_amount,
)
from fakes import ACCEPT_URL, notification_html


class TestExtractTaskRecord(unittest.TestCase):
    """Tests for the full extraction of a structured notification"""

    def test_extracts_all_fields_from_structured_notification(self):
        html = notification_html()
        record = extract_task_record(html, "[#12345] New task " + html)

        self.assertEqual(record.order_id, "12345")
        self.assertEqual(record.workflow_name, "Translation EN-TH")
        self.assertEqual(record.metrics.amount_words, 1234.5)
        self.assertEqual(record.metrics.planned_end_date, "2024-03-15 14:30")
        self.assertEqual(record.links, (ACCEPT_URL.format(123),))

    def test_missing_fields_are_none(self):
        record = extract_task_record("<p>Hello</p>", "Hello")

        self.assertIsNone(record.order_id)
        self.assertIsNone(record.workflow_name)
        self.assertIsNone(record.metrics.amount_words)
        self.assertIsNone(record.metrics.planned_end_date)
        self.assertEqual(record.links, ())

    def test_amount_falls_back_to_raw_text(self):
        record = extract_task_record("plain body", "amountWords: 1,234.5")

        self.assertEqual(record.metrics.amount_words, 1234.5)

    def test_planned_end_falls_back_to_raw_text(self):
        record = extract_task_record(
            "plain body", "plannedEndDate: '15.03.2024 2:30 PM'"
        )

        self.assertEqual(record.metrics.planned_end_date, "2024-03-15 14:30")

    def test_planned_end_stops_at_end_of_line(self):
        record = extract_task_record(
            "", "plannedEndDate: 15.03.2024 2:30 PM\nAssigned to: Jane"
        )

        self.assertEqual(record.metrics.planned_end_date, "2024-03-15 14:30")

    def test_planned_end_followed_by_words(self):
        raw_text = "plannedEndDate: 2024-03-15T09:05 Amounts pending\nMore text"
        record = extract_task_record("", raw_text)

        self.assertEqual(record.metrics.planned_end_date, "2024-03-15 09:05")

    def test_planned_end_date_without_time(self):
        record = extract_task_record("", "plannedEndDate: 15/03/2024\nPriority: high")

        self.assertEqual(record.metrics.planned_end_date, "2024-03-15 00:00")

    def test_structured_value_wins_over_regex(self):
        html = notification_html(amounts="10")
        record = extract_task_record(html, "amountWords: 99")

        self.assertEqual(record.metrics.amount_words, 10.0)

    def test_empty_content_still_uses_regex_fallbacks(self):
        record = extract_task_record("", "[#77] amountWords: 5")

        self.assertEqual(record.order_id, "77")
        self.assertEqual(record.metrics.amount_words, 5.0)

    def test_two_links_in_document_order(self):
        html = notification_html(task_ids=(2, 1))
        record = extract_task_record(html, html)

        self.assertEqual(record.links, (ACCEPT_URL.format(2), ACCEPT_URL.format(1)))

    def test_same_input_gives_same_record(self):
        html = notification_html()
        self.assertEqual(
            extract_task_record(html, html), extract_task_record(html, html)
        )

    def test_record_is_immutable(self):
        record = extract_task_record("", "")
        with self.assertRaises(dataclasses.FrozenInstanceError):
            record.order_id = "1"

    def test_record_type(self):
        self.assertIsInstance(extract_task_record("", ""), TaskRecord)


class TestNormalizeDate(unittest.TestCase):
    """Tests for deadline normalization"""

    def test_day_first_with_12_hour_time(self):
        self.assertEqual(normalize_date("15.03.2024 2:30 PM"), "2024-03-15 14:30")

    def test_am_pm_without_space(self):
        self.assertEqual(normalize_date("15.03.2024 9:05AM"), "2024-03-15 09:05")

    def test_slash_and_dash_separators(self):
        self.assertEqual(normalize_date("15/03/2024 2:30 PM"), "2024-03-15 14:30")
        self.assertEqual(normalize_date("15-03-2024 2:30 PM"), "2024-03-15 14:30")

    def test_iso_forms(self):
        self.assertEqual(normalize_date("2024-03-15 14:30"), "2024-03-15 14:30")
        self.assertEqual(normalize_date("2024-03-15T14:30"), "2024-03-15 14:30")
        self.assertEqual(normalize_date("2024-03-15"), "2024-03-15 00:00")

    def test_date_only_day_first(self):
        self.assertEqual(normalize_date("15.03.2024"), "2024-03-15 00:00")

    def test_parenthetical_annotation_removed(self):
        self.assertEqual(
            normalize_date("15.03.2024 2:30 PM (UTC+07:00) "), "2024-03-15 14:30"
        )

    def test_unparsable_is_none(self):
        self.assertIsNone(normalize_date("next Tuesday"))
        self.assertIsNone(normalize_date("31.02.2024"))

    def test_empty_is_none(self):
        self.assertIsNone(normalize_date(None))
        self.assertIsNone(normalize_date(""))


class TestParseAmount(unittest.TestCase):
    """Tests for word count parsing"""

    def test_thousands_separator_removed(self):
        self.assertEqual(parse_amount("1,234.5"), 1234.5)

    def test_unit_text_ignored(self):
        self.assertEqual(parse_amount("1,234 words"), 1234.0)

    def test_leading_number_only(self):
        self.assertEqual(parse_amount("1.5.3"), 1.5)

    def test_no_digits_is_none(self):
        self.assertIsNone(parse_amount("n/a"))
        self.assertIsNone(parse_amount(None))


class TestExtractLinks(unittest.TestCase):
    """Tests for accept link matching"""

    def test_only_accept_links_match(self):
        content = (
            f'<a href="{ACCEPT_URL.format(1)}">Accept</a>'
            '<a href="https://projects.moravia.com/Task/1/detail">Details</a>'
        )
        self.assertEqual(extract_links(content), (ACCEPT_URL.format(1),))

    def test_duplicates_kept(self):
        url = ACCEPT_URL.format(5)
        self.assertEqual(extract_links(f"{url} and {url}"), (url, url))

    def test_custom_pattern(self):
        pattern = re.compile(r"https://tasks\.example\.com/\d+/accept")
        self.assertEqual(
            extract_links("go to https://tasks.example.com/9/accept now", pattern),
            ("https://tasks.example.com/9/accept",),
        )

    def test_empty_content(self):
        self.assertEqual(extract_links(None), ())


if __name__ == "__main__":
    unittest.main(verbosity=2)
