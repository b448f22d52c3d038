import unittest

from ledger_assistant.pipeline.intents import (
    find_category_mention,
    parse_date_key_from_question,
    parse_snapshot_intent,
    parse_target_month,
    snapshot_categories,
)
from ledger_assistant.pipeline.validation import validate_snapshot
from snapshot_fixtures import february_snapshot

AS_OF = "2026-02-15"


class DateParsingTests(unittest.TestCase):
    def test_iso_and_dotted(self):
        self.assertEqual(parse_date_key_from_question("баланс на 2026-02-10"), "2026-02-10")
        self.assertEqual(parse_date_key_from_question("что было 05.03.26"), "2026-03-05")
        self.assertEqual(parse_date_key_from_question("что было 01/01/99"), "1999-01-01")
        self.assertIsNone(parse_date_key_from_question("что было 31.02.2026"))

    def test_verbal(self):
        self.assertEqual(parse_date_key_from_question("что было 15 марта", AS_OF), "2026-03-15")
        self.assertEqual(parse_date_key_from_question("что было 3 мая 2025", AS_OF), "2025-05-03")
        self.assertIsNone(parse_date_key_from_question("что было 15 марта"))

    def test_relative(self):
        self.assertEqual(parse_date_key_from_question("что сегодня", AS_OF), AS_OF)
        self.assertEqual(parse_date_key_from_question("а позавчера?", AS_OF), "2026-02-13")
        self.assertIsNone(parse_date_key_from_question("а вчера?"))

    def test_target_month(self):
        self.assertEqual(parse_target_month("прогноз на 2026-03", AS_OF), {"year": 2026, "month": 3})
        self.assertEqual(parse_target_month("что будет в апреле", AS_OF), {"year": 2026, "month": 4})
        self.assertEqual(parse_target_month("что на конец месяца", AS_OF), {"year": 2026, "month": 2})
        self.assertIsNone(parse_target_month("привет", AS_OF))


class CategoryMentionTests(unittest.TestCase):
    def setUp(self):
        self.categories = snapshot_categories(validate_snapshot(february_snapshot())["snapshot"])

    def test_categories_sorted(self):
        self.assertEqual(self.categories, ["Аренда", "Вывод средств", "Коммуналка", "Налоги", "Продажи"])

    def test_inflected_word_matches(self):
        self.assertEqual(find_category_mention("сколько ушло на коммуналку", self.categories), "Коммуналка")
        self.assertEqual(find_category_mention("расходы по аренде", self.categories), "Аренда")

    def test_no_match(self):
        self.assertIsNone(find_category_mention("сколько ушло на зарплату", self.categories))
        self.assertIsNone(find_category_mention("расходы за месяц", self.categories))


class ParseSnapshotIntentTests(unittest.TestCase):
    def setUp(self):
        self.snapshot = validate_snapshot(february_snapshot())["snapshot"]

    def _parse(self, question):
        return parse_snapshot_intent(question, AS_OF, self.snapshot)

    def test_upcoming(self):
        intent = self._parse("какие ближайшие операции")
        self.assertEqual(intent["type"], "UPCOMING_OPS")
        self.assertEqual(intent["dateKey"], AS_OF)

    def test_forecast(self):
        intent = self._parse("прогноз на конец марта")
        self.assertEqual(intent["type"], "FORECAST_END_OF_MONTH")
        self.assertEqual(intent["targetMonth"], {"year": 2026, "month": 3})

        open_only = self._parse("сколько будет на открытых счетах к концу месяца")
        self.assertEqual(open_only["type"], "FORECAST_OPEN_END_OF_MONTH")
        self.assertEqual(open_only["targetMonth"], {"year": 2026, "month": 2})

    def test_open_balances(self):
        intent = self._parse("сколько денег на открытых счетах вчера")
        self.assertEqual(intent["type"], "OPEN_BALANCES_ON_DATE")
        self.assertEqual(intent["dateKey"], "2026-02-14")

    def test_balance_on_date(self):
        intent = self._parse("сколько было денег 10.02.2026")
        self.assertEqual(intent["type"], "BALANCE_ON_DATE")
        self.assertEqual(intent["dateKey"], "2026-02-10")
        self.assertTrue(intent["numeric"])
        self.assertFalse(intent["needsLlm"])

    def test_category_fact_with_period_hint(self):
        intent = self._parse("как дела с расходами по аренде в этом месяце")
        self.assertEqual(intent["type"], "CATEGORY_FACT_BY_CATEGORY")
        self.assertEqual(intent["categoryRaw"], "Аренда")
        self.assertEqual((intent["startDateKey"], intent["endDateKey"]), ("2026-02-01", "2026-02-28"))

    def test_category_without_period_has_no_hint(self):
        intent = self._parse("сколько ушло на коммуналку")
        self.assertEqual(intent["type"], "CATEGORY_FACT_BY_CATEGORY")
        self.assertNotIn("startDateKey", intent)

    def test_open_question_needs_llm(self):
        intent = self._parse("проанализируй мои финансы")
        self.assertEqual(intent["type"], "INSIGHTS")
        self.assertTrue(intent["needsLlm"])
        self.assertFalse(intent["numeric"])


if __name__ == "__main__":
    unittest.main()
