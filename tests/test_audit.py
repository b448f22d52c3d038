import unittest

from ledger_assistant.services.audit import (
    audit_answer,
    build_expected,
    build_repair_instruction,
    combination_sums,
    detect_question_flags,
    extract_money_numbers,
)


def _facts(**extra):
    facts = {
        "totals": {"income": 5000, "expense": 7300, "net": -2300},
        "topExpenseCategories": [
            {"name": "Аренда", "amount": 4200},
            {"name": "Связь", "amount": 1700},
            {"name": "Налоги", "amount": 1400},
        ],
        "liquidity": {"openAfterNextObligation": 1200, "openEnd": 800, "nextObligationAmount": 500},
    }
    facts.update(extra)
    return facts


class ExtractMoneyTests(unittest.TestCase):
    def test_formats(self):
        text = "Было 1 234,5 т, стало 5 000 т, ушло −2 500 тенге и еще 300тг, итого 42 ₸."
        values = [n["value"] for n in extract_money_numbers(text)]
        self.assertEqual(values, [1234.5, 5000, -2500, 300, 42])

    def test_plain_numbers_without_currency_ignored(self):
        self.assertEqual(extract_money_numbers("в 2026 году было 12 тысяч операций"), [])

    def test_dotted_grouping(self):
        self.assertEqual([n["value"] for n in extract_money_numbers("остаток 1.250.000 т")], [1250000])


class AuditAnswerTests(unittest.TestCase):
    def test_exact_value_accepted(self):
        result = audit_answer("Доход составил 5000 т.", _facts())
        self.assertTrue(result["ok"])
        self.assertEqual(result["observed"]["moneyNumbers"], [{"raw": "5000 т", "value": 5000}])

    def test_off_by_one_rejected(self):
        result = audit_answer("Доход составил 4999 т.", _facts())
        self.assertFalse(result["ok"])
        self.assertIn("number_mismatch:unexpected_money_value:4999", result["errors"])

    def test_sub_unit_difference_accepted(self):
        self.assertTrue(audit_answer("Доход 5 000,4 т", _facts())["ok"])

    def test_written_sign_must_match(self):
        self.assertTrue(audit_answer("Нетто за период: -2 300 т", _facts())["ok"])
        self.assertTrue(audit_answer("Убыток за период 2 300 т", _facts())["ok"])
        self.assertTrue(audit_answer("Расходы: -7 300 т", _facts())["ok"])

        flipped = audit_answer("Прибыль за период: +2 300 т", _facts())
        self.assertFalse(flipped["ok"])
        self.assertEqual(flipped["errors"], ["number_mismatch:unexpected_money_value:2300"])

    def test_negative_balance_sign(self):
        facts = _facts(liquidity={"openEnd": -800})
        self.assertTrue(audit_answer("На конец месяца: -800 т", facts)["ok"])
        self.assertFalse(audit_answer("На конец месяца: +800 т", facts)["ok"])

    def test_matching_uses_unrounded_values(self):
        facts = {"totals": {"income": 0, "expense": 1234.6, "net": -1234.6}}
        self.assertTrue(audit_answer("Расход 1 234 т", facts)["ok"])
        self.assertTrue(audit_answer("Расход 1 235 т", facts)["ok"])
        self.assertFalse(audit_answer("Расход 1 236 т", facts)["ok"])
        self.assertIn(1235, build_expected(facts)["allowedNumbers"])

    def test_category_combination_sum(self):
        self.assertTrue(audit_answer("Аренда и связь вместе: 5 900 т", _facts())["ok"])
        self.assertFalse(audit_answer("Аренда и связь вместе: 5 901 т", _facts())["ok"])

    def test_combination_limit(self):
        self.assertEqual(sorted(combination_sums([10, 20, 40], max_items=2)), [30, 50, 60])
        self.assertIn(70, combination_sums([10, 20, 40], max_items=3))

    def test_forecast_requires_balance_anchor(self):
        result = audit_answer("Все будет хорошо, переживать не о чем.", _facts(), {"responseIntent": "forecast"})
        self.assertFalse(result["ok"])
        self.assertIn("required_number_missing:any_money_number", result["errors"])
        self.assertIn("required_number_missing:forecast_balance_anchor", result["errors"])

        ok = audit_answer("К концу месяца на открытых счетах останется 800 т.", _facts(), {"responseIntent": "forecast"})
        self.assertTrue(ok["ok"])

    def test_forecast_flag_from_question(self):
        flags = detect_question_flags("что будет к концу месяца?")
        result = audit_answer("Расход 7 300 т.", _facts(), {"questionFlags": flags})
        self.assertIn("required_number_missing:forecast_balance_anchor", result["errors"])

    def test_liquidity_mode_requires_next_obligation(self):
        context = {"mode": "liquidity", "responseIntent": "fact"}
        result = audit_answer("Доход 5 000 т.", _facts(), context)
        self.assertEqual(result["errors"], ["required_number_missing:next_obligation_or_open_after"])
        self.assertTrue(audit_answer("Ближайший платеж 500 т.", _facts(), context)["ok"])

    def test_advisory_without_numbers_passes_silently(self):
        result = audit_answer("Стоит сократить аренду.", _facts(), {"responseIntent": "advisory"})
        self.assertTrue(result["ok"])
        self.assertEqual(result["warnings"], [])

        plain = audit_answer("Стоит сократить аренду.", _facts())
        self.assertTrue(plain["ok"])
        self.assertEqual(plain["warnings"], ["no_money_numbers_detected"])

    def test_empty_answer(self):
        result = audit_answer("   ", _facts())
        self.assertFalse(result["ok"])
        self.assertEqual(result["errors"], ["answer_text_empty"])


class ExpectedTests(unittest.TestCase):
    def test_required_deduplicated(self):
        expected = build_expected(_facts(), {"responseIntent": "fact", "questionFlags": {"asksSingleAmount": True}})
        self.assertEqual([r["name"] for r in expected["required"]], ["any_money_number"])

    def test_comparison_deltas_allowed(self):
        comparison = [
            {"label": "2026-01", "totals": {"income": 1000, "expense": 400, "net": 600}},
            {"label": "2026-02", "totals": {"income": 1500, "expense": 900, "net": 600}},
        ]
        expected = build_expected({"comparison": comparison})
        self.assertTrue(expected["comparisonMode"])
        self.assertIn(500, expected["allowedNumbers"])
        self.assertIn(-500, expected["allowedNumbers"])

    def test_question_flags(self):
        self.assertTrue(detect_question_flags("хватит ли денег на аренду")["asksBalanceImpact"])
        self.assertTrue(detect_question_flags("сравни январь и февраль")["asksComparison"])
        flags = detect_question_flags("Сколько потратили в этом месяце")
        self.assertTrue(flags["asksSingleAmount"])
        self.assertTrue(flags["asksPeriodAnalytics"])
        self.assertFalse(flags["asksForecastOrExtrapolation"])


class RepairInstructionTests(unittest.TestCase):
    def test_lists_errors_and_required(self):
        expected = build_expected(_facts(), {"responseIntent": "forecast"})
        text = build_repair_instruction(
            ["number_mismatch:unexpected_money_value:4999"], expected, mode="liquidity", response_intent="forecast"
        )
        lines = text.split("\n")
        self.assertEqual(lines[0], "Ответ не прошел числовую проверку. Перепиши ответ естественным языком.")
        self.assertIn("Режим: liquidity; intent: forecast.", lines)
        self.assertIn("Ошибки: number_mismatch:unexpected_money_value:4999", lines)
        self.assertIn("Обязательные суммы: любая релевантная сумма | forecast_balance_anchor: 1200 или 800", lines)
        self.assertTrue(any(line.startswith("Допустимые суммы (т): ") and "5900" in line for line in lines))

    def test_without_expected(self):
        text = build_repair_instruction([])
        self.assertIn("Допустимые суммы (т): нет", text)
        self.assertIn("Ошибки: не указаны", text)


if __name__ == "__main__":
    unittest.main()
