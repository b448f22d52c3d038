import unittest

from ledger_assistant.pipeline.validation import validate_snapshot
from snapshot_fixtures import day, entry, february_snapshot, snapshot, transfer


class ValidateSnapshotTests(unittest.TestCase):
    def test_rejects_wrong_schema_version(self):
        raw = snapshot([day("2026-02-01")], schema_version=2)
        result = validate_snapshot(raw)
        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "schemaVersion должен быть равен 1")

    def test_rejects_empty_days(self):
        raw = {"schemaVersion": 1, "range": {"startDateKey": "2026-02-01", "endDateKey": "2026-02-28"}, "days": []}
        result = validate_snapshot(raw)
        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "days[] пустой")

    def test_rejects_bad_date_key(self):
        raw = snapshot([day("2026-02-01"), day("2026-2-3")], start="2026-02-01", end="2026-02-03")
        result = validate_snapshot(raw)
        self.assertFalse(result["ok"])
        self.assertEqual(result["error"], "некорректный day.dateKey: 2026-2-3")

    def test_rejects_non_dict(self):
        self.assertFalse(validate_snapshot(None)["ok"])
        self.assertFalse(validate_snapshot([1, 2])["ok"])

    def test_sorts_days_and_derives_labels(self):
        raw = snapshot([day("2026-02-03"), day("2026-02-01"), day("2026-02-02")])
        result = validate_snapshot(raw)
        self.assertTrue(result["ok"])
        days = result["snapshot"]["days"]
        self.assertEqual([d["dateKey"] for d in days], ["2026-02-01", "2026-02-02", "2026-02-03"])
        self.assertEqual(days[0]["dateLabel"], "вс, 1 февр. 2026 г.")

    def test_stale_zero_totals_recomputed_from_lists(self):
        raw = snapshot([
            day(
                "2026-02-01",
                income=[entry("i1", 700, "Продажи")],
                expense=[entry("e1", -300, "Аренда")],
                withdrawal=[entry("w1", 200, "Вывод средств")],
                transfers=[transfer(100, "Kaspi", "", out_of_system=True), transfer(999, "Kaspi", "Сейф")],
                totals={"income": 0, "expense": 0},
            )
        ])
        totals = validate_snapshot(raw)["snapshot"]["days"][0]["totals"]
        self.assertEqual(totals, {"income": 700, "expense": 600})

    def test_nonzero_totals_are_kept(self):
        raw = snapshot([
            day("2026-02-01", income=[entry("i1", 700, "Продажи")], totals={"income": 650, "expense": 10})
        ])
        totals = validate_snapshot(raw)["snapshot"]["days"][0]["totals"]
        self.assertEqual(totals, {"income": 650, "expense": 10})

    def test_account_open_flag_defaults(self):
        raw = snapshot([day("2026-02-01")])
        raw["days"][0]["accountBalances"] = [
            {"name": "A", "balance": "100", "isOpen": True},
            {"name": "B", "balance": 50, "isExcluded": True},
            {"name": "C", "balance": 25, "isExcluded": False},
            {"name": "D", "balance": None},
        ]
        accounts = validate_snapshot(raw)["snapshot"]["days"][0]["accountBalances"]
        self.assertEqual([a["isOpen"] for a in accounts], [True, False, True, False])
        self.assertEqual([a["balance"] for a in accounts], [100.0, 50.0, 25.0, 0.0])

    def test_total_balance_falls_back_to_accounts(self):
        raw = snapshot([
            day("2026-02-01", balances=[("Kaspi", 300, True), ("Сейф", 200, False)]),
            day("2026-02-02", balances=[("Kaspi", 300, True)], total_balance=0, expense=[entry("e", 5, "Аренда")]),
            day("2026-02-03", balances=[("Kaspi", 300, True)], total_balance=999),
        ])
        days = validate_snapshot(raw)["snapshot"]["days"]
        self.assertEqual([d["totalBalance"] for d in days], [500, 300, 999])

    def test_unknown_visibility_mode_becomes_all(self):
        raw = snapshot([day("2026-02-01")], visibility="weird")
        self.assertEqual(validate_snapshot(raw)["snapshot"]["visibilityMode"], "all")

    def test_offset_income_id_becomes_linked_parent(self):
        raw = snapshot([day("2026-02-01", expense=[entry("e1", 400, "Услуги", offsetIncomeId="inc-1")])])
        item = validate_snapshot(raw)["snapshot"]["days"][0]["lists"]["expense"][0]
        self.assertEqual(item["linkedParentId"], "inc-1")

    def test_february_fixture_is_valid(self):
        result = validate_snapshot(february_snapshot())
        self.assertTrue(result["ok"])
        self.assertEqual(len(result["snapshot"]["days"]), 28)
        self.assertEqual(result["snapshot"]["range"], {"startDateKey": "2026-02-01", "endDateKey": "2026-02-28"})


if __name__ == "__main__":
    unittest.main()
