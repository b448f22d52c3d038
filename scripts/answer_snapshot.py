"""
Answer a ledger question from a snapshot JSON file without calling a model.

Usage:
  python scripts/answer_snapshot.py path/to/snapshot.json "сколько было денег вчера" --as-of 2026-02-15
  python scripts/answer_snapshot.py snapshot.json "итоги за январь" --as-of 2026-02-15 --facts
  python scripts/answer_snapshot.py snapshot.json "" --intent '{"type": "UPCOMING_OPS"}'

Validates the snapshot, parses the intent from the question (or takes --intent),
and prints the deterministic answer. With --facts, prints the resolved period and
the computed facts as JSON instead.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Add project root
_root = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(_root))

from ledger_assistant.logging import setup_logging
from ledger_assistant.pipeline.facts import compute_deterministic_facts
from ledger_assistant.pipeline.periods import resolve_comparison, resolve_period
from ledger_assistant.pipeline.validation import validate_snapshot
from ledger_assistant.services.ai_answers import answer_question


def main() -> int:
    parser = argparse.ArgumentParser(description="Deterministic answer for a ledger question")
    parser.add_argument("snapshot", help="Path to snapshot JSON")
    parser.add_argument("question", help="Question text")
    parser.add_argument("--as-of", dest="as_of", default=None, help="As-of date key YYYY-MM-DD (default: snapshot end)")
    parser.add_argument("--intent", default=None, help="Intent JSON, skips intent parsing")
    parser.add_argument("--facts", action="store_true", help="Print computed facts as JSON")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    args = parser.parse_args()

    setup_logging(args.log_level)

    path = Path(args.snapshot)
    if not path.exists():
        print(f"Snapshot not found: {path}", file=sys.stderr)
        return 1
    raw = json.loads(path.read_text(encoding="utf-8"))

    validated = validate_snapshot(raw)
    if not validated["ok"]:
        print(f"Invalid snapshot: {validated['error']}", file=sys.stderr)
        return 1
    snapshot = validated["snapshot"]
    as_of = args.as_of or snapshot["range"]["endDateKey"]

    if args.facts:
        period = resolve_period(args.question, as_of, snapshot)
        comparison = resolve_comparison(args.question, as_of, snapshot)
        facts = compute_deterministic_facts(snapshot, as_of, period, comparison)
        print(json.dumps(facts, ensure_ascii=False, indent=2))
        return 0

    intent = json.loads(args.intent) if args.intent else None
    result = answer_question(args.question, raw, as_of, intent=intent, detect_intent=True)
    print(result["text"])
    return 0 if result["ok"] else 2


if __name__ == "__main__":
    sys.exit(main())
