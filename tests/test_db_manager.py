"""Tests for the progress ledger."""

from __future__ import annotations

from spo_reclaim.utils.db_manager import ProgressLedger


class TestProgressLedger:
    def test_new_ledger_is_empty(self, tmp_path):
        with ProgressLedger(tmp_path / "ledger.db") as ledger:
            assert ledger.load() == set()
            assert not ledger.contains("Shared/a.pptx")

    def test_record_and_contains(self, tmp_path):
        with ProgressLedger(tmp_path / "ledger.db") as ledger:
            ledger.record("Shared/a.pptx", "success")
            assert ledger.contains("Shared/a.pptx")
            assert not ledger.contains("a.pptx")
            assert ledger.load() == {"Shared/a.pptx"}

    def test_entries_survive_reopen(self, tmp_path):
        db_path = tmp_path / "nested" / "ledger.db"
        with ProgressLedger(db_path) as ledger:
            ledger.record("x.docx", "skipped:NoOldVersions")

        with ProgressLedger(db_path) as reopened:
            assert reopened.load() == {"x.docx"}

    def test_double_record_is_harmless(self, tmp_path):
        with ProgressLedger(tmp_path / "ledger.db") as ledger:
            ledger.record("a.pptx", "success")
            ledger.record("a.pptx", "success")

            assert ledger.load() == {"a.pptx"}
            stats = ledger.get_statistics()
            assert stats["total_items"] == 1
            assert stats["by_outcome"] == {"success": 2}
            assert stats["last_recorded"] is not None

    def test_close_is_idempotent(self, tmp_path):
        ledger = ProgressLedger(tmp_path / "ledger.db")
        ledger.close()
        ledger.close()
        assert ledger.conn is None
