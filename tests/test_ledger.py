"""
Tests for the buy-price ledger.

Tests cover:
- Appending entries and the line format
- Most recent buy price lookup
- Missing, unreadable and corrupt files (bad lines and undecodable bytes)
- Write failures
"""

import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

import pytest

from cryptopilot.exchanges.base import BTC, ETH
from cryptopilot.trading.ledger import BuyPriceLedger, LedgerEntry, LedgerIOError


@pytest.fixture
def ledger_path():
    """Path to a ledger file in a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "data" / "trading_log.csv"


@pytest.fixture
def ledger(ledger_path):
    return BuyPriceLedger(ledger_path)


class TestRecordBuy:
    """Tests for appending buys."""

    def test_creates_file_and_parent(self, ledger, ledger_path):
        ledger.record_buy(BTC, Decimal("60000"), order_id="abc123")
        assert ledger_path.exists()

    def test_line_format(self, ledger, ledger_path):
        ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        ledger.record_buy(ETH, Decimal("3000.50"), recorded_at=ts, order_id="ord-1")

        line = ledger_path.read_text().strip()
        assert line == "buy,3000.50,ord-1,ETH,ETH-USD,2024-05-01T12:00:00+00:00"

    def test_missing_order_id_written_as_placeholder(self, ledger, ledger_path):
        ledger.record_buy(BTC, Decimal("60000"))
        assert ",n/a,BTC,BTC-USD," in ledger_path.read_text()

    def test_appends_oldest_first(self, ledger, ledger_path):
        ledger.record_buy(BTC, Decimal("1"))
        ledger.record_buy(BTC, Decimal("2"))
        lines = ledger_path.read_text().splitlines()
        assert lines[0].startswith("buy,1,")
        assert lines[1].startswith("buy,2,")

    def test_returns_entry(self, ledger):
        entry = ledger.record_buy(BTC, Decimal("60000"), order_id="x")
        assert entry.asset_symbol == "BTC"
        assert entry.buy_price == Decimal("60000")
        assert entry.order_id == "x"
        assert entry.recorded_at.tzinfo is not None

    def test_rejects_non_positive_price(self, ledger):
        with pytest.raises(ValueError):
            ledger.record_buy(BTC, Decimal("0"))

    def test_write_failure_raises_ledger_error(self, ledger):
        with patch("builtins.open", side_effect=PermissionError("read-only")):
            with pytest.raises(LedgerIOError):
                ledger.record_buy(BTC, Decimal("60000"))


class TestMostRecentBuyPrice:
    """Tests for the sell-target lookup."""

    def test_missing_file(self, ledger):
        assert ledger.most_recent_buy_price(BTC) is None

    def test_never_bought(self, ledger):
        ledger.record_buy(ETH, Decimal("3000"))
        assert ledger.most_recent_buy_price(BTC) is None

    def test_last_entry_wins(self, ledger):
        ledger.record_buy(BTC, Decimal("50000"))
        ledger.record_buy(ETH, Decimal("3000"))
        ledger.record_buy(BTC, Decimal("52000"))
        assert ledger.most_recent_buy_price(BTC) == Decimal("52000")
        assert ledger.most_recent_buy_price(ETH) == Decimal("3000")

    def test_corrupt_lines_skipped(self, ledger, ledger_path):
        ledger.record_buy(BTC, Decimal("50000"))
        with open(ledger_path, "a") as f:
            f.write("garbage line\n")
            f.write("buy,not-a-number,n/a,BTC,BTC-USD,2024-01-01T00:00:00+00:00\n")
            f.write("\n")
        assert ledger.most_recent_buy_price(BTC) == Decimal("50000")

    def test_undecodable_bytes_skipped(self, ledger, ledger_path):
        ledger.record_buy(BTC, Decimal("50000"), order_id="abc")
        with open(ledger_path, "ab") as f:
            f.write(b"\xff\xfe garbage\n")
        assert ledger.most_recent_buy_price(BTC) == Decimal("50000")
        assert [e.order_id for e in ledger.entries()] == ["abc"]

    def test_undecodable_file_has_no_buy_price(self, ledger_path):
        ledger_path.parent.mkdir(parents=True)
        ledger_path.write_bytes(b"\xff\xfe\x00\x81")
        assert BuyPriceLedger(ledger_path).most_recent_buy_price(ETH) is None

    def test_unreadable_file_treated_as_empty(self, ledger):
        ledger.record_buy(BTC, Decimal("50000"))
        with patch("builtins.open", side_effect=OSError("disk error")):
            assert ledger.most_recent_buy_price(BTC) is None


class TestEntries:
    """Tests for listing entries."""

    def test_entries_filtered_by_asset(self, ledger):
        ledger.record_buy(BTC, Decimal("50000"), order_id="a")
        ledger.record_buy(ETH, Decimal("3000"))
        ledger.record_buy(BTC, Decimal("51000"), order_id="b")

        btc = ledger.entries(BTC)
        assert [e.order_id for e in btc] == ["a", "b"]
        assert len(ledger.entries()) == 3

    def test_placeholder_order_id_read_as_none(self, ledger):
        ledger.record_buy(ETH, Decimal("3000"))
        assert ledger.entries(ETH)[0].order_id is None


class TestLedgerEntry:
    """Tests for line parsing."""

    def test_round_trip_line(self):
        ts = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        entry = LedgerEntry("BTC", Decimal("60000.12"), ts, "abc")
        assert LedgerEntry.from_line(entry.to_line("BTC-USD")) == entry

    def test_rejects_wrong_action(self):
        with pytest.raises(ValueError):
            LedgerEntry.from_line("sell,1,n/a,BTC,BTC-USD,2024-01-01T00:00:00+00:00")

    def test_rejects_negative_price(self):
        with pytest.raises(ValueError):
            LedgerEntry.from_line("buy,-5,n/a,BTC,BTC-USD,2024-01-01T00:00:00+00:00")
