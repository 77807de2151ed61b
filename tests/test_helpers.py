import pytest

from utils.helpers import calc_new_avg_entry, calc_reduce_pnl, format_pnl, parse_amount


class TestAverageEntry:

    def test_weighted(self):
        assert calc_new_avg_entry(50000, 0.1, 52000, 0.1) == pytest.approx(51000)

    def test_uneven_sizes(self):
        assert calc_new_avg_entry(100, 3, 200, 1) == pytest.approx(125)

    def test_zero_total_falls_back_to_add_price(self):
        assert calc_new_avg_entry(0, 0, 50000, 0) == 50000


class TestReducePnl:

    def test_long_profit(self):
        assert calc_reduce_pnl('long', 50000, 55000, 0.1) == pytest.approx(500)

    def test_short_loss(self):
        assert calc_reduce_pnl('short', 50000, 52000, 0.1) == pytest.approx(-200)

    def test_order_side_names(self):
        assert calc_reduce_pnl('buy', 100, 110, 1) == pytest.approx(10)
        assert calc_reduce_pnl('sell', 100, 110, 1) == pytest.approx(-10)


def test_parse_amount():
    assert parse_amount("0.015") == 0.015
    assert parse_amount("") == 0.0
    assert parse_amount(None) == 0.0


def test_format_pnl():
    assert format_pnl(12.345) == "+12.35 USDT"
    assert format_pnl(-3) == "-3.00 USDT"
