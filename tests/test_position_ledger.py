import pytest
from sqlalchemy.exc import IntegrityError

from domain.errors import LedgerError
from domain.models import OperationType, PositionOperation, PositionStatus

SYMBOL = 'BTC/USDT:USDT'


class TestLifecycle:

    def test_open_add_reduce_close(self, ledger):
        opened = ledger.record_open(SYMBOL, 'buy', 0.1, 50000.0, leverage=5, order_id='o-1')
        assert opened.side == 'long'
        assert opened.avg_entry_price == 50000.0

        added = ledger.record_add(SYMBOL, 0.1, 52000.0)
        assert added.avg_entry_price == pytest.approx(51000.0)
        assert added.amount == pytest.approx(0.2)
        assert added.add_count == 1
        assert added.max_amount == pytest.approx(0.2)

        reduced, realized = ledger.record_reduce(SYMBOL, 0.05, 53000.0)
        assert realized == pytest.approx(100.0)
        assert reduced.amount == pytest.approx(0.15)
        assert reduced.reduce_count == 1
        assert reduced.realized_pnl_accum == pytest.approx(100.0)
        assert reduced.avg_entry_price == pytest.approx(51000.0)

        closed = ledger.record_close(SYMBOL, 54000.0, 'o-9')
        assert closed.status == PositionStatus.CLOSED
        assert closed.exit_price == 54000.0
        assert closed.exit_order_id == 'o-9'
        # 100 realized + 0.15 * (54000 - 51000)
        assert closed.pnl == pytest.approx(550.0)
        assert ledger.get_open_position_by_symbol(SYMBOL) is None

        ops = ledger.get_position_operations(opened.id)
        assert [op.operation for op in ops] == [
            OperationType.OPEN, OperationType.ADD, OperationType.REDUCE, OperationType.CLOSE,
        ]
        assert ops[1].avg_entry_after == pytest.approx(51000.0)
        assert ops[3].total_amount_after == 0.0

    def test_short_reduce_pnl(self, ledger):
        ledger.record_open(SYMBOL, 'sell', 0.2, 50000.0)
        _, realized = ledger.record_reduce(SYMBOL, 0.1, 51000.0)
        assert realized == pytest.approx(-100.0)

    def test_reduce_to_zero_closes(self, ledger):
        ledger.record_open(SYMBOL, 'buy', 0.1, 50000.0)
        position, realized = ledger.record_reduce(SYMBOL, 0.1, 51000.0)
        assert not position.is_open
        assert position.amount == 0.0
        assert position.pnl == pytest.approx(realized)
        assert position.exit_price == 51000.0

    def test_close_with_explicit_pnl(self, ledger):
        opened = ledger.record_open(SYMBOL, 'buy', 0.1, 50000.0)
        ledger.record_reduce(SYMBOL, 0.05, 51000.0)
        closed = ledger.record_close(SYMBOL, 0.0, 'auto-cleanup', pnl=50.0)
        assert closed.pnl == pytest.approx(50.0)
        close_op = ledger.get_position_operations(opened.id)[-1]
        assert close_op.realized_pnl == pytest.approx(0.0)

    def test_close_without_open_position(self, ledger):
        assert ledger.record_close(SYMBOL, 50000.0) is None
        assert ledger.close_position(SYMBOL, 50000.0, 0.0) is None


class TestRules:

    def test_one_open_position_per_symbol(self, ledger):
        ledger.record_open(SYMBOL, 'buy', 0.1, 50000.0)
        with pytest.raises(LedgerError):
            ledger.record_open(SYMBOL, 'buy', 0.1, 50000.0)
        assert len(ledger.get_open_positions()) == 1

    def test_reopen_after_close(self, ledger):
        ledger.record_open(SYMBOL, 'buy', 0.1, 50000.0)
        ledger.record_close(SYMBOL, 50500.0)
        reopened = ledger.record_open(SYMBOL, 'sell', 0.2, 50500.0)
        assert reopened.side == 'short'
        assert len(ledger.get_position_history()) == 2

    def test_rejects_non_positive_amount(self, ledger):
        with pytest.raises(LedgerError):
            ledger.insert_position(SYMBOL, 'long', 0.0, 50000.0)

    def test_over_reduce_rejected_and_rolled_back(self, ledger):
        opened = ledger.record_open(SYMBOL, 'buy', 0.1, 50000.0)
        with pytest.raises(LedgerError):
            ledger.record_reduce(SYMBOL, 0.2, 51000.0)
        position = ledger.get_open_position_by_symbol(SYMBOL)
        assert position.amount == pytest.approx(0.1)
        assert len(ledger.get_position_operations(opened.id)) == 1

    def test_add_requires_open_position(self, ledger):
        with pytest.raises(LedgerError):
            ledger.record_add(SYMBOL, 0.1, 50000.0)

    def test_dangling_operation_fails_atomically(self, ledger):
        before = ledger.count_operations()
        with pytest.raises(IntegrityError):
            ledger.insert_position_operation(PositionOperation(
                position_id=99999,
                operation=OperationType.ADD,
                side='long',
                amount=0.1,
                price=50000.0,
            ))
        assert ledger.count_operations() == before


class TestQueries:

    def test_returns_copies(self, ledger):
        ledger.record_open(SYMBOL, 'buy', 0.1, 50000.0)
        copy = ledger.get_open_position_by_symbol(SYMBOL)
        copy.amount = 42.0
        assert ledger.get_open_position_by_symbol(SYMBOL).amount == pytest.approx(0.1)

    def test_update_sltp(self, ledger):
        ledger.record_open(SYMBOL, 'buy', 0.1, 50000.0, stop_loss=49000.0)
        updated = ledger.update_position_sltp(SYMBOL, 49500.0, 56000.0)
        assert updated.stop_loss == 49500.0
        assert updated.take_profit == 56000.0
        assert ledger.update_position_sltp('ETH/USDT:USDT', 1.0, 2.0) is None

    def test_lower_level_updates(self, ledger):
        ledger.insert_position(SYMBOL, 'long', 0.1, 50000.0)
        added = ledger.update_position_add(SYMBOL, 51000.0, 0.2)
        assert added.add_count == 1
        reduced = ledger.update_position_reduce(SYMBOL, 0.05, 25.0)
        assert reduced.realized_pnl_accum == pytest.approx(25.0)
        closed = ledger.close_position(SYMBOL, 52000.0, 175.0, 'x')
        assert closed.pnl == 175.0
        assert ledger.get_position(closed.id).status == PositionStatus.CLOSED
