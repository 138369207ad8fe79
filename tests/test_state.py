import pytest

from conftest import SYMBOL, T0, make_book, make_candles, make_order

from libs.common.models import OrderStatus


def _report(order_id, x, c, C="", side="BUY", z="0", Z="0", p="100", q="0.1", T=T0):
    return {"e": "executionReport", "s": SYMBOL, "i": order_id, "c": c, "C": C, "S": side, "o": "LIMIT",
            "X": x, "p": p, "q": q, "z": z, "Z": Z, "T": T}


class TestMarketState:
    def test_kline_replaces_current_candle(self, mirror):
        candles = make_candles(5)
        mirror.set_candles(SYMBOL, "1h", candles)
        updated = candles[-1].model_copy(update={"close": 200.0})
        mirror.apply_kline(SYMBOL, "1h", updated)
        assert len(mirror.candles(SYMBOL, "1h")) == 5
        assert mirror.last_price(SYMBOL) == 200.0

    def test_kline_appends_and_caps(self, mirror):
        candles = make_candles(25)
        mirror.set_candles(SYMBOL, "1h", candles[:20])
        for c in candles[20:]:
            mirror.apply_kline(SYMBOL, "1h", c)
        series = mirror.candles(SYMBOL, "1h")
        assert len(series) == 20
        assert series[-1] == candles[-1]
        assert series[0] == candles[5]

    def test_stale_kline_ignored(self, mirror):
        candles = make_candles(5)
        mirror.set_candles(SYMBOL, "1h", candles[2:])
        mirror.apply_kline(SYMBOL, "1h", candles[0])
        assert mirror.candles(SYMBOL, "1h")[0] == candles[2]

    def test_last_price_falls_back_to_other_timeframe(self, mirror):
        assert mirror.last_price(SYMBOL) is None
        mirror.set_candles(SYMBOL, "4h", make_candles(3))
        assert mirror.last_price(SYMBOL) == make_candles(3)[-1].close

    def test_depth_keeps_previous(self, mirror):
        a, b = make_book(100.0), make_book(101.0)
        mirror.apply_depth(SYMBOL, a)
        mirror.apply_depth(SYMBOL, b)
        st = mirror.state(SYMBOL)
        assert st.book is b and st.prev_book is a


class TestOrders:
    def test_terminal_never_replaced_by_stale_status(self, mirror):
        mirror.apply_order(make_order(1, "BOT_B_a", status="FILLED"))
        mirror.apply_order(make_order(1, "BOT_B_a", status="NEW"))
        assert mirror.state(SYMBOL).orders[1].status == OrderStatus.FILLED

    def test_partial_fill_opens_trade(self, mirror):
        mirror.apply_order(make_order(1, "BOT_B_a", status="PARTIALLY_FILLED", executed=0.04))
        trade = mirror.trade(SYMBOL)
        assert trade.token == "a"
        assert trade.executed_qty == 0.04
        mirror.apply_order(make_order(1, "BOT_B_a", status="FILLED"))
        assert mirror.trade(SYMBOL).executed_qty == 0.1

    def test_foreign_orders_are_not_owned(self, mirror):
        mirror.apply_order(make_order(1, "web_abc", status="FILLED"))
        assert mirror.trade(SYMBOL) is None
        assert mirror.open_order(SYMBOL) is None
        assert mirror.last_order(SYMBOL) is None

    def test_sell_fill_closes_trade(self, mirror):
        mirror.apply_order(make_order(1, "BOT_B_a", status="FILLED"))
        mirror.apply_order(make_order(2, "BOT_S_a", side="SELL", status="NEW", update_time=T0 + 1))
        assert mirror.trade(SYMBOL) is not None
        assert mirror.open_order(SYMBOL, "SELL").order_id == 2
        mirror.apply_order(make_order(2, "BOT_S_a", side="SELL", status="FILLED", update_time=T0 + 2))
        assert mirror.trade(SYMBOL) is None
        assert mirror.last_order(SYMBOL).order_id == 2

    def test_cancel_report_uses_original_client_id(self, mirror):
        mirror.apply_execution_report(_report(5, "NEW", "BOT_B_tok"))
        order = mirror.apply_execution_report(_report(5, "CANCELED", "web_cancel_1", C="BOT_B_tok", T=T0 + 5))
        assert order.client_order_id == "BOT_B_tok"
        assert order.status == OrderStatus.CANCELED
        assert mirror.last_order(SYMBOL).order_id == 5

    def test_fill_report_average_price(self, mirror):
        mirror.apply_execution_report(_report(6, "FILLED", "BOT_B_t2", z="0.1", Z="9.95"))
        assert mirror.trade(SYMBOL).entry_price == pytest.approx(99.5)


class TestReconciliation:
    def test_rebuild_pairs_buys_and_sells(self, mirror):
        mirror.apply_order(make_order(99, "BOT_B_ghost", status="FILLED"))
        orders = [
            make_order(1, "BOT_B_a", status="FILLED", update_time=T0),
            make_order(2, "BOT_S_a", side="SELL", status="FILLED", update_time=T0 + 1),
            make_order(3, "BOT_B_b", status="FILLED", price=110.0, update_time=T0 + 2),
            make_order(4, "BOT_B_c", status="CANCELED", update_time=T0 + 3),
            make_order(5, "manual_1", status="FILLED", update_time=T0 + 4),
        ]
        trades = mirror.rebuild_trades(SYMBOL, orders)
        assert set(trades) == {"b"}
        assert trades["b"].entry_price == pytest.approx(110.0)
        assert 99 not in mirror.state(SYMBOL).orders
        assert set(mirror.state(SYMBOL).trades) == {"b"}

    def test_rebuild_keeps_live_trade_levels(self, mirror):
        mirror.apply_order(make_order(1, "BOT_B_a", status="FILLED"))
        trade = mirror.trade(SYMBOL)
        trade.trailing_stop_price = 101.0
        rebuilt = mirror.rebuild_trades(SYMBOL, [make_order(1, "BOT_B_a", status="FILLED")])
        assert rebuilt["a"] is trade
        assert rebuilt["a"].trailing_stop_price == 101.0

    def test_partial_sell_keeps_trade(self, mirror):
        orders = [
            make_order(1, "BOT_B_a", status="FILLED", update_time=T0),
            make_order(2, "BOT_S_a", side="SELL", status="PARTIALLY_FILLED", executed=0.05, update_time=T0 + 1),
        ]
        assert set(mirror.rebuild_trades(SYMBOL, orders)) == {"a"}
        assert mirror.open_order(SYMBOL, "SELL").order_id == 2


class TestSoldQuantity:
    def test_expired_partial_sell_reduces_remaining(self, mirror):
        mirror.apply_order(make_order(1, "BOT_B_a", status="FILLED"))
        mirror.apply_order(make_order(2, "BOT_S_a", side="SELL", status="EXPIRED", executed=0.06,
                                      update_time=T0 + 1))
        trade = mirror.trade(SYMBOL)
        assert trade.sold_qty == pytest.approx(0.06)
        assert trade.remaining_qty == pytest.approx(0.04)

    def test_partial_sells_adding_up_close_trade(self, mirror):
        mirror.apply_order(make_order(1, "BOT_B_a", status="FILLED"))
        mirror.apply_order(make_order(2, "BOT_S_a", side="SELL", status="CANCELED", executed=0.06,
                                      update_time=T0 + 1))
        mirror.apply_order(make_order(3, "BOT_S_a", side="SELL", status="CANCELED", qty=0.04,
                                      executed=0.04, update_time=T0 + 2))
        assert mirror.trade(SYMBOL) is None

    def test_rebuild_counts_earlier_partial_sells(self, mirror):
        orders = [
            make_order(1, "BOT_B_a", status="FILLED", update_time=T0),
            make_order(2, "BOT_S_a", side="SELL", status="EXPIRED", executed=0.03, update_time=T0 + 1),
        ]
        trades = mirror.rebuild_trades(SYMBOL, orders)
        assert trades["a"].remaining_qty == pytest.approx(0.07)


class TestStaleUpdates:
    def test_late_rest_response_does_not_erase_fill(self, mirror):
        mirror.apply_order(make_order(1, "BOT_B_a", status="PARTIALLY_FILLED", executed=0.05,
                                      update_time=T0 + 5))
        mirror.apply_order(make_order(1, "BOT_B_a", status="NEW", update_time=T0))
        order = mirror.state(SYMBOL).orders[1]
        assert order.status == OrderStatus.PARTIALLY_FILLED
        assert order.executed_qty == 0.05

    def test_lower_executed_qty_rejected(self, mirror):
        mirror.apply_order(make_order(1, "BOT_B_a", status="PARTIALLY_FILLED", executed=0.05))
        mirror.apply_order(make_order(1, "BOT_B_a", status="PARTIALLY_FILLED", executed=0.02))
        assert mirror.state(SYMBOL).orders[1].executed_qty == 0.05
        assert mirror.trade(SYMBOL).executed_qty == 0.05

    def test_update_without_timestamp_still_applies(self, mirror):
        mirror.apply_order(make_order(1, "BOT_B_a", status="NEW", update_time=T0 + 5))
        mirror.apply_order(make_order(1, "BOT_B_a", status="CANCELED", update_time=0))
        assert mirror.state(SYMBOL).orders[1].status == OrderStatus.CANCELED
