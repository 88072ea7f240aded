"""Restock and pricing rules."""
import business_assistant as ba


def _row(**over):
    row = {
        "warehouse_stock": 30,
        "low_stock_alert": 10,
        "recent_units": 5,
        "prev_units": 5,
        "recent_revenue": 500.0,
        "recent_profit": 200.0,
    }
    row.update(over)
    return row


def _actions(advice):
    return [a["action"] for a in advice["actions"]]


class TestRules:
    def test_fast_mover_running_out(self):
        advice = ba.recommend(_row(warehouse_stock=6, recent_units=30, prev_units=30,
                                   recent_revenue=3000.0, recent_profit=900.0), 0.0, 30)
        assert advice["primary"]["action"] == "buy_more_inventory"
        # 1 unit/day, 30 days of cover wanted, 6 on hand
        assert advice["primary"]["suggested_qty"] == 24
        assert advice["metrics"]["days_cover"] == 6.0

    def test_slow_and_expensive(self):
        advice = ba.recommend(_row(warehouse_stock=50, recent_units=1, prev_units=0,
                                   recent_revenue=120.0, recent_profit=50.0), 100.0, 30)
        assert _actions(advice) == ["pause_purchases", "decrease_price"]
        assert advice["primary"]["action"] == "pause_purchases"
        assert advice["metrics"]["price_vs_category_pct"] == 20.0

    def test_slow_at_market_price_gets_promotion(self):
        advice = ba.recommend(_row(warehouse_stock=50, recent_units=0, prev_units=0,
                                   recent_revenue=0.0, recent_profit=0.0), 0.0, 30)
        assert _actions(advice) == ["pause_purchases", "run_promotion"]

    def test_falling_demand(self):
        advice = ba.recommend(_row(recent_units=5, prev_units=10), 0.0, 30)
        assert _actions(advice) == ["run_promotion"]
        assert advice["metrics"]["units_growth_pct"] == -50.0

    def test_thin_margin_below_category_price(self):
        advice = ba.recommend(_row(recent_revenue=1000.0, recent_profit=100.0), 300.0, 30)
        assert _actions(advice) == ["review_margin", "increase_price"]
        assert advice["primary"]["action"] == "increase_price"

    def test_no_sales_and_little_stock_waits(self):
        advice = ba.recommend(_row(warehouse_stock=5, recent_units=0, prev_units=0,
                                   recent_revenue=0.0, recent_profit=0.0), 0.0, 30)
        assert advice["primary"] == {"action": "keep", "title": "Keep (wait for more data)", "confidence": 0.5}
        assert advice["metrics"]["days_cover"] is None

    def test_steady_product_is_kept(self):
        advice = ba.recommend(_row(), 0.0, 30)
        assert _actions(advice) == ["keep"]
        assert advice["primary"]["confidence"] == 0.7


class TestHelpers:
    def test_category_average_is_unit_weighted(self):
        rows = [
            {"category_id": "c1", "recent_units": 1, "recent_revenue": 100.0},
            {"category_id": "c1", "recent_units": 3, "recent_revenue": 500.0},
            {"category_id": None, "recent_units": 0, "recent_revenue": 0.0},
        ]
        assert ba.category_average_prices(rows) == {"c1": 150.0, ba.NO_CATEGORY: 0.0}

    def test_primary_prefers_priority_then_confidence(self):
        actions = [
            {"action": "run_promotion", "confidence": 0.9},
            {"action": "pause_purchases", "confidence": 0.5},
            {"action": "pause_purchases", "confidence": 0.8},
        ]
        assert ba.pick_primary(actions) == {"action": "pause_purchases", "confidence": 0.8}

    def test_no_actions(self):
        assert ba.pick_primary([]) is None
