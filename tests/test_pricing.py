from order_pipeline.schemas import LineItem


def test_breakdown_for_known_order(price_calculator):
    prices = price_calculator.calculate(20.46)

    assert prices.subtotal == 20.46
    assert prices.tax == 1.64
    assert prices.total == 22.10
    assert prices.processing_fee == 1.04
    assert prices.total_with_fees == 23.14


def test_subtotal_from_items(price_calculator):
    items = [
        LineItem(name="Pizza Margherita", unit_price=14.99, quantity=2),
        LineItem(name="Coke", unit_price=2.99, quantity=3),
    ]

    assert price_calculator.subtotal_of(items) == 38.95
    assert price_calculator.calculate_for_items(items).tax == 3.12
