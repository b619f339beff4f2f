import pytest

import catalog
import orders
import settings_store
from errors import (
    ConflictError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    MinimumOrderError,
    NotFoundError,
    ValidationError,
)

PEN_DISCOUNT = {"type": "percentage", "value": 20, "active": True}


def place(db, user, items, **kwargs):
    kwargs.setdefault("address", "12 Market Road")
    kwargs.setdefault("phone", "9876543210")
    return orders.create_order(db, user, items, **kwargs)


def stock_of(db, slug):
    return db["product"].find_one({"slug": slug})["inventory"]["stock"]


def test_discounted_checkout_totals(db, shopper, make_product):
    make_product(slug="pen-blue", price=10.0, discount=PEN_DISCOUNT)
    order = place(db, shopper, [{"slug": "pen-blue", "quantity": 3}], delivery_fee=50)

    assert order["items"][0]["unit_price"] == 8.0
    assert order["items"][0]["base_price"] == 10.0
    assert order["subtotal"] == 24.0
    assert order["delivery_fee"] == 50
    assert order["total"] == 74.0
    assert order["status"] == orders.PLACED
    assert order["payment_method"] == "COD"
    assert orders.order_totals_consistent(order)


def test_every_persisted_order_adds_up(db, shopper, make_product):
    make_product(slug="pen-blue", price=10.0, discount=PEN_DISCOUNT)
    make_product(slug="ink", price=3.3, discount={"type": "fixed", "value": 1.1, "active": True})
    place(db, shopper, [{"slug": "pen-blue", "quantity": 3}, {"slug": "ink", "quantity": 7}])
    place(db, shopper, [{"slug": "ink", "quantity": 1}])

    for doc in db["order"].find({}):
        recomputed = sum(i["unit_price"] * i["quantity"] for i in doc["items"])
        assert recomputed + doc["delivery_fee"] == doc["total"]


def test_empty_cart_rejected(db, shopper):
    with pytest.raises(ValidationError):
        place(db, shopper, [])


@pytest.mark.parametrize("field", ["address", "phone"])
def test_delivery_details_required(db, shopper, make_product, field):
    make_product()
    with pytest.raises(ValidationError) as exc:
        place(db, shopper, [{"slug": "pen-blue", "quantity": 1}], **{field: "   "})
    assert field in exc.value.details["fieldErrors"]


def test_missing_product_aborts_whole_order(db, shopper, make_product):
    make_product(slug="pen-blue", track=True, stock=5)
    with pytest.raises(NotFoundError) as exc:
        place(db, shopper, [{"slug": "pen-blue", "quantity": 2}, {"slug": "ghost", "quantity": 1}])
    assert exc.value.identifier == "ghost"
    assert stock_of(db, "pen-blue") == 5
    assert db["order"].count_documents({}) == 0


def test_unpublished_product_cannot_be_ordered(db, shopper, make_product):
    make_product(slug="draft", published=False)
    with pytest.raises(NotFoundError):
        place(db, shopper, [{"slug": "draft", "quantity": 1}])


def test_out_of_stock_checkout_changes_nothing(db, shopper, make_product):
    make_product(slug="pen-blue", track=True, stock=0)
    with pytest.raises(InsufficientStockError) as exc:
        place(db, shopper, [{"slug": "pen-blue", "quantity": 1}])
    assert exc.value.slug == "pen-blue"
    assert exc.value.available == 0
    assert stock_of(db, "pen-blue") == 0
    assert db["order"].count_documents({}) == 0


def test_tracked_stock_is_decremented(db, shopper, make_product):
    make_product(slug="pen-blue", track=True, stock=10)
    make_product(slug="eraser", track=False)
    place(db, shopper, [{"slug": "pen-blue", "quantity": 4}, {"slug": "eraser", "quantity": 9}])
    assert stock_of(db, "pen-blue") == 6
    assert stock_of(db, "eraser") == 0


def test_duplicate_lines_are_merged(db, shopper, make_product):
    make_product(slug="pen-blue", track=True, stock=3)
    with pytest.raises(InsufficientStockError):
        place(db, shopper, [{"slug": "pen-blue", "quantity": 2}, {"slug": "pen-blue", "quantity": 2}])
    order = place(db, shopper, [{"slug": "pen-blue", "quantity": 1}, {"slug": "pen-blue", "quantity": 2}])
    assert len(order["items"]) == 1
    assert order["items"][0]["quantity"] == 3
    assert stock_of(db, "pen-blue") == 0


def test_last_unit_sells_once(db, shopper, make_user, make_product):
    other = make_user(email="other@example.com")
    make_product(slug="pen-blue", track=True, stock=1)
    place(db, shopper, [{"slug": "pen-blue", "quantity": 1}])
    with pytest.raises(InsufficientStockError):
        place(db, other, [{"slug": "pen-blue", "quantity": 1}])
    assert stock_of(db, "pen-blue") == 0
    assert db["order"].count_documents({}) == 1


def test_stock_taken_between_check_and_reserve(db, shopper, make_product, monkeypatch):
    make_product(slug="pen-blue", track=True, stock=1)
    real_reserve = catalog.reserve_stock

    def competing_checkout_wins(database, slug, quantity):
        database["product"].update_one({"slug": slug}, {"$inc": {"inventory.stock": -1}})
        return real_reserve(database, slug, quantity)

    monkeypatch.setattr(catalog, "reserve_stock", competing_checkout_wins)
    with pytest.raises(InsufficientStockError) as exc:
        place(db, shopper, [{"slug": "pen-blue", "quantity": 1}])
    assert exc.value.available == 0
    assert stock_of(db, "pen-blue") == 0
    assert db["order"].count_documents({}) == 0


def test_shortfall_on_later_line_releases_earlier_reservations(db, shopper, make_product, monkeypatch):
    make_product(slug="pen-blue", track=True, stock=5)
    make_product(slug="ink", track=True, stock=1)
    real_reserve = catalog.reserve_stock

    def ink_sold_out(database, slug, quantity):
        if slug == "ink":
            database["product"].update_one({"slug": "ink"}, {"$set": {"inventory.stock": 0}})
        return real_reserve(database, slug, quantity)

    monkeypatch.setattr(catalog, "reserve_stock", ink_sold_out)
    with pytest.raises(InsufficientStockError):
        place(db, shopper, [{"slug": "pen-blue", "quantity": 2}, {"slug": "ink", "quantity": 1}])
    assert stock_of(db, "pen-blue") == 5
    assert db["order"].count_documents({}) == 0


def test_failed_order_write_releases_stock(db, shopper, make_product, monkeypatch):
    make_product(slug="pen-blue", track=True, stock=5)
    make_product(slug="ink", track=True, stock=2)

    def broken_insert(database, order):
        raise RuntimeError("write failed")

    monkeypatch.setattr(orders, "_insert_order", broken_insert)
    with pytest.raises(RuntimeError):
        place(db, shopper, [{"slug": "pen-blue", "quantity": 2}, {"slug": "ink", "quantity": 2}])
    assert stock_of(db, "pen-blue") == 5
    assert stock_of(db, "ink") == 2


def test_minimum_order_value(db, shopper, make_product):
    settings_store.update_setting(db, "min_order_value", 100)
    make_product(slug="notebook", price=20.0, track=True, stock=10)

    with pytest.raises(MinimumOrderError) as exc:
        place(db, shopper, [{"slug": "notebook", "quantity": 3}])
    assert exc.value.subtotal == 60.0
    assert exc.value.minimum == 100
    assert stock_of(db, "notebook") == 10

    order = place(db, shopper, [{"slug": "notebook", "quantity": 5}])
    assert order["subtotal"] == 100.0


def test_stale_delivery_fee_is_rejected(db, shopper, make_product):
    make_product()
    settings_store.update_setting(db, "delivery_fee", 60)
    with pytest.raises(ValidationError) as exc:
        place(db, shopper, [{"slug": "pen-blue", "quantity": 1}], delivery_fee=50)
    assert exc.value.details["deliveryFee"] == 60
    assert place(db, shopper, [{"slug": "pen-blue", "quantity": 1}], delivery_fee=60)["total"] == 70.0


def test_free_delivery_threshold(db, shopper, make_product):
    settings_store.update_setting(db, "free_delivery_threshold", 30)
    make_product(price=10.0)
    assert place(db, shopper, [{"slug": "pen-blue", "quantity": 2}])["delivery_fee"] == 50
    order = place(db, shopper, [{"slug": "pen-blue", "quantity": 3}])
    assert order["delivery_fee"] == 0
    assert order["total"] == 30.0


def test_price_edits_do_not_touch_existing_orders(db, shopper, make_product):
    make_product(slug="pen-blue", price=10.0, discount=PEN_DISCOUNT)
    order = place(db, shopper, [{"slug": "pen-blue", "quantity": 3}])

    catalog.update_product(db, "pen-blue", {"price": 99.0, "discount": None})
    refetched = orders.get_order(db, order["id"], shopper)
    assert refetched["items"][0]["unit_price"] == 8.0
    assert refetched["total"] == 74.0


def test_idempotency_key_replays_order(db, shopper, make_user, make_product):
    make_product(slug="pen-blue", track=True, stock=5)
    first = place(db, shopper, [{"slug": "pen-blue", "quantity": 2}], idempotency_key="checkout-1")
    again = place(db, shopper, [{"slug": "pen-blue", "quantity": 2}], idempotency_key="checkout-1")
    assert again["id"] == first["id"]
    assert stock_of(db, "pen-blue") == 3
    assert db["order"].count_documents({}) == 1

    intruder = make_user(email="intruder@example.com")
    with pytest.raises(ConflictError):
        place(db, intruder, [{"slug": "pen-blue", "quantity": 1}], idempotency_key="checkout-1")


def test_checkout_saves_missing_profile_details(db, shopper, make_product):
    make_product()
    place(db, shopper, [{"slug": "pen-blue", "quantity": 1}], address="5 Lake View", phone="111")
    user = db["user"].find_one({"email": shopper["email"]})
    assert user["address"] == "5 Lake View"
    assert user["phone"] == "111"


def test_order_visibility(db, shopper, admin, make_user, make_product):
    make_product()
    order = place(db, shopper, [{"slug": "pen-blue", "quantity": 1}])
    stranger = make_user(email="stranger@example.com")

    assert orders.get_order(db, order["id"], shopper)["id"] == order["id"]
    assert orders.get_order(db, order["id"], admin)["id"] == order["id"]
    with pytest.raises(NotFoundError):
        orders.get_order(db, order["id"], stranger)
    with pytest.raises(NotFoundError):
        orders.get_order(db, "not-an-id", admin)


def test_list_orders_filters(db, shopper, admin, make_user, make_product):
    make_product()
    other = make_user(email="other@example.com")
    mine = place(db, shopper, [{"slug": "pen-blue", "quantity": 1}])
    theirs = place(db, other, [{"slug": "pen-blue", "quantity": 1}])
    orders.transition_status(db, theirs["id"], orders.CONFIRMED, admin)

    assert [o["id"] for o in orders.list_orders(db, user_id=shopper["id"])] == [mine["id"]]
    assert [o["id"] for o in orders.list_orders(db, status=orders.CONFIRMED)] == [theirs["id"]]
    assert len(orders.list_orders(db)) == 2
    with pytest.raises(ValidationError):
        orders.list_orders(db, status="lost")


@pytest.mark.parametrize("current,new,allowed", [
    ("placed", "confirmed", True),
    ("placed", "shipped", True),
    ("placed", "delivered", True),
    ("confirmed", "cancelled", True),
    ("shipped", "delivered", True),
    ("shipped", "confirmed", False),
    ("confirmed", "confirmed", False),
    ("delivered", "cancelled", False),
    ("cancelled", "placed", False),
    ("cancelled", "confirmed", False),
])
def test_can_transition(current, new, allowed):
    assert orders.can_transition(current, new) is allowed


def test_status_lifecycle(db, shopper, admin, make_product):
    make_product(slug="pen-blue", track=True, stock=4)
    order = place(db, shopper, [{"slug": "pen-blue", "quantity": 1}])

    shipped = orders.transition_status(db, order["id"], orders.SHIPPED, admin)
    assert shipped["status"] == orders.SHIPPED
    assert [h["status"] for h in shipped["status_history"]] == [orders.PLACED, orders.SHIPPED]

    delivered = orders.transition_status(db, order["id"], orders.DELIVERED, admin)
    assert delivered["items"] == order["items"]
    for target in (orders.CANCELLED, orders.PLACED, orders.SHIPPED):
        with pytest.raises(InvalidStatusTransitionError):
            orders.transition_status(db, order["id"], target, admin)


def test_cancel_does_not_restock(db, shopper, admin, make_product):
    make_product(slug="pen-blue", track=True, stock=4)
    order = place(db, shopper, [{"slug": "pen-blue", "quantity": 3}])
    orders.transition_status(db, order["id"], orders.CANCELLED, admin)
    assert stock_of(db, "pen-blue") == 1
    with pytest.raises(InvalidStatusTransitionError):
        orders.transition_status(db, order["id"], orders.CONFIRMED, admin)


def test_unknown_status_rejected(db, shopper, admin, make_product):
    make_product()
    order = place(db, shopper, [{"slug": "pen-blue", "quantity": 1}])
    with pytest.raises(ValidationError):
        orders.transition_status(db, order["id"], "lost", admin)


def test_product_removed_between_check_and_reserve(db, shopper, make_product, monkeypatch):
    make_product(slug="pen-blue", track=True, stock=5)
    make_product(slug="ink", track=True, stock=3)
    real_reserve = catalog.reserve_stock

    def ink_withdrawn(database, slug, quantity):
        if slug == "ink":
            database["product"].delete_one({"slug": "ink"})
        return real_reserve(database, slug, quantity)

    monkeypatch.setattr(catalog, "reserve_stock", ink_withdrawn)
    with pytest.raises(NotFoundError) as exc:
        place(db, shopper, [{"slug": "pen-blue", "quantity": 2}, {"slug": "ink", "quantity": 1}])
    assert exc.value.identifier == "ink"
    assert stock_of(db, "pen-blue") == 5
    assert db["order"].count_documents({}) == 0


def test_tracking_switched_off_between_check_and_reserve(db, shopper, make_product, monkeypatch):
    make_product(slug="pen-blue", track=True, stock=1)
    real_reserve = catalog.reserve_stock

    def tracking_disabled(database, slug, quantity):
        database["product"].update_one({"slug": slug}, {"$set": {"inventory.track": False}})
        return real_reserve(database, slug, quantity)

    monkeypatch.setattr(catalog, "reserve_stock", tracking_disabled)
    order = place(db, shopper, [{"slug": "pen-blue", "quantity": 1}])
    assert order["status"] == orders.PLACED
    assert stock_of(db, "pen-blue") == 1
