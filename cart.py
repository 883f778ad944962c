"""
Cart state container.

A Cart wraps one user's cart document: handlers load it, call the mutation they need
and write `to_document()` back. Every mutation either succeeds or raises a CartError,
so the caller renders a single result instead of re-fetching after a failed update.
"""
from typing import Iterable, List, Mapping, Optional

from bson import ObjectId

from checkout import CheckoutError, CouponResult, PriceSummary, calculate_totals


class CartError(CheckoutError):
    default_message = "Cart update failed."


class CartItemNotFound(CartError):
    status_code = 404
    default_message = "Item not found in cart"


def _check_quantity(quantity, minimum: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < minimum:
        if minimum > 0:
            raise CartError("Quantity must be a positive number")
        raise CartError("Quantity must be zero or a positive number")
    return quantity


class Cart:
    def __init__(self, user_id: str, items: Optional[Iterable[Mapping]] = None):
        self.user_id = user_id
        self.items: List[dict] = [dict(item) for item in items or []]

    @classmethod
    def from_document(cls, doc: Optional[Mapping], user_id: str) -> "Cart":
        if not doc:
            return cls(user_id)
        return cls(user_id, doc.get("items", []))

    def to_document(self) -> dict:
        return {"userId": self.user_id, "items": self.items}

    def __len__(self):
        return len(self.items)

    def find(self, item_id: str) -> Optional[dict]:
        return next((item for item in self.items if item["id"] == item_id), None)

    def find_product(self, product_id: str) -> Optional[dict]:
        return next((item for item in self.items if item["productId"] == product_id), None)

    def add(self, product: Mapping, quantity: int = 1) -> dict:
        """Add a product or bump the quantity of its existing line, capped at available stock."""
        _check_quantity(quantity, 1)
        if not product.get("isActive", True):
            raise CartError(f"\"{product.get('name')}\" is no longer available.")
        stock = int(product.get("stock", 0))
        if stock < 1:
            raise CartError(f"\"{product.get('name')}\" is out of stock.")

        product_id = str(product["_id"])
        item = self.find_product(product_id)
        if item is None:
            item = {"id": str(ObjectId()), "productId": product_id, "quantity": 0}
            self.items.append(item)
        item.update({
            "name": product.get("name"),
            "price": float(product.get("price", 0)),
            "image": (product.get("images") or [None])[0],
            "stock": stock,
        })
        item["quantity"] = min(item["quantity"] + quantity, stock)
        return item

    def set_quantity(self, item_id: str, quantity: int) -> Optional[dict]:
        """Set a line's quantity; zero removes the line and returns None."""
        _check_quantity(quantity, 0)
        item = self.find(item_id)
        if item is None:
            raise CartItemNotFound()
        if quantity == 0:
            self.remove(item_id)
            return None
        if quantity > item.get("stock", 0):
            raise CartError(f"Only {item.get('stock', 0)} of \"{item.get('name')}\" left in stock.")
        item["quantity"] = quantity
        return item

    def remove(self, item_id: str) -> dict:
        item = self.find(item_id)
        if item is None:
            raise CartItemNotFound()
        self.items.remove(item)
        return item

    def remove_products(self, product_ids: Iterable[str]) -> int:
        product_ids = set(product_ids)
        before = len(self.items)
        self.items = [item for item in self.items if item["productId"] not in product_ids]
        return before - len(self.items)

    def summary(self, coupon: Optional[CouponResult] = None) -> PriceSummary:
        if coupon is None:
            return calculate_totals(self.items)
        return calculate_totals(self.items, coupon.amount, coupon.free_shipping)

    def as_dict(self, coupon: Optional[CouponResult] = None) -> dict:
        return {"items": self.items, "summary": self.summary(coupon).as_dict()}
