"""Inventory ledger: stock reservation and release on catalog listings.

Every method runs inside the caller's session so stock moves commit or roll
back together with the order/payment write that caused them.
"""

from decimal import Decimal

from sqlalchemy import delete, update

from gasmarket.common.errors import InsufficientStock, ListingNotFound, ListingUnavailable
from gasmarket.common.logging import logger
from gasmarket.services.inventory.models import CartItem, Listing


class InventoryLedger:
    """Owns `available_quantity` movements for listings."""

    def get_listing(self, db, listing_id: str, for_update: bool = False) -> Listing:
        listing = db.get(Listing, listing_id, with_for_update=for_update, populate_existing=True)
        if listing is None:
            raise ListingNotFound()
        return listing

    def check_available(self, listing: Listing, quantity: int) -> None:
        """Reject unavailable listings or requests above current stock."""

        if not listing.is_available:
            raise ListingUnavailable()
        if listing.available_quantity < quantity:
            raise InsufficientStock(
                f"Only {listing.available_quantity} units available. Requested: {quantity}",
                available_quantity=listing.available_quantity,
            )

    def reserve(self, db, listing_id: str, quantity: int, count_order: bool = True) -> bool:
        """Deduct `quantity` units if the listing is available and has enough stock.

        The guard and the decrement are one conditional UPDATE, so two
        concurrent reservations cannot both pass on the same units. Returns
        False when the guard fails.
        """

        values = {"available_quantity": Listing.available_quantity - quantity}
        if count_order:
            values["total_orders"] = Listing.total_orders + 1
        result = db.execute(
            update(Listing)
            .where(
                Listing.id == listing_id,
                Listing.is_available.is_(True),
                Listing.available_quantity >= quantity,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("stock_reserve_rejected listing_id=%s quantity=%s", listing_id, quantity)
            return False
        logger.info("stock_reserved listing_id=%s quantity=%s", listing_id, quantity)
        return True

    def release(self, db, listing_id: str, quantity: int) -> None:
        """Return `quantity` units to the listing."""

        result = db.execute(
            update(Listing)
            .where(Listing.id == listing_id)
            .values(available_quantity=Listing.available_quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ListingNotFound()
        logger.info("stock_released listing_id=%s quantity=%s", listing_id, quantity)

    def count_order(self, db, listing_id: str) -> None:
        """Bump the listing popularity counter without touching stock."""

        db.execute(
            update(Listing)
            .where(Listing.id == listing_id)
            .values(total_orders=Listing.total_orders + 1)
            .execution_options(synchronize_session=False)
        )

    def record_rating(self, db, listing_id: str, rating: int) -> None:
        """Fold one new rating into the listing's running average."""

        listing = self.get_listing(db, listing_id, for_update=True)
        total = listing.total_orders or 0
        current = float(listing.rating or 0)
        new_rating = ((current * total) + rating) / (total + 1)
        listing.rating = Decimal(f"{new_rating:.2f}")
        logger.info("listing_rating_updated listing_id=%s rating=%.2f", listing_id, new_rating)

    def clear_cart(self, db, customer_id: str, listing_id: str) -> int:
        """Remove the customer's cart entry for a listing; returns rows deleted."""

        result = db.execute(
            delete(CartItem)
            .where(CartItem.customer_id == customer_id, CartItem.listing_id == listing_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
