import logging
from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session, joinedload

from marketplace.core.errors import InsufficientStockError, NotFoundError, ValidationError
from marketplace.models.cart import CartItem, CartServiceItem
from marketplace.models.catalog import Product, Service
from marketplace.models.seller import Seller
from marketplace.services.money import quantize

logger = logging.getLogger(__name__)


@dataclass
class ProductLine:
    product_id: object
    name: str
    quantity: int
    unit_price: Decimal
    stock: int

    @property
    def line_total(self) -> Decimal:
        return quantize(self.unit_price * self.quantity)


@dataclass
class ServiceLine:
    service_id: object
    name: str
    quantity: int
    unit_price: Decimal
    duration_minutes: int
    booking_date: Optional[date] = None
    booking_time: Optional[time] = None

    @property
    def line_total(self) -> Decimal:
        return quantize(self.unit_price * self.quantity)


@dataclass
class SellerGroup:
    seller: Seller
    products: List[ProductLine] = field(default_factory=list)
    services: List[ServiceLine] = field(default_factory=list)

    @property
    def seller_id(self):
        return self.seller.id

    @property
    def subtotal(self) -> Decimal:
        return quantize(
            sum((l.line_total for l in self.products), Decimal("0"))
            + sum((l.line_total for l in self.services), Decimal("0"))
        )


@dataclass
class SplitCart:
    """A customer's cart grouped by seller, in first-seen cart order."""
    groups: Dict[object, SellerGroup]
    # Booked service lines across all sellers, in cart line order
    booked: List[Tuple[SellerGroup, ServiceLine]] = field(default_factory=list)

    @property
    def subtotal(self) -> Decimal:
        return quantize(sum((g.subtotal for g in self.groups.values()), Decimal("0")))

    @property
    def seller_ids(self) -> list:
        return list(self.groups.keys())

    def service_lines(self):
        """(seller group, line) pairs in cart line order."""
        return iter(self.booked)


def load_cart(db: Session, user_id):
    products = (
        db.query(CartItem)
        .options(joinedload(CartItem.product).joinedload(Product.seller))
        .filter(CartItem.user_id == user_id)
        .order_by(CartItem.created_at, CartItem.id)
        .all()
    )
    services = (
        db.query(CartServiceItem)
        .options(joinedload(CartServiceItem.service).joinedload(Service.seller))
        .filter(CartServiceItem.user_id == user_id)
        .order_by(CartServiceItem.created_at, CartServiceItem.id)
        .all()
    )
    return products, services


def split_cart(products: List[CartItem], services: List[CartServiceItem], bookings: Optional[dict] = None) -> SplitCart:
    """
    Group raw cart rows by seller and check stock.

    `bookings` maps service id to a (date, time) pair chosen for that line.
    Any stock shortfall aborts the whole split with an itemized error list.
    """
    bookings = bookings or {}
    groups: Dict[object, SellerGroup] = {}
    booked = []
    stock_errors = []

    def group_for(seller):
        if seller.id not in groups:
            groups[seller.id] = SellerGroup(seller=seller)
        return groups[seller.id]

    for row in products:
        product = row.product
        if not product or not product.is_active:
            raise NotFoundError("Product is no longer available", product_id=str(row.product_id))
        if row.quantity > product.stock:
            stock_errors.append({
                "product_id": str(product.id),
                "name": product.name,
                "requested": row.quantity,
                "available": product.stock,
            })
            continue
        group_for(product.seller).products.append(ProductLine(
            product_id=product.id,
            name=product.name,
            quantity=row.quantity,
            unit_price=Decimal(product.price),
            stock=product.stock,
        ))

    if stock_errors:
        logger.info("Checkout aborted: %d line(s) short of stock", len(stock_errors))
        raise InsufficientStockError(stock_errors)

    for row in services:
        service = row.service
        if not service or not service.is_active:
            raise NotFoundError("Service is no longer available", service_id=str(row.service_id))
        slot = bookings.get(service.id) or bookings.get(str(service.id))
        group = group_for(service.seller)
        line = ServiceLine(
            service_id=service.id,
            name=service.name,
            quantity=row.quantity,
            unit_price=Decimal(service.price),
            duration_minutes=service.duration_minutes,
            booking_date=slot[0] if slot else None,
            booking_time=slot[1] if slot else None,
        )
        group.services.append(line)
        booked.append((group, line))

    if not groups:
        raise ValidationError("Cart is empty")
    return SplitCart(groups=groups, booked=booked)


# ---------------------------------------------------------------------------
# Cart line maintenance
# ---------------------------------------------------------------------------


def add_product(db: Session, user_id, product_id, quantity: int) -> CartItem:
    product = db.query(Product).filter(Product.id == product_id, Product.is_active == True).first()  # noqa: E712
    if not product:
        raise NotFoundError("Product not found", product_id=str(product_id))
    item = db.query(CartItem).filter(CartItem.user_id == user_id, CartItem.product_id == product_id).first()
    if item:
        item.quantity += quantity
    else:
        item = CartItem(user_id=user_id, product_id=product_id, quantity=quantity)
        db.add(item)
    db.commit()
    db.refresh(item)
    return item


def add_service(db: Session, user_id, service_id, quantity: int = 1) -> CartServiceItem:
    service = db.query(Service).filter(Service.id == service_id, Service.is_active == True).first()  # noqa: E712
    if not service:
        raise NotFoundError("Service not found", service_id=str(service_id))
    item = db.query(CartServiceItem).filter(
        CartServiceItem.user_id == user_id, CartServiceItem.service_id == service_id
    ).first()
    if item:
        item.quantity += quantity
    else:
        item = CartServiceItem(user_id=user_id, service_id=service_id, quantity=quantity)
        db.add(item)
    db.commit()
    db.refresh(item)
    return item


def update_line(db: Session, user_id, line_id, quantity: int):
    item = (
        db.query(CartItem).filter(CartItem.id == line_id, CartItem.user_id == user_id).first()
        or db.query(CartServiceItem).filter(CartServiceItem.id == line_id, CartServiceItem.user_id == user_id).first()
    )
    if not item:
        raise NotFoundError("Cart line not found")
    if quantity <= 0:
        db.delete(item)
        db.commit()
        return None
    item.quantity = quantity
    db.commit()
    db.refresh(item)
    return item


def remove_line(db: Session, user_id, line_id) -> None:
    update_line(db, user_id, line_id, 0)


def clear_lines(db: Session, user_id, product_ids=(), service_ids=()) -> None:
    """Delete the cart lines that were converted into an order. Caller commits."""
    if product_ids:
        db.query(CartItem).filter(
            CartItem.user_id == user_id, CartItem.product_id.in_(list(product_ids))
        ).delete(synchronize_session="fetch")
    if service_ids:
        db.query(CartServiceItem).filter(
            CartServiceItem.user_id == user_id, CartServiceItem.service_id.in_(list(service_ids))
        ).delete(synchronize_session="fetch")
