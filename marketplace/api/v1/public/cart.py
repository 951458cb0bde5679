from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from marketplace.db.session import get_db
from marketplace.api.deps import get_current_customer
from marketplace.models.user import User
from marketplace.schemas.cart import (
    Cart,
    CartLine,
    CartLineUpdate,
    CartProductAdd,
    CartSellerGroup,
    CartServiceAdd,
)
from marketplace.services import cart as cart_service
from marketplace.services.money import quantize

router = APIRouter(prefix="/cart", tags=["Cart"])


def _build_cart(db: Session, user_id) -> Cart:
    """Current cart grouped by seller (no stock check; that happens at checkout)."""
    products, services = cart_service.load_cart(db, user_id)
    groups = {}

    def group_for(seller):
        if seller.id not in groups:
            groups[seller.id] = CartSellerGroup(
                seller_id=seller.id, business_name=seller.business_name, subtotal=0, lines=[],
            )
        return groups[seller.id]

    for row in products:
        group_for(row.product.seller).lines.append(CartLine(
            id=row.id, kind="product", item_id=row.product_id, seller_id=row.product.seller_id,
            name=row.product.name, quantity=row.quantity, unit_price=row.product.price,
            line_total=quantize(row.product.price * row.quantity),
        ))
    for row in services:
        group_for(row.service.seller).lines.append(CartLine(
            id=row.id, kind="service", item_id=row.service_id, seller_id=row.service.seller_id,
            name=row.service.name, quantity=row.quantity, unit_price=row.service.price,
            line_total=quantize(row.service.price * row.quantity),
        ))

    for group in groups.values():
        group.subtotal = quantize(sum(line.line_total for line in group.lines))
    return Cart(
        groups=list(groups.values()),
        subtotal=quantize(sum(g.subtotal for g in groups.values())),
    )


@router.get("/", response_model=Cart)
def get_cart(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    return _build_cart(db, current_user.id)


@router.post("/items", response_model=Cart, status_code=status.HTTP_201_CREATED)
def add_product(
    body: CartProductAdd,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    cart_service.add_product(db, current_user.id, body.product_id, body.quantity)
    return _build_cart(db, current_user.id)


@router.post("/services", response_model=Cart, status_code=status.HTTP_201_CREATED)
def add_service(
    body: CartServiceAdd,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    cart_service.add_service(db, current_user.id, body.service_id, body.quantity)
    return _build_cart(db, current_user.id)


@router.patch("/lines/{line_id}", response_model=Cart)
def update_line(
    line_id: UUID,
    body: CartLineUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    """Change a line's quantity; a quantity of 0 removes it."""
    cart_service.update_line(db, current_user.id, line_id, body.quantity)
    return _build_cart(db, current_user.id)


@router.delete("/lines/{line_id}", response_model=Cart)
def remove_line(
    line_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_customer),
):
    cart_service.remove_line(db, current_user.id, line_id)
    return _build_cart(db, current_user.id)
