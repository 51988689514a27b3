from sqlalchemy import select
from sqlalchemy.orm import Session

from thrifthub.errors import CartItemNotFound, InsufficientStock, ProductNotFound, ProductUnavailable
from thrifthub.models import Cart, CartItem, Product


def get_or_create_cart(db: Session, user_id: str) -> Cart:
    cart = db.scalar(select(Cart).where(Cart.user_id == user_id))
    if cart is None:
        cart = Cart(user_id=user_id)
        db.add(cart)
        db.flush()
    return cart


def add_item(db: Session, user_id: str, product_id: str, quantity: int) -> Cart:
    product = db.get(Product, product_id)
    if product is None:
        raise ProductNotFound()
    if not product.is_active:
        raise ProductUnavailable(f'Product "{product.title}" is no longer available.')

    cart = get_or_create_cart(db, user_id)
    item = next((i for i in cart.items if i.product_id == product_id), None)
    wanted = quantity + (item.quantity if item else 0)
    if product.stock < wanted:
        raise InsufficientStock(f'Insufficient stock for "{product.title}". Only {product.stock} available.')

    if item:
        item.quantity = wanted
    else:
        cart.items.append(CartItem(product_id=product_id, quantity=quantity))
    db.commit()
    db.refresh(cart)
    return cart


def remove_item(db: Session, user_id: str, item_id: str) -> Cart:
    cart = get_or_create_cart(db, user_id)
    item = next((i for i in cart.items if i.id == item_id), None)
    if item is None:
        raise CartItemNotFound()
    cart.items.remove(item)
    db.commit()
    db.refresh(cart)
    return cart


def update_item_quantity(db: Session, user_id: str, item_id: str, quantity: int) -> Cart:
    cart = get_or_create_cart(db, user_id)
    item = next((i for i in cart.items if i.id == item_id), None)
    if item is None:
        raise CartItemNotFound()
    product = item.product
    if product.stock < quantity:
        raise InsufficientStock(f'Insufficient stock for "{product.title}". Only {product.stock} available.')
    item.quantity = quantity
    db.commit()
    db.refresh(cart)
    return cart


def clear_cart(db: Session, user_id: str) -> int:
    """Remove every item from the user's cart. Returns how many were removed."""
    cart = db.scalar(select(Cart).where(Cart.user_id == user_id))
    if cart is None:
        return 0
    removed = len(cart.items)
    cart.items.clear()
    db.commit()
    return removed
