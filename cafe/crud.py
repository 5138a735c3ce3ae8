from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models, schemas
from .auth import hash_password, verify_password
from .errors import Conflict, InvalidRequest, NotFound, Unauthorized
from .utils import round_amount, sanitize_input, sanitize_optional


def _commit(db: Session, message: str = "integrity error") -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise InvalidRequest(message) from e


def _money(value):
    return round_amount(value) if value is not None else None


# -------------------- Identity --------------------

def ensure_roles(db: Session) -> None:
    existing = set(db.scalars(select(models.Role.name)).all())
    for name in models.ROLES:
        if name not in existing:
            db.add(models.Role(name=name))
    db.commit()


def get_role(db: Session, name: str) -> Optional[models.Role]:
    return db.query(models.Role).filter(models.Role.name == name).first()


def get_user(db: Session, user_id: int) -> Optional[models.User]:
    return db.get(models.User, user_id)


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email.strip().lower()).first()


def create_user(db: Session, name: str, email: str, password: str, role: Optional[str] = None) -> models.User:
    if get_user_by_email(db, email):
        raise Conflict("Email already registered")
    role_row = None
    if role is not None:
        role_row = get_role(db, role)
        if role_row is None:
            raise InvalidRequest("Unknown role")
    user = models.User(
        name=sanitize_input(name),
        email=email.strip().lower(),
        password_hash=hash_password(password),
        role=role_row,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise Conflict("Email already registered") from e
    db.refresh(user)
    return user


def register_user(db: Session, data: schemas.RegisterIn) -> models.User:
    return create_user(db, data.name, data.email, data.password, role=models.ROLE_PARISHIONER)


def authenticate(db: Session, email: str, password: str) -> models.User:
    user = get_user_by_email(db, email)
    if not user or not verify_password(password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    return user


def update_profile(db: Session, user_id: int, name: Optional[str] = None, password: Optional[str] = None) -> models.User:
    if not name and not password:
        raise InvalidRequest("Nothing to update")
    user = get_user(db, user_id)
    if not user:
        raise NotFound("User not found")
    if name:
        user.name = sanitize_input(name)
    if password:
        user.password_hash = hash_password(password)
    db.commit()
    db.refresh(user)
    return user


def list_users(db: Session) -> List[models.User]:
    return db.query(models.User).order_by(models.User.created_at.desc(), models.User.id.desc()).all()


def update_user(db: Session, user_id: int, name: Optional[str] = None, role: Optional[str] = None) -> models.User:
    user = get_user(db, user_id)
    if not user:
        raise NotFound("User not found")
    if name:
        user.name = sanitize_input(name)
    if role:
        role_row = get_role(db, role)
        if role_row is None:
            raise InvalidRequest("Unknown role")
        user.role = role_row
    db.commit()
    db.refresh(user)
    return user


def delete_user(db: Session, user_id: int) -> None:
    user = get_user(db, user_id)
    if not user:
        raise NotFound("User not found")
    db.delete(user)
    db.commit()


# -------------------- Categories --------------------

def list_categories(db: Session) -> List[models.Category]:
    return db.query(models.Category).order_by(models.Category.name, models.Category.id).all()


def get_category(db: Session, category_id: int) -> models.Category:
    category = db.get(models.Category, category_id)
    if not category:
        raise NotFound("Category not found")
    return category


def _check_parent(db: Session, parent_id: Optional[int], category_id: Optional[int] = None) -> None:
    if parent_id is None:
        return
    if parent_id == category_id:
        raise InvalidRequest("Category cannot be its own parent")
    if not db.get(models.Category, parent_id):
        raise InvalidRequest("Parent category not found")


def create_category(db: Session, data: schemas.CategoryIn) -> models.Category:
    name = sanitize_input(data.name)
    if not name:
        raise InvalidRequest("name required")
    _check_parent(db, data.parent_id)
    category = models.Category(name=name, parent_id=data.parent_id)
    db.add(category)
    _commit(db)
    db.refresh(category)
    return category


def update_category(db: Session, category_id: int, data: schemas.CategoryIn) -> models.Category:
    fields = data.model_fields_set
    if not data.name and "parent_id" not in fields:
        raise InvalidRequest("Nothing to update")
    category = get_category(db, category_id)
    if data.name:
        category.name = sanitize_input(data.name)
    if "parent_id" in fields:
        _check_parent(db, data.parent_id, category.id)
        category.parent_id = data.parent_id
    _commit(db)
    db.refresh(category)
    return category


def delete_category(db: Session, category_id: int) -> None:
    db.delete(get_category(db, category_id))
    _commit(db)


# -------------------- Products --------------------

def product_dict(product: models.Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "base_price": product.base_price,
        "image_url": product.image_url,
        "available": product.available,
        "category_id": product.category_id,
        "category_name": product.category.name if product.category else None,
    }


def list_products(db: Session, category_id: Optional[int] = None) -> List[dict]:
    query = db.query(models.Product)
    if category_id is not None:
        query = query.filter(models.Product.category_id == category_id)
    return [product_dict(p) for p in query.order_by(models.Product.name, models.Product.id).all()]


def list_available_items(db: Session) -> List[models.ProductItem]:
    return (
        db.query(models.ProductItem)
        .filter(models.ProductItem.available.is_(True))
        .order_by(models.ProductItem.name, models.ProductItem.id)
        .all()
    )


def get_product(db: Session, product_id: int) -> models.Product:
    product = db.get(models.Product, product_id)
    if not product:
        raise NotFound("Product not found")
    return product


def get_product_detail(db: Session, product_id: int) -> dict:
    product = get_product(db, product_id)
    data = product_dict(product)
    data["items"] = [item for item in product.items if item.available]
    data["options"] = list(product.options)
    return data


def _new_item(data: schemas.ProductItemIn) -> models.ProductItem:
    name = sanitize_input(data.name)
    if not name:
        raise InvalidRequest("item name required")
    return models.ProductItem(
        name=name,
        sku=sanitize_optional(data.sku),
        price=_money(data.price),
        available=data.available is not False,
    )


def _new_option(data: schemas.ProductOptionIn) -> models.ProductOption:
    name, value = sanitize_input(data.name), sanitize_input(data.value)
    if not name or not value:
        raise InvalidRequest("name and value required")
    return models.ProductOption(name=name, value=value, extra_price=_money(data.extra_price) or Decimal("0.00"))


def create_product(db: Session, data: schemas.ProductIn) -> models.Product:
    name = sanitize_input(data.name)
    if not name:
        raise InvalidRequest("name required")
    if data.category_id is not None:
        get_category(db, data.category_id)
    product = models.Product(
        category_id=data.category_id,
        name=name,
        description=sanitize_optional(data.description),
        base_price=_money(data.base_price),
        image_url=data.image_url or None,
        available=data.available is not False,
    )
    # product, items and options go out in one commit
    product.items = [_new_item(item) for item in data.items or []]
    product.options = [_new_option(option) for option in data.options or []]
    db.add(product)
    _commit(db)
    db.refresh(product)
    return product


def update_product(db: Session, product_id: int, data: schemas.ProductIn) -> models.Product:
    product = get_product(db, product_id)
    if data.category_id is not None:
        get_category(db, data.category_id)
        product.category_id = data.category_id
    if data.name:
        product.name = sanitize_input(data.name)
    if data.description:
        product.description = sanitize_optional(data.description)
    if data.base_price is not None:
        product.base_price = _money(data.base_price)
    if data.image_url:
        product.image_url = data.image_url
    if data.available is not None:
        product.available = data.available
    if data.items is not None:
        product.items = [_new_item(item) for item in data.items]
    if data.options is not None:
        product.options = [_new_option(option) for option in data.options]
    _commit(db)
    db.refresh(product)
    return product


def delete_product(db: Session, product_id: int) -> None:
    db.delete(get_product(db, product_id))
    _commit(db)


def add_item(db: Session, product_id: int, data: schemas.ProductItemIn) -> models.ProductItem:
    product = get_product(db, product_id)
    item = _new_item(data)
    product.items.append(item)
    _commit(db)
    db.refresh(item)
    return item


def update_item(db: Session, item_id: int, data: schemas.ProductItemIn) -> models.ProductItem:
    item = db.get(models.ProductItem, item_id)
    if not item:
        raise NotFound("Product item not found")
    if data.name:
        item.name = sanitize_input(data.name)
    if data.sku:
        item.sku = sanitize_optional(data.sku)
    if data.price is not None:
        # order lines keep the price they were sold at
        item.price = _money(data.price)
    if data.available is not None:
        item.available = data.available
    _commit(db)
    db.refresh(item)
    return item


def delete_item(db: Session, item_id: int) -> None:
    item = db.get(models.ProductItem, item_id)
    if not item:
        raise NotFound("Product item not found")
    db.delete(item)
    _commit(db)


def add_option(db: Session, product_id: int, data: schemas.ProductOptionIn) -> models.ProductOption:
    product = get_product(db, product_id)
    option = _new_option(data)
    product.options.append(option)
    _commit(db)
    db.refresh(option)
    return option


def update_option(db: Session, option_id: int, data: schemas.ProductOptionIn) -> models.ProductOption:
    option = db.get(models.ProductOption, option_id)
    if not option:
        raise NotFound("Product option not found")
    if data.name:
        option.name = sanitize_input(data.name)
    if data.value:
        option.value = sanitize_input(data.value)
    if data.extra_price is not None:
        option.extra_price = _money(data.extra_price)
    _commit(db)
    db.refresh(option)
    return option


def delete_option(db: Session, option_id: int) -> None:
    option = db.get(models.ProductOption, option_id)
    if not option:
        raise NotFound("Product option not found")
    db.delete(option)
    _commit(db)
