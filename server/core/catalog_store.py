"""
In-memory product catalog and categories for the Cap Gold backend.

Every product exists in up to two variants sharing one ID: the approved
variant shown to approved customers and admins, and the unapproved variant
shown to everyone else. Variants usually differ only in price.
"""

import logging
import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional

from shared.exceptions import ErrorCode, ResourceError, ValidationError
from shared.models import Category, Product, UserRole

logger = logging.getLogger(__name__)

APPROVED = "approved"
UNAPPROVED = "unapproved"
VARIANTS = (APPROVED, UNAPPROVED)


def variant_for_role(role: int) -> str:
    """Catalog variant a user with ``role`` buys from."""
    if role in (UserRole.ADMIN.value, UserRole.APPROVED.value):
        return APPROVED
    return UNAPPROVED


class CatalogStore:
    """Thread-safe in-memory products and categories."""

    def __init__(self):
        self._lock = threading.Lock()
        self._products: Dict[str, Dict[str, Product]] = {APPROVED: {}, UNAPPROVED: {}}
        self._categories: Dict[str, Category] = {}

    # Products

    @staticmethod
    def _check_variant(variant: str) -> None:
        if variant not in VARIANTS:
            raise ValidationError(f"Unknown catalog variant: {variant}", field_name="variant")

    @staticmethod
    def _check_product(product: Product) -> None:
        if not product.name or not product.name.strip():
            raise ValidationError("Product name cannot be empty", field_name="name")
        if product.price < 0:
            raise ValidationError("Price cannot be negative", field_name="price",
                                  error_code=ErrorCode.VALIDATION_VALUE_OUT_OF_RANGE)
        if product.max_quantity < 0:
            raise ValidationError("Maximum quantity cannot be negative", field_name="maxQuantity",
                                  error_code=ErrorCode.VALIDATION_VALUE_OUT_OF_RANGE)

    def list_products(self, variant: str) -> List[Product]:
        self._check_variant(variant)
        with self._lock:
            return sorted(self._products[variant].values(), key=lambda p: p.name.lower())

    def get_product(self, product_id: str, variant: str) -> Product:
        """
        Look up one variant of a product.

        Raises:
            ResourceError: No such product in that variant (404)
        """
        self._check_variant(variant)
        with self._lock:
            product = self._products[variant].get(product_id)
        if product is None:
            raise ResourceError("Product not found")
        return product

    def create_product(self, product: Product, unapproved_price: Optional[float] = None) -> Product:
        """
        Add a product in both variants under a fresh ID.

        Args:
            product: Product details; its ``id`` is ignored
            unapproved_price: Price of the unapproved variant, the same as the
                approved one if omitted

        Returns:
            The approved variant
        """
        self._check_product(product)
        created = replace(product, id=uuid.uuid4().hex, name=product.name.strip())
        unapproved = replace(created, price=created.price if unapproved_price is None else unapproved_price)
        self._check_product(unapproved)

        with self._lock:
            self._products[APPROVED][created.id] = created
            self._products[UNAPPROVED][created.id] = unapproved

        logger.info(f"Created product {created.id} ({created.name})")
        return created

    def update_product(self, product_id: str, product: Product,
                       variant: Optional[str] = None) -> Product:
        """
        Replace the details of an existing product.

        Args:
            product_id: Product to update
            product: New details; its ``id`` is ignored
            variant: Only update this variant, both if omitted

        Returns:
            The updated product, approved variant unless only the unapproved
            one was changed

        Raises:
            ResourceError: Unknown product (404)
        """
        self._check_product(product)
        variants = VARIANTS if variant is None else (variant,)
        for name in variants:
            self._check_variant(name)
        updated = replace(product, id=product_id, name=product.name.strip())

        with self._lock:
            if not any(product_id in self._products[name] for name in variants):
                raise ResourceError("Product not found")
            for name in variants:
                if product_id in self._products[name]:
                    self._products[name][product_id] = updated

        logger.info(f"Updated product {product_id}")
        return updated

    def delete_product(self, product_id: str) -> None:
        with self._lock:
            removed = [self._products[name].pop(product_id, None) for name in VARIANTS]
        if not any(removed):
            raise ResourceError("Product not found")
        logger.info(f"Deleted product {product_id}")

    # Categories

    def list_categories(self) -> List[Category]:
        with self._lock:
            return sorted(self._categories.values(), key=lambda c: c.name.lower())

    def create_category(self, name: str) -> Category:
        """
        Raises:
            ValidationError: Empty name
            ResourceError: A category with this name exists (409)
        """
        name = (name or '').strip()
        if not name:
            raise ValidationError("Category name cannot be empty", field_name="name")

        with self._lock:
            if any(c.name.lower() == name.lower() for c in self._categories.values()):
                raise ResourceError("Category exists", error_code=ErrorCode.RESOURCE_CONFLICT)
            category = Category(id=uuid.uuid4().hex, name=name)
            self._categories[category.id] = category

        logger.info(f"Created category {category.name}")
        return category

    def delete_category(self, category_id: str) -> None:
        with self._lock:
            category = self._categories.pop(category_id, None)
        if category is None:
            raise ResourceError("Category not found")
        logger.info(f"Deleted category {category.name}")
