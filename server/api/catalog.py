"""
Product and category endpoints for Cap Gold.

Any signed-in user can browse the catalog; changing it requires the admin
role. Products live under ``/api/products`` and categories under
``/api/category``.
"""

import logging
from dataclasses import replace
from typing import Optional, Union
from fastapi import APIRouter, Depends, Query
from pydantic import Field

from shared.exceptions import ValidationError
from shared.models import Product, User
from server.api.auth import CamelModel
from server.core.catalog_store import APPROVED, UNAPPROVED, CatalogStore
from server.middleware.auth import get_catalog_store, get_current_user, require_admin

logger = logging.getLogger(__name__)
router = APIRouter()


class ProductRequest(CamelModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    image_url: str = Field("", alias="imageUrl")
    category: str = ""
    description: str = ""
    weight: Union[str, float] = ""
    purity: str = ""
    dimension: str = ""
    max_quantity: int = Field(0, ge=0, alias="maxQuantity")
    unapproved_price: Optional[float] = Field(None, ge=0, alias="unapprovedPrice")

    def to_product(self, product_id: str = "") -> Product:
        return Product(
            id=product_id,
            name=self.name,
            price=self.price,
            image_url=self.image_url,
            category=self.category,
            description=self.description,
            weight=str(self.weight),
            purity=self.purity,
            dimension=self.dimension,
            max_quantity=self.max_quantity,
        )


class CategoryRequest(CamelModel):
    name: str = Field(..., min_length=1)


# Products

@router.get("/products/approved")
async def list_approved_products(
    current_user: User = Depends(get_current_user),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    return {'products': [p.to_dict() for p in catalog.list_products(APPROVED)]}


@router.get("/products/unapproved")
async def list_unapproved_products(
    current_user: User = Depends(get_current_user),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    return {'products': [p.to_dict() for p in catalog.list_products(UNAPPROVED)]}


@router.get("/products/approved/{product_id}")
async def get_approved_product(
    product_id: str,
    current_user: User = Depends(get_current_user),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    return {'product': catalog.get_product(product_id, APPROVED).to_dict()}


@router.get("/products/unapproved/{product_id}")
async def get_unapproved_product(
    product_id: str,
    current_user: User = Depends(get_current_user),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    return {'product': catalog.get_product(product_id, UNAPPROVED).to_dict()}


@router.post("/products", status_code=201)
async def create_product(
    body: ProductRequest,
    admin: User = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    """Add a product to both catalog variants."""
    product = catalog.create_product(body.to_product(), unapproved_price=body.unapproved_price)
    return {'product': product.to_dict()}


@router.put("/products/{product_id}")
async def update_product(
    product_id: str,
    body: ProductRequest,
    variant: Optional[str] = Query(None),
    admin: User = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    """Replace a product's details in both variants, or only in ``variant``."""
    product = body.to_product(product_id)
    if variant is None and body.unapproved_price is not None:
        updated = catalog.update_product(product_id, product, variant=APPROVED)
        catalog.update_product(product_id, replace(product, price=body.unapproved_price), variant=UNAPPROVED)
    else:
        updated = catalog.update_product(product_id, product, variant=variant)
    return {'product': updated.to_dict()}


@router.delete("/products/{product_id}")
async def delete_product(
    product_id: str,
    admin: User = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    catalog.delete_product(product_id)
    return {'deleted': True}


# Categories

@router.get("/category/all")
async def list_categories(
    current_user: User = Depends(get_current_user),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    return [category.__dict__ for category in catalog.list_categories()]


@router.post("/category/create", status_code=201)
async def create_category(
    body: CategoryRequest,
    admin: User = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    return catalog.create_category(body.name).__dict__


@router.delete("/category/delete")
async def delete_category(
    category_id: Optional[str] = Query(None, alias="id"),
    admin: User = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog_store)
):
    if not category_id:
        raise ValidationError("Invalid or missing id", field_name="id")
    catalog.delete_category(category_id)
    return {'deleted': True}
