"""Product catalogue as seen by crop planning.

A Product is grown either from a single Recipe or as a mix of recipes with
percentage shares (ProductMixComponent).  Each ProductVariation is a
sellable unit (clamshell, bag, ...) with a fill weight in grams.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from microfarm.database import Base
from microfarm.utils.clock import utcnow


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Single-variety products point straight at their recipe; mixes leave it null
    recipe_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("recipes.id"), index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    # ── Relationships ────────────────────────────────────────
    recipe = relationship("Recipe", lazy="selectin")
    mix_components = relationship(
        "ProductMixComponent", lazy="selectin", cascade="all, delete-orphan"
    )
    variations = relationship(
        "ProductVariation", back_populates="product", lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def is_mix(self) -> bool:
        return bool(self.mix_components)


class ProductVariation(Base):
    __tablename__ = "product_variations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # Grams of greens in one unit of this variation
    fill_weight_grams: Mapped[float | None] = mapped_column(Float)
    price: Mapped[float] = mapped_column(Float, default=0.0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    product = relationship("Product", back_populates="variations")


class ProductMixComponent(Base):
    __tablename__ = "product_mix_components"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False, index=True
    )
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id"), nullable=False
    )
    # Share of the mix by weight, 0–100
    percentage: Mapped[float] = mapped_column(Float, nullable=False)

    recipe = relationship("Recipe", lazy="selectin")
