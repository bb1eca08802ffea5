from __future__ import annotations

from ..extensions import db
from wholesale.time_utils import to_utc_z, utcnow


class FlatTaxRule(db.Model):
    """
    Fixed per-unit tax (e.g. a county tobacco tax), never percentage based.

    A rule applies to an order item when the item's product points at the
    rule, or when the rule names a category and the product is in it.
    Lines are displayed in display_order (ties broken by id).
    """
    __tablename__ = "flat_tax_rules"
    __table_args__ = (
        db.CheckConstraint("per_unit_cents >= 0", name="ck_flat_tax_rules_per_unit_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    label = db.Column(db.String(128), nullable=False)
    per_unit_cents = db.Column(db.Integer, nullable=False)
    category = db.Column(db.String(64), nullable=True, index=True)
    display_order = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "per_unit_cents": self.per_unit_cents,
            "category": self.category,
            "display_order": self.display_order,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Catalog product as seen by settlement (read-only input).

    Catalog browsing and maintenance live outside this service; only the
    fields the settlement calculator needs are mapped here.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_category_active", "category", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False)

    category = db.Column(db.String(64), nullable=True)
    is_tobacco = db.Column(db.Boolean, nullable=False, default=False)
    flat_tax_rule_id = db.Column(db.Integer, db.ForeignKey("flat_tax_rules.id"), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    flat_tax_rule = db.relationship("FlatTaxRule")

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "category": self.category,
            "is_tobacco": self.is_tobacco,
            "flat_tax_rule_id": self.flat_tax_rule_id,
            "is_active": self.is_active,
        }
