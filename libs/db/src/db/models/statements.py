from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CHAR,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------
# Core: si_transactions
# ---------------------------


class SiTransaction(Base):
    __tablename__ = "si_transactions"

    # SQLite only autoincrements INTEGER PRIMARY KEY (rowid) columns.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    fingerprint_sha256: Mapped[str] = mapped_column(CHAR(64), nullable=False, unique=True)
    source_account: Mapped[str] = mapped_column(String, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    date_is_fallback: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    recipient: Mapped[str] = mapped_column(Text, nullable=False)
    payment_processor: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency_code: Mapped[str] = mapped_column(
        CHAR(3), nullable=False, server_default=text("'EUR'")
    )
    confidence: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False)
    # Category is free text: the allow-list is supplied per import, not stored.
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    category_confidence: Mapped[Decimal | None] = mapped_column(Numeric(3, 2), nullable=True)
    origin: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'heuristic'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("origin in ('heuristic','generative')", name="ck_si_tx_origin"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_si_tx_confidence"),
        CheckConstraint(
            (
                "category_confidence IS NULL OR "
                "(category_confidence >= 0 AND category_confidence <= 1)"
            ),
            name="ck_si_tx_category_confidence",
        ),
        CheckConstraint("amount <> 0", name="ck_si_tx_amount_non_zero"),
    )


# ---------------------------
# Model blobs: si_classifier_models
# ---------------------------


class SiClassifierModel(Base):
    __tablename__ = "si_classifier_models"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    # Serialized ``ClassifierState`` JSON; opaque to the database.
    state: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


__all__ = [
    "Base",
    "SiClassifierModel",
    "SiTransaction",
]
