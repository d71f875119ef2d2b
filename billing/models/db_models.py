"""SQLAlchemy ORM models for the local invoice cache"""

from sqlalchemy import BigInteger, Column, Date, DateTime, Index, Integer, JSON, Numeric, String, Text
from datetime import datetime, timezone

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Invoice(Base):
    """Read cache of primary-service invoices merged with legacy enrichment.

    Rows are only ever written by sync (upsert keyed by ``id``); the primary
    invoicing service stays the system of record.
    """
    __tablename__ = "invoices"

    # Assigned by the primary invoicing service, stable across syncs
    id = Column(BigInteger, primary_key=True, autoincrement=False)

    # Owner (denormalized)
    owner_id = Column(BigInteger, nullable=True)
    owner_name = Column(String, nullable=True)
    owner_cnpj = Column(String(32), nullable=True)  # digits only

    # Invoice header
    invoice_number = Column(String(64), nullable=True)
    invoice_status = Column(Integer, nullable=True)
    total = Column(Numeric(18, 2), nullable=True)
    maturity = Column(Date, nullable=True)
    payment_form = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    invoice_obs = Column(Text, nullable=True)

    # Linked document (legacy backend only)
    cte_id = Column(BigInteger, nullable=True)
    serie = Column(String(32), nullable=True)
    number = Column(BigInteger, nullable=True)

    # Merged upstream payload
    raw = Column(JSON, nullable=True)

    synced_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index('idx_invoices_status', 'invoice_status'),
        Index('idx_invoices_number', 'invoice_number'),
        Index('idx_invoices_owner_cnpj', 'owner_cnpj'),
    )
