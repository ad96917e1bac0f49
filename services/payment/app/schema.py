"""
Payment Service — テーブル定義

payments_read_model.order_id の UNIQUE 制約が
「1 注文につき支払いは最大 1 件」の最終的な保証になる。
"""

from sqlalchemy import Column, DateTime, MetaData, Numeric, String, Table, Text, Uuid

from services.shared.event_store import event_store_table

metadata = MetaData()

event_store = event_store_table(metadata)

payments = Table(
    "payments_read_model",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("order_id", Uuid, nullable=False, unique=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("payment_method", String(50), nullable=False),
    Column("status", String(20), nullable=False, index=True),
    Column("payment_reference", String(64)),
    Column("failure_reason", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
