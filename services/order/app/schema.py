"""
Order Service — テーブル定義

event_store      : 注文イベントの追記専用ログ（書き込み側の真実）
orders_read_model / order_items_read_model : クエリ用リードモデル
stock_intents    : 在庫サービスへの補償呼び出しの意図ログ
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
)

from services.shared.event_store import event_store_table

metadata = MetaData()

event_store = event_store_table(metadata)

orders = Table(
    "orders_read_model",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("shipping_address", Text, nullable=False),
    Column("billing_address", Text),
    Column("payment_method", String(50)),
    Column("status", String(20), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items_read_model",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Uuid, ForeignKey("orders_read_model.id"), nullable=False, index=True),
    Column("product_id", String(64), nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("subtotal", Numeric(12, 2), nullable=False),
)

stock_intents = Table(
    "stock_intents",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("order_id", Uuid, nullable=False, index=True),
    Column("product_id", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("action", String(10), nullable=False),   # RESERVE / RESTORE
    Column("status", String(10), nullable=False, index=True),  # PENDING / DONE / FAILED
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
