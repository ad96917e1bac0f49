"""
Notification Service — テーブル定義

通知はイベントソーシングせず、1 通知 = 1 行の状態テーブルとして持つ。
source_event_id は受信したエンベロープの eventId（重複配信の検出に使う）。
NULL は重複とみなされないため、eventId のない通知はいくつでも記録できる。
"""

from sqlalchemy import JSON, Column, DateTime, MetaData, String, Table, Text, Uuid

metadata = MetaData()

notifications = Table(
    "notifications",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("recipient", String(255), nullable=False),
    Column("channel", String(10), nullable=False),
    Column("subject", String(255), nullable=False),
    Column("body", Text, nullable=False),
    Column("template_data", JSON),
    Column("status", String(10), nullable=False, index=True),
    Column("failure_reason", Text),
    Column("event_type", String(50)),
    Column("source_event_id", String(64), unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("sent_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
