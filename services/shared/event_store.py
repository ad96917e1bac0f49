"""
Shared — イベントストア

集約の状態変更をイベントとして追記し、リプレイで状態を再構築する。
バージョン番号による楽観的ロックで同時書き込みを防ぐ。
Order / Payment の各サービスが自分のデータベースに同じ構造のテーブルを持つ。
"""

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    Uuid,
    insert,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession


def event_store_table(metadata: MetaData) -> Table:
    """サービスの MetaData に event_store テーブルを定義する。"""
    return Table(
        "event_store",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("aggregate_id", Uuid, nullable=False, index=True),
        Column("aggregate_type", String(50), nullable=False),
        Column("event_type", String(100), nullable=False),
        Column("event_data", JSON, nullable=False),
        Column("version", Integer, nullable=False),
        Column("created_at", DateTime(timezone=True), nullable=False),
        UniqueConstraint("aggregate_id", "version", name="uq_event_store_version"),
    )


async def append_event(
    session: AsyncSession,
    table: Table,
    aggregate_id: UUID,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    イベントをストアに追記する。

    expected_version で楽観的ロックを実現:
    同じ aggregate_id + version の組み合わせが既に存在すると
    UNIQUE 制約違反 (IntegrityError) で失敗する → 競合を検知できる。
    """
    new_version = expected_version + 1
    await session.execute(
        insert(table).values(
            aggregate_id=aggregate_id,
            aggregate_type=aggregate_type,
            event_type=event_type,
            event_data=event_data,
            version=new_version,
            created_at=datetime.now(timezone.utc),
        )
    )
    return new_version


async def load_events(
    session: AsyncSession,
    table: Table,
    aggregate_id: UUID,
) -> list[dict]:
    """指定した集約の全イベントをバージョン順に読み出す。"""
    result = await session.execute(
        select(table)
        .where(table.c.aggregate_id == aggregate_id)
        .order_by(table.c.version.asc())
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": row.event_data,
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
