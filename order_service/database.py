# database.py
from datetime import datetime, timezone
from databases import Database
from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from order_service.errors import NotFound
from order_service.models import metadata, orders


def utcnow() -> datetime:
    """Naive UTC wall clock; every stored timestamp uses it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def sync_database_url(database_url: str) -> str:
    return database_url.replace("+asyncpg", "").replace("+aiosqlite", "")


def build_database(database_url: str) -> Database:
    # async database client
    return Database(database_url)


def init_db(database_url: str):
    # SQLAlchemy sync engine for metadata.create_all()
    engine = create_engine(sync_database_url(database_url))
    metadata.create_all(engine)
    engine.dispose()


def insert_ignore(database: Database, table):
    """INSERT ... ON CONFLICT DO NOTHING for the connected dialect."""
    if database.url.dialect == "postgresql":
        return pg_insert(table).on_conflict_do_nothing()
    return sqlite_insert(table).on_conflict_do_nothing()


def row_to_dict(row, table) -> dict:
    return {column.name: row[column.name] for column in table.columns}


async def load_order(database: Database, order_id: str) -> dict:
    row = await database.fetch_one(orders.select().where(orders.c.id == order_id))
    if row is None:
        raise NotFound("Order", order_id)
    return row_to_dict(row, orders)
