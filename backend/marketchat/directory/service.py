"""DirectoryService: DuckDB-backed user, product and order lookups.

The marketplace catalog and order endpoints own these records; the chat
subsystem only reads them (identity + role for authorization, display
fields for the chat projection). Write helpers exist for seeding.
"""
import json
import logging
import threading
from typing import Any, List, Optional

import duckdb

from marketchat.chat.errors import PersistenceError

from .schemas import OrderRecord, ProductRecord, UserRecord

logger = logging.getLogger(__name__)

_CREATE_USERS = """
CREATE TABLE IF NOT EXISTS users (
    id            VARCHAR PRIMARY KEY,
    name          VARCHAR NOT NULL,
    email         VARCHAR,
    role          VARCHAR NOT NULL DEFAULT 'buyer',
    profile_image VARCHAR NOT NULL DEFAULT 'default.jpg'
)
"""

_CREATE_PRODUCTS = """
CREATE TABLE IF NOT EXISTS products (
    id     VARCHAR PRIMARY KEY,
    name   VARCHAR NOT NULL,
    price  DOUBLE NOT NULL DEFAULT 0,
    images VARCHAR NOT NULL DEFAULT '[]'
)
"""

_CREATE_ORDERS = """
CREATE TABLE IF NOT EXISTS orders (
    id           VARCHAR PRIMARY KEY,
    status       VARCHAR NOT NULL DEFAULT 'pending',
    total_amount DOUBLE NOT NULL DEFAULT 0
)
"""


class DirectoryService:
    """Singleton read-mostly lookup service.

    The DuckDB connection is shared; a lock keeps calls from different
    worker threads off it at the same time.
    """

    _instance: Optional["DirectoryService"] = None
    _default_db_path: str = "directory.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn = duckdb.connect(self._db_path)
        self._lock = threading.Lock()
        for ddl in (_CREATE_USERS, _CREATE_PRODUCTS, _CREATE_ORDERS):
            self._conn.execute(ddl)
        logger.info("[Directory] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "DirectoryService":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    def add_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO users (id, name, email, role, profile_image) "
                "VALUES (?, ?, ?, ?, ?)",
                [user.id, user.name, user.email, user.role, user.profile_image],
            )
        return user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        row = self._fetchone(
            "SELECT id, name, email, role, profile_image FROM users WHERE id = ?",
            [str(user_id)],
        )
        if row is None:
            return None
        return UserRecord(
            id=row[0], name=row[1], email=row[2], role=row[3], profile_image=row[4]
        )

    # -----------------------------------------------------------------------
    # Products / orders
    # -----------------------------------------------------------------------

    def add_product(self, product: ProductRecord) -> ProductRecord:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO products (id, name, price, images) VALUES (?, ?, ?, ?)",
                [product.id, product.name, product.price, json.dumps(product.images)],
            )
        return product

    def get_product(self, product_id: str) -> Optional[ProductRecord]:
        row = self._fetchone(
            "SELECT id, name, price, images FROM products WHERE id = ?", [str(product_id)]
        )
        if row is None:
            return None
        return ProductRecord(id=row[0], name=row[1], price=row[2], images=json.loads(row[3]))

    def add_order(self, order: OrderRecord) -> OrderRecord:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO orders (id, status, total_amount) VALUES (?, ?, ?)",
                [order.id, order.status, order.total_amount],
            )
        return order

    def get_order(self, order_id: str) -> Optional[OrderRecord]:
        row = self._fetchone(
            "SELECT id, status, total_amount FROM orders WHERE id = ?", [str(order_id)]
        )
        if row is None:
            return None
        return OrderRecord(id=row[0], status=row[1], total_amount=row[2])

    def _fetchone(self, sql: str, params: List[Any]) -> Optional[tuple]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except duckdb.Error as exc:
                logger.error("[Directory] Lookup failed: %s", exc)
                raise PersistenceError("Directory lookup failed") from exc
