"""
Menu Module
===========
Catalog store: menu items and categories.

Menu items reference categories by name only; nothing keeps the two in
sync. Categories are stored under the canonical "name" field, and rows
written by the older dashboard under "nama" are still readable and can be
migrated with migrate_legacy_categories().
"""

import logging
from typing import Dict, List, Any, Optional

from db import DocumentStore, NotFoundError, utc_now, to_store_timestamp
from models import Category, MenuItem
from schemas import MenuItemCreate, MenuItemUpdate


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

MENU_TABLE = "menu_items"
CATEGORY_TABLE = "categories"

DEFAULT_CATEGORIES = (
    "Appetizer",
    "Main Courses",
    "Desserts",
    "Beverages",
)


class MenuItemNotFoundError(NotFoundError):
    """Raised when a menu item id does not exist."""
    pass


class CategoryNotFoundError(NotFoundError):
    """Raised when a category id does not exist."""
    pass


class CatalogStore:
    """
    CRUD over menu items and categories.

    Responsibilities:
    - Assign timestamps on create and update
    - Convert rows to immutable models
    - Apply typed partial updates only

    Does NOT:
    - Enforce that a menu item's category exists
    - Touch orders (order lines are snapshots)
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    # ========================================================================
    # MENU ITEMS
    # ========================================================================

    async def list_menu_items(self) -> List[MenuItem]:
        rows = await self.store.query(MENU_TABLE, order_by="name")
        return [MenuItem.from_record(row) for row in rows]

    async def list_menu_items_by_category(self, category: str) -> List[MenuItem]:
        rows = await self.store.query(
            MENU_TABLE,
            filters={"category": category},
            order_by="name"
        )
        return [MenuItem.from_record(row) for row in rows]

    async def get_menu_item(self, item_id: str) -> Optional[MenuItem]:
        row = await self.store.get(MENU_TABLE, item_id)
        return MenuItem.from_record(row) if row else None

    async def create_menu_item(self, payload: MenuItemCreate) -> MenuItem:
        """
        Create a menu item; the store assigns its id.

        Returns:
            The item as stored
        """
        now = to_store_timestamp(utc_now())
        data = {
            **payload.model_dump(),
            "created_at": now,
            "updated_at": now,
        }

        item_id = await self.store.create(MENU_TABLE, data)
        logger.info(f"Created menu item {item_id}: {payload.name}")

        return MenuItem.from_record({**data, "id": item_id})

    async def update_menu_item(self, item_id: str, patch: MenuItemUpdate) -> MenuItem:
        """
        Apply the fields set on patch.

        Raises:
            MenuItemNotFoundError: If the item does not exist
        """
        changes: Dict[str, Any] = patch.model_dump(exclude_unset=True)
        changes["updated_at"] = to_store_timestamp(utc_now())

        try:
            row = await self.store.update(MENU_TABLE, item_id, changes)
        except NotFoundError:
            raise MenuItemNotFoundError(f"Menu item not found: {item_id}", table=MENU_TABLE, operation="update")

        logger.info(
            f"Updated menu item {item_id}",
            extra={"fields": sorted(changes)}
        )

        return MenuItem.from_record(row)

    async def delete_menu_item(self, item_id: str):
        try:
            await self.store.delete(MENU_TABLE, item_id)
        except NotFoundError:
            raise MenuItemNotFoundError(f"Menu item not found: {item_id}", table=MENU_TABLE, operation="delete")

        logger.info(f"Deleted menu item {item_id}")

    async def count_menu_items(self) -> int:
        return len(await self.store.query(MENU_TABLE))

    # ========================================================================
    # CATEGORIES
    # ========================================================================

    async def list_categories(self) -> List[Category]:
        rows = await self.store.query(CATEGORY_TABLE)
        categories = [Category.from_record(row) for row in rows]
        return sorted(categories, key=lambda c: c.name.lower())

    async def create_category(self, name: str) -> Category:
        name = name.strip()
        category_id = await self.store.create(CATEGORY_TABLE, {"name": name})
        logger.info(f"Created category {category_id}: {name}")
        return Category(id=category_id, name=name)

    async def update_category(self, category_id: str, name: str) -> Category:
        """
        Rename a category. Menu items keep the old name.

        Raises:
            CategoryNotFoundError: If the category does not exist
        """
        name = name.strip()
        try:
            row = await self.store.update(CATEGORY_TABLE, category_id, {"name": name})
        except NotFoundError:
            raise CategoryNotFoundError(f"Category not found: {category_id}", table=CATEGORY_TABLE, operation="update")

        return Category.from_record(row)

    async def delete_category(self, category_id: str):
        try:
            await self.store.delete(CATEGORY_TABLE, category_id)
        except NotFoundError:
            raise CategoryNotFoundError(f"Category not found: {category_id}", table=CATEGORY_TABLE, operation="delete")

        logger.info(f"Deleted category {category_id}")

    async def ensure_default_categories(self) -> List[Category]:
        """
        Seed the default categories into an empty collection.

        Returns:
            Categories created (empty if any already existed)
        """
        existing = await self.store.query(CATEGORY_TABLE)
        if existing:
            return []

        created = []
        for name in DEFAULT_CATEGORIES:
            created.append(await self.create_category(name))

        logger.info(f"Seeded {len(created)} default categories")
        return created

    async def migrate_legacy_categories(self) -> int:
        """
        Copy "nama" into "name" on rows that only have the legacy field.

        Returns:
            Number of rows migrated
        """
        migrated = 0
        for row in await self.store.query(CATEGORY_TABLE):
            if row.get("name") or not row.get("nama"):
                continue

            await self.store.update(CATEGORY_TABLE, str(row["id"]), {"name": row["nama"]})
            migrated += 1

        if migrated:
            logger.info(f"Migrated {migrated} legacy categories")

        return migrated
