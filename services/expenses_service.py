"""Service layer for handling expense-related logic."""
import logging
import csv
import io
import math
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Tuple
from bson import ObjectId
from models.expense import (
    Expense,
    ExpenseCreate,
    ExpensePage,
    ExpenseQuery,
    ExpenseStatistics,
    ExpenseSummary,
    CategoryTotal,
)
from motor.motor_asyncio import AsyncIOMotorCollection # Type hint for collection
from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 300
CACHE_KEY_PREFIX = "expenses"
CSV_COLUMNS = ["amount", "description", "date", "category", "paymentMethod"]
STATISTICS_EPOCH = datetime(1970, 1, 1)
SUMMARY_TOP_CATEGORIES = 3


class ExpenseNotFoundError(LookupError):
    """Raised when an expense does not exist or is owned by another user."""
    pass


# --- Helpers ---

def _to_store_datetime(value: datetime) -> datetime:
    """MongoDB hands back naive UTC datetimes, so store and query with the same."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _parse_object_id(expense_id: str) -> Optional[ObjectId]:
    if not ObjectId.is_valid(expense_id):
        return None
    return ObjectId(expense_id)


def _doc_to_expense(doc: Dict[str, Any]) -> Expense:
    doc = dict(doc)
    doc['id'] = str(doc.pop('_id'))
    return Expense(**doc)


def _expense_to_doc(owner_id: str, expense: ExpenseCreate) -> Dict[str, Any]:
    doc = expense.model_dump(by_alias=True)
    doc['date'] = _to_store_datetime(doc['date'])
    doc['owner'] = owner_id
    return doc


def _format_validation_error(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
    )


def build_cache_key(owner_id: str, query: ExpenseQuery) -> str:
    """Cache key for one page of a user's expense listing."""
    params = query.model_dump_json(by_alias=True, exclude_none=True)
    return f"{CACHE_KEY_PREFIX}:{owner_id}:{params}"


async def _cache_get(cache: Optional[Redis], key: str) -> Optional[str]:
    if cache is None:
        return None
    try:
        return await cache.get(key)
    except (RedisError, OSError) as e:
        logger.warning(f"Cache read failed for '{key}', falling back to database: {e}")
        return None


async def _cache_set(cache: Optional[Redis], key: str, value: str) -> None:
    if cache is None:
        return
    try:
        await cache.setex(key, CACHE_TTL_SECONDS, value)
        logger.debug(f"Cached '{key}' for {CACHE_TTL_SECONDS}s.")
    except (RedisError, OSError) as e:
        logger.warning(f"Cache write failed for '{key}': {e}")


# --- Single-record operations ---

async def add_expense(collection: AsyncIOMotorCollection, owner_id: str, expense: ExpenseCreate) -> Expense:
    """Inserts one expense owned by the given user."""
    doc = _expense_to_doc(owner_id, expense)
    try:
        result = await collection.insert_one(doc)
    except PyMongoError as e:
        logger.error(f"Database error adding expense: {e}")
        raise ConnectionError(f"Database error adding expense: {e}")
    doc['_id'] = result.inserted_id
    logger.info(f"Added expense {result.inserted_id} for user {owner_id}.")
    return _doc_to_expense(doc)


async def get_expense(collection: AsyncIOMotorCollection, owner_id: str, expense_id: str) -> Expense:
    object_id = _parse_object_id(expense_id)
    if object_id is None:
        raise ExpenseNotFoundError(expense_id)
    try:
        doc = await collection.find_one({"_id": object_id, "owner": owner_id})
    except PyMongoError as e:
        logger.error(f"Database error fetching expense {expense_id}: {e}")
        raise ConnectionError(f"Database error fetching expense: {e}")
    if doc is None:
        raise ExpenseNotFoundError(expense_id)
    return _doc_to_expense(doc)


async def update_expense(
    collection: AsyncIOMotorCollection,
    owner_id: str,
    expense_id: str,
    expense: ExpenseCreate
) -> Expense:
    """
    Replaces every mutable field of an expense.
    Ownership is part of the lookup filter, so a foreign id behaves like a missing one.
    """
    object_id = _parse_object_id(expense_id)
    if object_id is None:
        raise ExpenseNotFoundError(expense_id)

    fields = expense.model_dump(by_alias=True)
    fields['date'] = _to_store_datetime(fields['date'])
    try:
        doc = await collection.find_one_and_update(
            {"_id": object_id, "owner": owner_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError as e:
        logger.error(f"Database error updating expense {expense_id}: {e}")
        raise ConnectionError(f"Database error updating expense: {e}")
    if doc is None:
        raise ExpenseNotFoundError(expense_id)
    logger.info(f"Updated expense {expense_id} for user {owner_id}.")
    return _doc_to_expense(doc)


async def delete_expense(collection: AsyncIOMotorCollection, owner_id: str, expense_id: str) -> None:
    object_id = _parse_object_id(expense_id)
    if object_id is None:
        raise ExpenseNotFoundError(expense_id)
    try:
        doc = await collection.find_one_and_delete({"_id": object_id, "owner": owner_id})
    except PyMongoError as e:
        logger.error(f"Database error deleting expense {expense_id}: {e}")
        raise ConnectionError(f"Database error deleting expense: {e}")
    if doc is None:
        raise ExpenseNotFoundError(expense_id)
    logger.info(f"Deleted expense {expense_id} for user {owner_id}.")


async def bulk_delete_expenses(collection: AsyncIOMotorCollection, owner_id: str, expense_ids: List[str]) -> int:
    """Deletes the listed expenses that belong to the user and returns how many went."""
    if not expense_ids:
        raise ValueError("Valid expense IDs are required")

    # Malformed ids can never match a document.
    object_ids = [ObjectId(i) for i in expense_ids if ObjectId.is_valid(i)]
    if not object_ids:
        logger.info(f"Bulk delete for user {owner_id}: no well-formed ids among {len(expense_ids)}.")
        return 0

    try:
        result = await collection.delete_many({"_id": {"$in": object_ids}, "owner": owner_id})
    except PyMongoError as e:
        logger.error(f"Database error during delete_many operation: {e}")
        raise ConnectionError(f"Database error deleting expenses: {e}")
    logger.info(f"Bulk delete for user {owner_id}: {result.deleted_count} of {len(expense_ids)} requested ids removed.")
    return result.deleted_count


# --- Listing (cache-aside) ---

def _build_list_filter(owner_id: str, query: ExpenseQuery) -> Dict[str, Any]:
    store_filter: Dict[str, Any] = {"owner": owner_id}
    if query.category:
        store_filter["category"] = query.category
    if query.payment_method:
        store_filter["paymentMethod"] = query.payment_method
    if query.start_date and query.end_date:
        store_filter["date"] = {
            "$gte": _to_store_datetime(query.start_date),
            "$lte": _to_store_datetime(query.end_date),
        }
    return store_filter


async def get_expenses(
    collection: AsyncIOMotorCollection,
    cache: Optional[Redis],
    owner_id: str,
    query: ExpenseQuery
) -> Tuple[ExpensePage, bool]:
    """
    Returns one page of the user's expenses, newest first, and whether it came from the cache.

    Pages are cached for CACHE_TTL_SECONDS and are not invalidated when expenses
    change, so a listing can lag behind writes by up to that long. When the cache
    is unreachable every call reads from the database.
    """
    cache_key = build_cache_key(owner_id, query)
    cached = await _cache_get(cache, cache_key)
    if cached is not None:
        try:
            page = ExpensePage.model_validate_json(cached)
        except ValidationError as e:
            # Corrupt or outdated entry; the database read below overwrites it.
            logger.warning(f"Discarding unreadable cache entry '{cache_key}': {e}")
        else:
            logger.debug(f"Cache HIT: {cache_key}")
            return page, True
    logger.debug(f"Cache MISS: {cache_key}")

    store_filter = _build_list_filter(owner_id, query)
    try:
        cursor = collection.find(
            store_filter,
            sort=[("date", -1)],
            skip=(query.page - 1) * query.limit,
            limit=query.limit,
        )
        records = [_doc_to_expense(doc) async for doc in cursor]
        total = await collection.count_documents(store_filter)
    except PyMongoError as e:
        logger.error(f"Database error fetching expenses: {e}")
        raise ConnectionError(f"Database error fetching expenses: {e}")

    result = ExpensePage(
        records=records,
        total=total,
        page=query.page,
        total_pages=math.ceil(total / query.limit),
    )
    logger.info(f"Fetched {len(records)} of {total} expenses for user {owner_id} (page {query.page}).")

    await _cache_set(cache, cache_key, result.model_dump_json(by_alias=True))
    return result, False


# --- Aggregations ---

async def get_expense_statistics(
    collection: AsyncIOMotorCollection,
    owner_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None
) -> ExpenseStatistics:
    """
    Totals, average and per-category / per-month sums for the user's expenses
    dated within [start_date, end_date].

    Month keys look like "2024-1" (month not zero-padded).
    """
    start = _to_store_datetime(start_date) if start_date else STATISTICS_EPOCH
    end = _to_store_datetime(end_date) if end_date else _to_store_datetime(datetime.now(timezone.utc))

    pipeline = [
        {"$match": {"owner": owner_id, "date": {"$gte": start, "$lte": end}}},
        {"$facet": {
            "totals": [
                {"$group": {
                    "_id": None,
                    "totalExpenses": {"$sum": "$amount"},
                    "averageExpense": {"$avg": "$amount"},
                }},
            ],
            "byCategory": [
                {"$group": {"_id": "$category", "total": {"$sum": "$amount"}}},
            ],
            "byMonth": [
                {"$group": {
                    "_id": {"year": {"$year": "$date"}, "month": {"$month": "$date"}},
                    "total": {"$sum": "$amount"},
                }},
            ],
        }},
    ]
    try:
        results = await collection.aggregate(pipeline).to_list(length=1)
    except PyMongoError as e:
        logger.error(f"Database error computing expense statistics: {e}")
        raise ConnectionError(f"Database error computing expense statistics: {e}")

    statistics = ExpenseStatistics()
    if not results:
        return statistics
    facets = results[0]

    if facets.get("totals"):
        totals = facets["totals"][0]
        statistics.total_expenses = totals.get("totalExpenses") or 0
        statistics.average_expense = totals.get("averageExpense")

    for bucket in facets.get("byCategory", []):
        category = bucket["_id"]
        statistics.expenses_by_category[category] = statistics.expenses_by_category.get(category, 0) + bucket["total"]

    for bucket in facets.get("byMonth", []):
        month_key = f"{bucket['_id']['year']}-{bucket['_id']['month']}"
        statistics.expenses_by_month[month_key] = statistics.expenses_by_month.get(month_key, 0) + bucket["total"]

    logger.info(f"Computed statistics for user {owner_id}: total {statistics.total_expenses} across {len(statistics.expenses_by_category)} categories.")
    return statistics


async def get_expense_summary(collection: AsyncIOMotorCollection, owner_id: str) -> ExpenseSummary:
    """All-time total plus the user's top categories by spend."""
    pipeline = [
        {"$match": {"owner": owner_id}},
        {"$facet": {
            "totals": [
                {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
            ],
            "categories": [
                {"$group": {"_id": "$category", "total": {"$sum": "$amount"}}},
                {"$sort": {"total": -1}},
                {"$limit": SUMMARY_TOP_CATEGORIES},
            ],
        }},
    ]
    try:
        results = await collection.aggregate(pipeline).to_list(length=1)
    except PyMongoError as e:
        logger.error(f"Database error computing expense summary: {e}")
        raise ConnectionError(f"Database error computing expense summary: {e}")

    summary = ExpenseSummary()
    if not results:
        return summary
    facets = results[0]
    if facets.get("totals"):
        summary.total_expenses = facets["totals"][0].get("total") or 0
    summary.categories = [
        CategoryTotal(name=bucket["_id"], total=bucket["total"]) for bucket in facets.get("categories", [])
    ]
    return summary


# --- Bulk ingest ---

def parse_expenses_csv(content: bytes) -> List[ExpenseCreate]:
    """
    Parses CSV bytes with an amount,description,date,category,paymentMethod header.

    Fully empty rows are skipped. Any invalid row rejects the whole file with a
    ValueError listing every bad row.
    """
    if not content:
        raise ValueError("CSV file is required")
    try:
        text_content = content.decode('utf-8-sig')
    except UnicodeDecodeError:
        raise ValueError("Could not read file. Ensure UTF-8 encoding.")

    reader = csv.DictReader(io.StringIO(text_content))
    missing_columns = [column for column in CSV_COLUMNS if column not in (reader.fieldnames or [])]
    if missing_columns:
        raise ValueError(f"CSV header is missing required columns: {', '.join(missing_columns)}")

    expenses = []
    errors = []
    for row in reader:
        values = {column: row.get(column) for column in CSV_COLUMNS}
        if not any((value or "").strip() for value in values.values()):
            continue
        for column in ("amount", "date"):
            if values[column] is not None:
                values[column] = values[column].strip()
        try:
            expenses.append(ExpenseCreate(**values))
        except ValidationError as e:
            logger.warning(f"Invalid CSV row at line {reader.line_num}: {e}")
            errors.append(f"Line {reader.line_num}: {_format_validation_error(e)}")

    if errors:
        raise ValueError(f"Invalid rows in CSV file: {' | '.join(errors)}")
    if not expenses:
        raise ValueError("CSV file contains no expense rows")
    return expenses


async def bulk_upload_expenses(
    collection: AsyncIOMotorCollection,
    owner_id: str,
    content: bytes
) -> Tuple[int, List[Expense]]:
    """Parses an uploaded CSV and inserts all of its expenses in one batch."""
    expenses = parse_expenses_csv(content)
    docs = [_expense_to_doc(owner_id, expense) for expense in expenses]

    logger.info(f"Attempting bulk insert of {len(docs)} expenses for user {owner_id}.")
    try:
        result = await collection.insert_many(docs)
    except PyMongoError as e:
        logger.error(f"Database error during bulk insert: {e}")
        raise ConnectionError(f"Database error during bulk insert: {e}")

    for doc, inserted_id in zip(docs, result.inserted_ids):
        doc['_id'] = inserted_id
    inserted = [_doc_to_expense(doc) for doc in docs]
    logger.info(f"Bulk insert successful. Added {len(inserted)} expenses to DB.")
    return len(inserted), inserted
