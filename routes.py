"""API Routes for expenses"""
from datetime import datetime
from fastapi import APIRouter, UploadFile, File, HTTPException, Body, Depends, Request, Query
from typing import Annotated, Optional
from services import expenses_service
from services.expenses_service import ExpenseNotFoundError
from models.expense import ExpenseCreate, ExpenseQuery, BulkDeleteRequest
from motor.motor_asyncio import AsyncIOMotorCollection
from redis.asyncio import Redis
from utils.api_response import api_response
from utils.auth import get_current_user_id
from utils.limiter import limiter, UPLOAD_RATE_LIMIT
import logging

router = APIRouter()
logger = logging.getLogger(__name__)

ALLOWED_UPLOAD_TYPES = ["text/csv", "text/plain", "application/vnd.ms-excel"]

# --- Dependency Functions ---
def get_expenses_collection(request: Request) -> AsyncIOMotorCollection:
    """Dependency to get the MongoDB expenses collection from the request state."""
    collection = getattr(request.state, "expenses_collection", None)
    if collection is None:
        logger.error("Expenses collection not found in application state. Check MongoDB connection.")
        raise HTTPException(status_code=503, detail="Database service not available.")
    return collection

def get_cache(request: Request) -> Optional[Redis]:
    """Dependency to get the Redis client, or None when the cache is unavailable."""
    return getattr(request.state, "cache", None)

# Type hints for the dependencies
ExpensesCollectionDep = Annotated[AsyncIOMotorCollection, Depends(get_expenses_collection)]
CacheDep = Annotated[Optional[Redis], Depends(get_cache)]
CurrentUserDep = Annotated[str, Depends(get_current_user_id)]

# --- API Routes ---

@router.post("/expenses", status_code=201, summary="Add Expense", description="Creates one expense owned by the caller.")
async def add_expense(
    collection: ExpensesCollectionDep,
    user_id: CurrentUserDep,
    expense: Annotated[ExpenseCreate, Body(...)]
):
    logger.info(f"POST /expenses called by user {user_id}.")
    try:
        created = await expenses_service.add_expense(collection, user_id, expense)
    except ConnectionError as ce:
        logger.error(f"Connection error adding expense: {ce}")
        raise HTTPException(status_code=503, detail=f"Database connection error: {ce}")
    except Exception as e:
        logger.exception(f"Unexpected error adding expense: {e}")
        raise HTTPException(status_code=500, detail="An unexpected server error occurred while adding the expense.")
    return api_response(201, created, "Expense added successfully")


@router.get("/expenses", summary="List Expenses", description="Returns a page of the caller's expenses, newest first. Pages are cached for five minutes.")
async def get_expenses(
    collection: ExpensesCollectionDep,
    cache: CacheDep,
    user_id: CurrentUserDep,
    category: Optional[str] = Query(None, description="Exact category to match."),
    start_date: Optional[datetime] = Query(None, alias="startDate", description="Inclusive lower bound on date. Used only together with endDate."),
    end_date: Optional[datetime] = Query(None, alias="endDate", description="Inclusive upper bound on date. Used only together with startDate."),
    payment_method: Optional[str] = Query(None, alias="paymentMethod", description="Exact payment method to match."),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
):
    query = ExpenseQuery(
        category=category,
        start_date=start_date,
        end_date=end_date,
        payment_method=payment_method,
        page=page,
        limit=limit,
    )
    logger.info(f"GET /expenses called by user {user_id} with {query.model_dump(by_alias=True, exclude_none=True)}")
    try:
        result, from_cache = await expenses_service.get_expenses(collection, cache, user_id, query)
    except ConnectionError as ce:
        logger.error(f"Connection error fetching expenses: {ce}")
        raise HTTPException(status_code=503, detail=f"Database connection error: {ce}")
    except Exception as e:
        logger.exception(f"Unexpected error fetching expenses: {e}")
        raise HTTPException(status_code=500, detail="An unexpected server error occurred while fetching expenses.")

    message = "Expenses retrieved from cache" if from_cache else "Expenses retrieved successfully"
    return api_response(200, result, message)


@router.get("/expenses/statistics", summary="Expense Statistics", description="Total, average and per-category / per-month spend within a date range.")
async def get_expense_statistics(
    collection: ExpensesCollectionDep,
    user_id: CurrentUserDep,
    start_date: Optional[datetime] = Query(None, alias="startDate", description="Defaults to 1970-01-01."),
    end_date: Optional[datetime] = Query(None, alias="endDate", description="Defaults to now."),
):
    logger.info(f"GET /expenses/statistics called by user {user_id} ({start_date} - {end_date}).")
    try:
        statistics = await expenses_service.get_expense_statistics(collection, user_id, start_date, end_date)
    except ConnectionError as ce:
        logger.error(f"Connection error computing statistics: {ce}")
        raise HTTPException(status_code=503, detail=f"Database connection error: {ce}")
    except Exception as e:
        logger.exception(f"Unexpected error computing statistics: {e}")
        raise HTTPException(status_code=500, detail="An unexpected server error occurred while computing statistics.")
    return api_response(200, statistics, "Expense statistics retrieved successfully")


@router.get("/expenses/summary", summary="Expense Summary", description="All-time total and the top three categories.")
async def get_expense_summary(collection: ExpensesCollectionDep, user_id: CurrentUserDep):
    logger.info(f"GET /expenses/summary called by user {user_id}.")
    try:
        summary = await expenses_service.get_expense_summary(collection, user_id)
    except ConnectionError as ce:
        logger.error(f"Connection error computing summary: {ce}")
        raise HTTPException(status_code=503, detail=f"Database connection error: {ce}")
    except Exception as e:
        logger.exception(f"Unexpected error computing summary: {e}")
        raise HTTPException(status_code=500, detail="Error fetching expense summary")
    return api_response(200, summary, "Expense summary retrieved successfully")


@router.post("/expenses/bulk-upload", status_code=201, summary="Bulk Upload Expenses", description="Imports a CSV file with columns amount,description,date,category,paymentMethod.")
@limiter.limit(UPLOAD_RATE_LIMIT)
async def bulk_upload_expenses(
    request: Request,
    collection: ExpensesCollectionDep,
    user_id: CurrentUserDep,
    file: Optional[UploadFile] = File(None)
):
    """
    Validates the upload, then hands the bytes to the service, which either
    inserts every row or rejects the file.
    """
    if file is None:
        logger.warning(f"Bulk upload by user {user_id} rejected: no file.")
        raise HTTPException(status_code=400, detail="CSV file is required")

    logger.info(f"POST /expenses/bulk-upload called by user {user_id} for file: {file.filename}")
    if file.content_type not in ALLOWED_UPLOAD_TYPES and not (file.filename or "").lower().endswith(('.csv', '.txt')):
        logger.warning(f"Invalid file type attempted upload: {file.filename} ({file.content_type})")
        raise HTTPException(status_code=400, detail=f"Invalid file type: {file.content_type}. Please upload a CSV file.")

    try:
        content = await file.read()
        count, inserted = await expenses_service.bulk_upload_expenses(collection, user_id, content)
    except ValueError as ve:
        logger.error(f"ValueError processing file {file.filename}: {ve}")
        raise HTTPException(status_code=400, detail=str(ve))
    except ConnectionError as ce:
        logger.error(f"ConnectionError processing file {file.filename}: {ce}")
        raise HTTPException(status_code=503, detail=str(ce))
    except Exception as e:
        logger.exception(f"Unexpected error processing file {file.filename}: {e}")
        raise HTTPException(status_code=500, detail=f"An unexpected error occurred processing file {file.filename}.")
    finally:
        await file.close()

    return api_response(201, inserted, f"{count} expenses uploaded successfully")


@router.post("/expenses/bulk-delete", summary="Bulk Delete Expenses", description="Deletes the caller's expenses among the given ids. Unknown or foreign ids are ignored.")
async def bulk_delete_expenses(
    collection: ExpensesCollectionDep,
    user_id: CurrentUserDep,
    payload: Annotated[BulkDeleteRequest, Body(...)]
):
    logger.warning(f"POST /expenses/bulk-delete called by user {user_id} for {len(payload.ids)} ids.")
    try:
        deleted_count = await expenses_service.bulk_delete_expenses(collection, user_id, payload.ids)
    except ValueError as ve:
        raise HTTPException(status_code=400, detail=str(ve))
    except ConnectionError as ce:
        logger.error(f"ConnectionError deleting expenses: {ce}")
        raise HTTPException(status_code=503, detail=str(ce))
    except Exception as e:
        logger.exception(f"Unexpected error deleting expenses: {e}")
        raise HTTPException(status_code=500, detail="An unexpected server error occurred while deleting expenses.")
    return api_response(200, {"deletedCount": deleted_count}, f"{deleted_count} expenses deleted successfully")


@router.get("/expenses/{expense_id}", summary="Get Expense")
async def get_expense(collection: ExpensesCollectionDep, user_id: CurrentUserDep, expense_id: str):
    try:
        expense = await expenses_service.get_expense(collection, user_id, expense_id)
    except ExpenseNotFoundError:
        raise HTTPException(status_code=404, detail="Expense not found")
    except ConnectionError as ce:
        logger.error(f"Connection error fetching expense {expense_id}: {ce}")
        raise HTTPException(status_code=503, detail=f"Database connection error: {ce}")
    except Exception as e:
        logger.exception(f"Unexpected error fetching expense {expense_id}: {e}")
        raise HTTPException(status_code=500, detail="An unexpected server error occurred while fetching the expense.")
    return api_response(200, expense, "Expense retrieved successfully")


@router.put("/expenses/{expense_id}", summary="Update Expense", description="Replaces every field of one of the caller's expenses.")
async def update_expense(
    collection: ExpensesCollectionDep,
    user_id: CurrentUserDep,
    expense_id: str,
    expense: Annotated[ExpenseCreate, Body(...)]
):
    logger.info(f"PUT /expenses/{expense_id} called by user {user_id}.")
    try:
        updated = await expenses_service.update_expense(collection, user_id, expense_id, expense)
    except ExpenseNotFoundError:
        raise HTTPException(status_code=404, detail="Expense not found")
    except ConnectionError as ce:
        logger.error(f"Connection error updating expense {expense_id}: {ce}")
        raise HTTPException(status_code=503, detail=f"Database connection error: {ce}")
    except Exception as e:
        logger.exception(f"Unexpected error updating expense {expense_id}: {e}")
        raise HTTPException(status_code=500, detail="An unexpected server error occurred while updating the expense.")
    return api_response(200, updated, "Expense updated successfully")


@router.delete("/expenses/{expense_id}", summary="Delete Expense")
async def delete_expense(collection: ExpensesCollectionDep, user_id: CurrentUserDep, expense_id: str):
    logger.info(f"DELETE /expenses/{expense_id} called by user {user_id}.")
    try:
        await expenses_service.delete_expense(collection, user_id, expense_id)
    except ExpenseNotFoundError:
        raise HTTPException(status_code=404, detail="Expense not found")
    except ConnectionError as ce:
        logger.error(f"Connection error deleting expense {expense_id}: {ce}")
        raise HTTPException(status_code=503, detail=f"Database connection error: {ce}")
    except Exception as e:
        logger.exception(f"Unexpected error deleting expense {expense_id}: {e}")
        raise HTTPException(status_code=500, detail="An unexpected server error occurred while deleting the expense.")
    return api_response(200, None, "Expense deleted successfully")
