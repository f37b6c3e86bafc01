"""Pydantic models for Expense data"""
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Dict, List, Optional


class ExpenseCreate(BaseModel):
    """
    Fields a client submits when adding, replacing or bulk-importing an expense.
    """
    amount: float = Field(..., ge=0, allow_inf_nan=False)
    description: str = Field(..., min_length=1)
    date: datetime
    category: str = Field(..., min_length=1)
    payment_method: str = Field(..., alias="paymentMethod", min_length=1)

    class Config:
        populate_by_name = True

    @field_validator("description", "category", "payment_method")
    @classmethod
    def reject_blank_text(cls, value: str) -> str:
        """Whitespace-only text counts as missing; non-blank text is kept as sent."""
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class Expense(ExpenseCreate):
    """
    Represents a single stored expense, owned by exactly one user.
    """
    id: str
    owner: str

    class Config:
        populate_by_name = True
        from_attributes = True


class ExpenseQuery(BaseModel):
    """
    Filter and pagination parameters for listing expenses.

    Field order is fixed, so the JSON dump is a stable cache key component.
    """
    category: Optional[str] = None
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1)

    class Config:
        populate_by_name = True


class ExpensePage(BaseModel):
    records: List[Expense]
    total: int
    page: int
    total_pages: int = Field(..., alias="totalPages")

    class Config:
        populate_by_name = True


class ExpenseStatistics(BaseModel):
    total_expenses: float = Field(default=0, alias="totalExpenses")
    # None when no record matched
    average_expense: Optional[float] = Field(default=None, alias="averageExpense")
    expenses_by_category: Dict[str, float] = Field(default_factory=dict, alias="expensesByCategory")
    expenses_by_month: Dict[str, float] = Field(default_factory=dict, alias="expensesByMonth")

    class Config:
        populate_by_name = True


class CategoryTotal(BaseModel):
    name: str
    total: float


class ExpenseSummary(BaseModel):
    total_expenses: float = Field(default=0, alias="totalExpenses")
    categories: List[CategoryTotal] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class BulkDeleteRequest(BaseModel):
    ids: List[str]
