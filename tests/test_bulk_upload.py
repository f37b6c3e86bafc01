"""CSV bulk import."""
import pytest
from httpx import AsyncClient

from services.expenses_service import parse_expenses_csv
from conftest import USER_ID


VALID_CSV = (
    "amount,description,date,category,paymentMethod\n"
    "12.50,Coffee beans,2024-01-05,food,card\n"
    "\n"
    "300,Monthly pass,2024-01-01T08:00:00,transport,cash\n"
    ",,,,\n"
    "7,Notebook,2024-02-11,office,card\n"
)


def csv_file(content: str, filename: str = "expenses.csv", content_type: str = "text/csv"):
    return {"file": (filename, content.encode("utf-8"), content_type)}


@pytest.mark.asyncio
async def test_upload_inserts_every_row_for_caller(client: AsyncClient, collection):
    response = await client.post("/api/expenses/bulk-upload", files=csv_file(VALID_CSV))

    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "3 expenses uploaded successfully"
    assert len(body["data"]) == 3
    assert body["data"][0]["amount"] == 12.5
    assert body["data"][0]["date"] == "2024-01-05T00:00:00"
    assert body["data"][1]["description"] == "Monthly pass"
    assert {e["owner"] for e in body["data"]} == {USER_ID}

    assert await collection.count_documents({"owner": USER_ID}) == 3
    stored = await collection.find_one({"description": "Notebook"})
    assert stored["amount"] == 7.0
    assert stored["paymentMethod"] == "card"


@pytest.mark.asyncio
async def test_upload_without_file_is_rejected(client: AsyncClient):
    response = await client.post("/api/expenses/bulk-upload")

    assert response.status_code == 400
    assert response.json()["message"] == "CSV file is required"


@pytest.mark.asyncio
async def test_upload_with_bad_row_inserts_nothing(client: AsyncClient, collection):
    content = (
        "amount,description,date,category,paymentMethod\n"
        "10,Fine,2024-01-05,food,card\n"
        "ten,Broken amount,2024-01-06,food,card\n"
        "5,Broken date,yesterday,food,card\n"
        "Infinity,Unbounded,2024-01-07,food,card\n"
        "3,Blank category,2024-01-08,   ,card\n"
    )

    response = await client.post("/api/expenses/bulk-upload", files=csv_file(content))

    assert response.status_code == 400
    message = response.json()["message"]
    assert "Line 3" in message
    assert "Line 4" in message
    assert "Line 5" in message
    assert "Line 6" in message
    assert await collection.count_documents({}) == 0


@pytest.mark.asyncio
async def test_upload_with_missing_columns_is_rejected(client: AsyncClient, collection):
    content = "amount,description,date\n10,Lunch,2024-01-05\n"

    response = await client.post("/api/expenses/bulk-upload", files=csv_file(content))

    assert response.status_code == 400
    assert "category" in response.json()["message"]
    assert "paymentMethod" in response.json()["message"]
    assert await collection.count_documents({}) == 0


@pytest.mark.asyncio
async def test_upload_rejects_non_csv_file(client: AsyncClient):
    response = await client.post(
        "/api/expenses/bulk-upload",
        files=csv_file(VALID_CSV, filename="expenses.pdf", content_type="application/pdf"),
    )

    assert response.status_code == 400


def test_parse_skips_empty_lines_and_keeps_text_verbatim():
    expenses = parse_expenses_csv(
        b"amount,description,date,category,paymentMethod\n"
        b" 4.5 ,  Spaced out ,2024-03-02, Food ,card\n"
        b"\n"
    )

    assert len(expenses) == 1
    assert expenses[0].amount == 4.5
    assert expenses[0].description == "  Spaced out "
    assert expenses[0].category == " Food "


@pytest.mark.parametrize("content", [b"", b"amount,description,date,category,paymentMethod\n"])
def test_parse_rejects_empty_payloads(content):
    with pytest.raises(ValueError):
        parse_expenses_csv(content)


def test_parse_rejects_non_utf8():
    with pytest.raises(ValueError, match="UTF-8"):
        parse_expenses_csv("amount\n€".encode("utf-16"))


@pytest.mark.asyncio
async def test_upload_over_size_limit_is_rejected(client: AsyncClient, collection):
    row = "1,Padding row to grow the file well past the upload limit,2024-01-01,misc,card\n"
    content = "amount,description,date,category,paymentMethod\n" + row * 20000

    response = await client.post("/api/expenses/bulk-upload", files=csv_file(content))

    assert response.status_code == 413
    assert response.json()["success"] is False
    assert await collection.count_documents({}) == 0
