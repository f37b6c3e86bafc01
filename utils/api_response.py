"""Uniform response envelope shared by every API endpoint."""
from typing import Any
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def api_response(status_code: int, data: Any, message: str) -> JSONResponse:
    """
    Wraps a payload as {"statusCode", "data", "message", "success"}.
    Pydantic models inside `data` are serialized by alias (camelCase on the wire).
    """
    return JSONResponse(
        status_code=status_code,
        content={
            "statusCode": status_code,
            "data": jsonable_encoder(data),
            "message": message,
            "success": status_code < 400,
        },
    )
