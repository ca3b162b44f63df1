from __future__ import annotations

from typing import Any, Generic, TypeVar

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    statusCode: int
    data: T | None = None
    message: str = "Success"
    success: bool = True

    @classmethod
    def build(cls, status_code: int, data: Any = None, message: str = "Success") -> "ApiResponse":
        return cls(statusCode=status_code, data=data, message=message, success=status_code < 400)


class ApiError(BaseModel):
    statusCode: int
    message: str
    success: bool = False
    errors: list[Any] = Field(default_factory=list)


def envelope(status_code: int, data: Any = None, message: str = "Success") -> JSONResponse:
    body = ApiResponse.build(status_code, data, message)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
