from typing import Any, Dict, List, Generic, Optional, TypeVar
from pydantic import BaseModel

T = TypeVar("T")


# Paginated response wrapper — used by all list endpoints
class PaginatedResponse(BaseModel, Generic[T]):
    data: List[T]
    total: int
    page: int
    limit: int
    total_pages: int


# Error responses, rendered from MarketplaceError.to_dict()
class ErrorResponse(BaseModel):
    error: str
    message: str


class StockShortfall(BaseModel):
    product_id: str
    name: str
    requested: int
    available: int


class InsufficientStockResponse(ErrorResponse):
    errors: List[StockShortfall]


class InsufficientBalanceResponse(ErrorResponse):
    available: str
    requested: str
    currency: str


class MessageResponse(BaseModel):
    message: str
    data: Optional[Dict[str, Any]] = None
