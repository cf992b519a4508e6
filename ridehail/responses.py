"""
API response helpers.

Every endpoint answers with the same envelope so clients can branch on
``success`` before looking at the payload.
"""
from typing import Any, Dict, Optional


def success_body(data: Any = None, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if meta is not None:
        body["meta"] = meta
    return body


def error_body(message: str) -> Dict[str, Any]:
    return {"success": False, "error": {"message": message}}


def paginated_meta(total: int, page: int, page_size: int) -> Dict[str, Any]:
    total_pages = (total + page_size - 1) // page_size if page_size > 0 else 0
    return {
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": total_pages,
    }
