# backend/erp/routes/system.py
"""
System health endpoint.

Reports database connectivity and ledger table reachability for deployment
checks. No authentication required.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import Order, Product, StockMovement
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api")


def check_database_health() -> dict:
    """
    Check database connectivity and basic ledger queries.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        order_count = db.session.query(Order).count()
        movement_count = db.session.query(StockMovement).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "products": product_count,
                "orders": order_count,
                "stock_movements": movement_count,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        db.session.rollback()
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    """
    Liveness plus database check.

    Returns:
    - 200: database reachable
    - 503: database unreachable
    """
    start_time = time.time()
    database_health = check_database_health()
    http_status = 200 if database_health["status"] == "healthy" else 503

    response = {
        "status": database_health["status"],
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {"database": database_health},
    }
    return response, http_status
