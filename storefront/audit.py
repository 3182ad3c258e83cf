"""
Audit trail for checkout, payment and order events.
"""
import logging
from typing import Any, Dict, Optional

from storefront.cart_service import hash_customer_id

logger = logging.getLogger("storefront.audit")


class AuditLogger:
    """Structured audit records on the storefront.audit logger"""

    def log(
        self,
        action: str,
        entity_type: str,
        entity_id: Any,
        customer_id: int,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None
    ) -> None:
        extra = {
            "action": action,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "hashed_customer_id": hash_customer_id(customer_id),
            "data": data or {},
        }
        if error:
            logger.error(f"[AUDIT] {action} | {entity_type}:{entity_id} | {error}", extra=extra)
        else:
            logger.info(f"[AUDIT] {action} | {entity_type}:{entity_id}", extra=extra)

    def log_checkout(self, action: str, session_id: str, customer_id: int, data=None, error=None) -> None:
        self.log(action, "checkout", session_id, customer_id, data, error)

    def log_payment(self, action: str, payment_id: int, customer_id: int, data=None, error=None) -> None:
        self.log(action, "payment", payment_id, customer_id, data, error)

    def log_order(self, action: str, order_id: int, customer_id: int, data=None, error=None) -> None:
        self.log(action, "order", order_id, customer_id, data, error)
