"""
Client side of the checkout flow.

`CheckoutFlow` drives a checkout session through the HTTP API and mirrors its
state to local storage, so an interrupted checkout can be resumed while the
server still honors the session. Idempotency keys are generated here: one per
initiation and one per payment attempt, reused on transport retries and
replaced after a declined payment.
"""
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from storefront.exceptions import (
    InsufficientStockError,
    InvalidStateError,
    PaymentFailedError,
    SessionExpiredError,
    StorefrontError,
    UnauthorizedError,
)
from storefront.models import CheckoutStep, LockedPrice, PriceChange, ShippingInfo

logger = logging.getLogger(__name__)

STORAGE_KEY = "checkoutSession"


def generate_idempotency_key() -> str:
    return f"checkout_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class AuthEvent(str, Enum):
    LOGOUT = "logout"


class AuthEventSink(ABC):
    """Receives authentication events raised by API calls"""

    @abstractmethod
    def emit(self, event: AuthEvent) -> None:
        ...


class ListenerAuthEventSink(AuthEventSink):
    """Fans events out to subscribed callbacks"""

    def __init__(self):
        self._listeners: List[Callable[[AuthEvent], None]] = []

    def subscribe(self, listener: Callable[[AuthEvent], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def emit(self, event: AuthEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Auth event listener failed: {e}", exc_info=True)


class CheckoutApiError(StorefrontError):
    """Error response that has no more specific exception class"""

    def __init__(self, status_code: int, error_code: str, message: str, details: Optional[Any] = None):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message, details)


class CheckoutApiClient:
    """Async HTTP client for the checkout endpoints"""

    def __init__(
        self,
        user_id: int,
        base_url: str = "http://localhost:8000",
        client: Optional[httpx.AsyncClient] = None,
        auth_events: Optional[AuthEventSink] = None,
        timeout: float = 60.0
    ):
        self.user_id = user_id
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self.auth_events = auth_events

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self.client.request(
            method,
            path,
            json=body,
            headers={"X-User-ID": str(self.user_id)}
        )
        if response.is_success:
            return response.json()
        self._raise_for_error(response)

    def _raise_for_error(self, response: httpx.Response) -> None:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = body.get("error") or "HTTP_ERROR"
        message = body.get("message") or f"Request failed with status {response.status_code}"
        details = body.get("details")

        logger.error(f"API error: {response.status_code} {code}")

        if response.status_code == 401:
            if self.auth_events is not None:
                self.auth_events.emit(AuthEvent.LOGOUT)
            raise UnauthorizedError(message)
        if response.status_code == 410:
            raise SessionExpiredError(response.request.url.path.split("/")[2])
        if response.status_code == 402:
            payment_id = details.get("payment_id") if isinstance(details, dict) else None
            raise PaymentFailedError(code, message, payment_id)
        if code == "INSUFFICIENT_STOCK":
            raise InsufficientStockError(details or [])
        raise CheckoutApiError(response.status_code, code, message, details)

    async def initiate(self, customer_id: int, selected_item_ids: List[int], idempotency_key: str) -> Dict[str, Any]:
        return await self._request("POST", "/checkout/initiate", {
            "customer_id": customer_id,
            "selected_item_ids": selected_item_ids,
            "idempotency_key": idempotency_key,
        })

    async def get_session(self, session_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/checkout/{session_id}")

    async def set_shipping_info(self, session_id: str, info: ShippingInfo) -> Dict[str, Any]:
        return await self._request("PUT", f"/checkout/{session_id}/shipping", info.model_dump(mode="json"))

    async def validate(self, session_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/checkout/{session_id}/validate")

    async def pay(self, session_id: str, method: str, idempotency_key: str) -> Dict[str, Any]:
        return await self._request("POST", f"/checkout/{session_id}/pay", {
            "method": method,
            "idempotency_key": idempotency_key,
        })

    async def complete(self, session_id: str, payment_id: int) -> Dict[str, Any]:
        return await self._request("POST", f"/checkout/{session_id}/complete", {"payment_id": payment_id})

    async def cancel(self, session_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/checkout/{session_id}/cancel")

    async def available_methods(self) -> List[str]:
        return (await self._request("GET", "/checkout/methods/available"))["methods"]

    async def aclose(self) -> None:
        await self.client.aclose()


class LocalSessionStore:
    """JSON file holding the mirrored checkout state under a fixed key"""

    def __init__(self, path):
        self.path = Path(path)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except ValueError as e:
            logger.warning(f"Discarding unreadable checkout storage: {e}")
            return {}

    def load(self) -> Optional[Dict[str, Any]]:
        return self._read().get(STORAGE_KEY)

    def save(self, data: Dict[str, Any]) -> None:
        contents = self._read()
        contents[STORAGE_KEY] = data
        self.path.write_text(json.dumps(contents))

    def clear(self) -> None:
        contents = self._read()
        if contents.pop(STORAGE_KEY, None) is not None:
            self.path.write_text(json.dumps(contents))


class CheckoutState(BaseModel):
    step: CheckoutStep = CheckoutStep.CART
    session_id: Optional[str] = None
    locked_prices: List[LockedPrice] = Field(default_factory=list)
    total_amount: Decimal = Decimal("0")
    expires_at: Optional[datetime] = None
    shipping_info: Optional[ShippingInfo] = None
    selected_payment_method: Optional[str] = None
    payment_id: Optional[int] = None
    order_id: Optional[int] = None
    price_changes: Optional[List[PriceChange]] = None
    idempotency_key: Optional[str] = None
    payment_idempotency_key: Optional[str] = None


class CheckoutFlow:
    """Checkout state machine on the client, persisted after every change"""

    def __init__(self, api: CheckoutApiClient, store: LocalSessionStore):
        self.api = api
        self.store = store
        self.state = CheckoutState()

    def _persist(self) -> None:
        if self.state.session_id:
            self.store.save(self.state.model_dump(mode="json"))

    def reset(self) -> None:
        self.store.clear()
        self.state = CheckoutState()

    def _require_session(self) -> str:
        if not self.state.session_id:
            raise InvalidStateError("No active checkout session")
        return self.state.session_id

    async def restore(self) -> bool:
        """
        Resume a stored checkout.

        The stored copy is used only while unexpired and while the server still
        has the session active; otherwise local state is discarded.
        """
        saved = self.store.load()
        if not saved:
            return False

        state = CheckoutState.model_validate(saved)
        if state.expires_at is None or state.expires_at <= datetime.now(timezone.utc) or not state.session_id:
            self.reset()
            return False

        try:
            server = await self.api.get_session(state.session_id)
        except (SessionExpiredError, CheckoutApiError) as e:
            logger.info(f"Stored checkout session is no longer usable: {e.message}")
            self.reset()
            return False

        if server.get("status") != "active":
            self.reset()
            return False

        state.step = CheckoutStep(server["step"])
        self.state = state
        self._persist()
        return True

    async def initiate(self, customer_id: int, selected_item_ids: List[int]) -> CheckoutState:
        key = generate_idempotency_key()
        data = await self.api.initiate(customer_id, selected_item_ids, key)
        self.state = CheckoutState(
            step=CheckoutStep.SHIPPING,
            session_id=data["session_id"],
            locked_prices=data["locked_prices"],
            total_amount=data["total_amount"],
            expires_at=data["expires_at"],
            idempotency_key=key,
        )
        self._persist()
        return self.state

    async def set_shipping_info(self, info: ShippingInfo) -> None:
        await self.api.set_shipping_info(self._require_session(), info)
        self.state.shipping_info = info
        self._persist()

    async def validate_and_proceed_to_payment(self) -> Optional[List[PriceChange]]:
        """Returns the reported price changes, if any"""
        data = await self.api.validate(self._require_session())
        self.state.step = CheckoutStep.PAYMENT
        self.state.price_changes = [PriceChange(**change) for change in data.get("price_changes") or []] or None
        self.state.payment_idempotency_key = generate_idempotency_key()
        self._persist()
        return self.state.price_changes

    async def process_payment(self, method: str) -> int:
        session_id = self._require_session()
        if not self.state.payment_idempotency_key:
            self.state.payment_idempotency_key = generate_idempotency_key()
        self.state.selected_payment_method = method
        self._persist()

        try:
            data = await self.api.pay(session_id, method, self.state.payment_idempotency_key)
        except PaymentFailedError:
            # A declined key replays its decline; the next attempt needs a new one
            self.state.payment_idempotency_key = generate_idempotency_key()
            self._persist()
            raise

        self.state.payment_id = data["payment_id"]
        self._persist()
        return self.state.payment_id

    async def complete(self, payment_id_override: Optional[int] = None) -> int:
        payment_id = payment_id_override if payment_id_override is not None else self.state.payment_id
        if not self.state.session_id or payment_id is None:
            raise InvalidStateError("Missing session or payment information")

        data = await self.api.complete(self.state.session_id, payment_id)
        self.state.order_id = data["order_id"]
        self.state.step = CheckoutStep.CONFIRMATION
        self.store.clear()
        return self.state.order_id

    async def cancel(self) -> None:
        """Best-effort server cancel; local state is always discarded"""
        if self.state.session_id:
            try:
                await self.api.cancel(self.state.session_id)
            except (StorefrontError, httpx.HTTPError) as e:
                logger.warning(f"Error cancelling checkout: {e}")
        self.reset()
