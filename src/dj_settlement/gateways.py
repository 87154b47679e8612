"""
Payment gateway implementations for UPI Autopay.

A gateway is chosen once, when a service is constructed, from
DJ_SETTLEMENT['GATEWAY_CLASS']. Every call returns a GatewayResponse; transport
errors and timeouts come back as unsuccessful responses, never as success.
"""
import logging
import random
import uuid
from dataclasses import dataclass, field
from typing import Optional

import httpx

from .conf import settlement_settings

logger = logging.getLogger("dj_settlement.gateway")


@dataclass
class GatewayResponse:
    success: bool
    message: str = ""
    transaction_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    reference: Optional[str] = None
    metadata: dict = field(default_factory=dict)


class PaymentGateway:
    """Interface every gateway implements."""

    name = "base"

    def register_mandate(self, mandate_id, upi_id, max_amount, start_date=None, end_date=None):
        raise NotImplementedError

    def charge(self, mandate_id, upi_id, amount, description, reference_id):
        raise NotImplementedError


class SimulatedGateway(PaymentGateway):
    """
    In-process gateway for development and tests.
    Succeeds unless a failure rate is configured, in which case a seeded RNG decides.
    """

    name = "simulated"

    FAILURE_REASONS = (
        "Insufficient funds in customer account",
        "Customer bank declined",
        "Network timeout",
        "Gateway temporarily unavailable",
    )

    def __init__(self, failure_rate=None, seed=None):
        if failure_rate is None:
            failure_rate = settlement_settings.SIMULATED_GATEWAY_FAILURE_RATE
        self.failure_rate = float(failure_rate)
        self._random = random.Random(seed)

    def _fails(self):
        return self.failure_rate > 0 and self._random.random() < self.failure_rate

    def register_mandate(self, mandate_id, upi_id, max_amount, start_date=None, end_date=None):
        if self._fails():
            return GatewayResponse(False, message="Simulated gateway error: temporary failure")
        return GatewayResponse(
            True,
            message="Mandate registered",
            reference=f"GW-{uuid.uuid4().hex[:16].upper()}",
            metadata={"gateway": self.name, "mandate_id": mandate_id},
        )

    def charge(self, mandate_id, upi_id, amount, description, reference_id):
        if self._fails():
            return GatewayResponse(False, message=self._random.choice(self.FAILURE_REASONS))
        return GatewayResponse(
            True,
            message="Charge successful",
            transaction_id=f"TXN-{uuid.uuid4().hex[:16].upper()}",
            gateway_transaction_id=f"GW-TXN-{uuid.uuid4().hex[:16].upper()}",
        )


class HttpUPIGateway(PaymentGateway):
    """
    UPI Autopay gateway reached over HTTPS.

    Expects JSON responses shaped like
    ``{"status": "SUCCESS" | "FAILED", "message": ..., "transaction_id": ...,
    "gateway_transaction_id": ..., "reference": ...}``.
    """

    name = "upi_http"

    def __init__(self, base_url=None, api_key=None, timeout=None, transport=None):
        self.base_url = (base_url or settlement_settings.GATEWAY_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settlement_settings.GATEWAY_API_KEY
        self.timeout = float(timeout or settlement_settings.GATEWAY_TIMEOUT_SECONDS)
        self.transport = transport

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, path, payload):
        endpoint = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(endpoint, json=payload, headers=self._headers())
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException:
            logger.warning("Gateway timeout after %ss: %s", self.timeout, endpoint)
            return GatewayResponse(False, message="Gateway timeout")
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Gateway returned %s for %s", exc.response.status_code, endpoint
            )
            return GatewayResponse(
                False, message=f"Gateway error ({exc.response.status_code})"
            )
        except httpx.HTTPError as exc:
            logger.warning("Gateway unreachable at %s: %s", endpoint, exc)
            return GatewayResponse(False, message="Gateway unavailable")
        except ValueError:
            return GatewayResponse(False, message="Malformed gateway response")

        if not isinstance(body, dict):
            logger.warning("Gateway returned a non-object body from %s", endpoint)
            return GatewayResponse(False, message="Malformed gateway response")

        return GatewayResponse(
            success=str(body.get("status", "")).upper() == "SUCCESS",
            message=body.get("message", ""),
            transaction_id=body.get("transaction_id"),
            gateway_transaction_id=body.get("gateway_transaction_id"),
            reference=body.get("reference"),
            metadata=body.get("metadata") or {},
        )

    def register_mandate(self, mandate_id, upi_id, max_amount, start_date=None, end_date=None):
        return self._post(
            "/v1/mandates",
            {
                "mandate_id": mandate_id,
                "upi_id": upi_id,
                "max_amount": str(max_amount),
                "start_date": start_date.isoformat() if start_date else None,
                "end_date": end_date.isoformat() if end_date else None,
                "frequency": "AS_PRESENTED",
            },
        )

    def charge(self, mandate_id, upi_id, amount, description, reference_id):
        return self._post(
            f"/v1/mandates/{mandate_id}/charges",
            {
                "upi_id": upi_id,
                "amount": str(amount),
                "description": description,
                "reference_id": reference_id,
            },
        )
