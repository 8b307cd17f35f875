"""
Replicate Inference Client

Thin async REST client for the three prediction calls the orchestrator
needs (create with webhook, get, cancel), plus per-content-type model
selection. Every call goes through the "replicate" circuit breaker and is
counted in replicate_api_calls_total.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from src.core.config import settings
from src.core.exceptions import CircuitBreakerOpenError, ExternalAPIError, get_circuit_breaker
from src.core.logging import get_logger
from src.core.metrics import record_replicate_call
from src.engines.upscale.schemas import ContentType, PredictionUpdate

logger = get_logger(__name__)

SERVICE_NAME = "replicate"

# Status codes worth another attempt
RETRYABLE_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}


# =============================================================================
# Model Selection
# =============================================================================

PHOTO_MODEL = "nightmareai/real-esrgan:42fed1c4974146d4d2414e2be2c5277c7fcf05fcc3a73abf41610695738c1d7b"
ART_TEXT_MODEL = "jingyunliang/swinir:660d922d33153019e8c263a3bba265de882e7f4f70396546b6c9c8f9d47a021a"
ANIME_MODEL = "cjwbw/real-esrgan:d0ee3d708c9b911f122a4ad90046c5d26a0293b99476d697f6bb7f2e251ce2d4"

SWINIR_TASKS = {
    4: "Real-World Image Super-Resolution-Large",
    2: "Real-World Image Super-Resolution-Medium",
}


@dataclass(frozen=True)
class ModelSelection:
    slug: str
    extra_input: Dict[str, Any] = field(default_factory=dict)

    @property
    def version(self) -> str:
        return self.slug.split(":", 1)[1]

    @property
    def name(self) -> str:
        return self.slug.split(":", 1)[0]

    def build_input(self, image_url: str, scale: int) -> Dict[str, Any]:
        return {"image": image_url, "scale": scale, **self.extra_input}


def select_model(
    content_type: ContentType,
    multiplier: int,
    face_enhance: Optional[bool] = None
) -> ModelSelection:
    """
    Pick the model for one stage call.

    photo: Real-ESRGAN, face enhancement on for multipliers up to 4x unless
    the job overrides it. anime: the anime Real-ESRGAN weights up to 4x.
    art/text: SwinIR at its native 2x/4x. Anything else runs on the photo
    model without face enhancement.
    """
    content_type = ContentType(content_type)

    if content_type in (ContentType.ART, ContentType.TEXT) and multiplier in SWINIR_TASKS:
        return ModelSelection(ART_TEXT_MODEL, {"task_type": SWINIR_TASKS[multiplier]})

    if content_type == ContentType.ANIME and multiplier <= 4:
        return ModelSelection(ANIME_MODEL, {"anime": True})

    if content_type == ContentType.PHOTO:
        enhance = multiplier <= 4 if face_enhance is None else face_enhance
        return ModelSelection(PHOTO_MODEL, {"face_enhance": enhance})

    return ModelSelection(PHOTO_MODEL, {"face_enhance": False})


# =============================================================================
# REST Client
# =============================================================================

class ReplicateClient:
    """
    Async client for the Replicate predictions API.

    Args:
        api_url: base URL, e.g. https://api.replicate.com/v1
        api_token: sent as "Authorization: Token <token>"
        timeout: per-request timeout in seconds
        transport: optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_url = (api_url or settings.REPLICATE_API_URL).rstrip("/")
        self.api_token = api_token if api_token is not None else settings.REPLICATE_API_TOKEN
        self.timeout = timeout or settings.REPLICATE_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Token {self.api_token}"
        return headers

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        circuit = get_circuit_breaker(SERVICE_NAME)
        if not circuit.can_execute():
            record_replicate_call(operation, "circuit_open")
            raise CircuitBreakerOpenError(SERVICE_NAME)

        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self._transport
            ) as client:
                response = await client.request(method, path, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            circuit.record_failure(e)
            record_replicate_call(operation, "timeout")
            raise ExternalAPIError(
                f"Replicate {operation} timed out",
                service=SERVICE_NAME,
                retryable=True
            )
        except httpx.HTTPError as e:
            circuit.record_failure(e)
            record_replicate_call(operation, "transport_error")
            raise ExternalAPIError(
                f"Replicate {operation} failed: {e}",
                service=SERVICE_NAME,
                retryable=True
            )

        if response.status_code >= 400:
            retryable = response.status_code in RETRYABLE_STATUS_CODES
            if response.status_code >= 500 or response.status_code == 429:
                circuit.record_failure()
            record_replicate_call(operation, "error", response.status_code)
            logger.warning(
                "replicate_call_failed",
                operation=operation,
                http_status=response.status_code,
                body=response.text[:500],
            )
            raise ExternalAPIError(
                f"Replicate {operation} returned {response.status_code}: {response.text[:200]}",
                service=SERVICE_NAME,
                http_status=response.status_code,
                retryable=retryable
            )

        circuit.record_success()
        record_replicate_call(operation, "success", response.status_code)
        return response.json()

    async def create_prediction(
        self,
        model: ModelSelection,
        image_url: str,
        scale: int,
        webhook_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """Start one prediction. Completion arrives on the webhook (completed events only)."""
        payload: Dict[str, Any] = {
            "version": model.version,
            "input": model.build_input(image_url, scale),
        }
        if webhook_url:
            payload["webhook"] = webhook_url
            payload["webhook_events_filter"] = ["completed"]

        prediction = await self._request("create", "POST", "/predictions", payload)
        logger.info(
            "replicate_prediction_created",
            prediction_id=prediction.get("id"),
            model=model.name,
            scale=scale,
        )
        return prediction

    async def get_prediction(self, prediction_id: str) -> PredictionUpdate:
        data = await self._request("get", "GET", f"/predictions/{prediction_id}")
        return PredictionUpdate.model_validate(data)

    async def cancel_prediction(self, prediction_id: str) -> Dict[str, Any]:
        return await self._request("cancel", "POST", f"/predictions/{prediction_id}/cancel")
