"""
Gateway Routes - Metered extraction endpoints.

Authentication, throttling, execution and billing all happen inside
GatewayPipeline; this module only translates HTTP to and from it.
"""

from uuid import uuid4

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from creditgate.api.dependencies import get_extractor, get_pipeline
from creditgate.exceptions import MalformedCredentialError, UnknownEndpointError
from creditgate.models.api import ErrorResponse, ExtractionResponse
from creditgate.policy import GatewayPolicy, get_policy
from creditgate.services.extraction import ContentExtractor, ExtractionResult
from creditgate.services.pipeline import GatewayPipeline, GatewayRequest

router = APIRouter(prefix="/v1/extract", tags=["gateway"])

REJECTION_RESPONSES: dict[int | str, dict[str, object]] = {
    code: {"model": ErrorResponse} for code in (401, 402, 403, 404, 429, 502, 504)
}


@router.get(
    "/{platform}/{operation}",
    response_model=ExtractionResponse,
    responses=REJECTION_RESPONSES,
)
async def extract(
    platform: str,
    operation: str,
    request: Request,
    x_api_key: str | None = Header(None, description="CreditGate API key"),
    pipeline: GatewayPipeline = Depends(get_pipeline),
    extractor: ContentExtractor = Depends(get_extractor),
    policy: GatewayPolicy = Depends(get_policy),
) -> JSONResponse:
    """
    Run one metered extraction.

    Query parameters other than the key are forwarded to the extractor. The
    request is charged only when the extractor succeeds.
    """
    if policy.endpoint(platform, operation) is None:
        raise UnknownEndpointError(platform, operation)

    # Keys in URLs end up in access logs
    if "api_key" in request.query_params:
        raise MalformedCredentialError("API keys must be sent in the X-API-Key header")

    gateway_request = GatewayRequest(
        request_id=request.headers.get("x-request-id") or uuid4().hex,
        platform=platform,
        operation=operation,
        presented_key=x_api_key,
        client_ip=request.client.host if request.client else None,
        params=dict(request.query_params),
    )

    async def run_extractor(req: GatewayRequest) -> ExtractionResult:
        return await extractor.extract(req.platform, req.operation, req.params)

    outcome = await pipeline.handle(gateway_request, run_extractor)
    if outcome.error is not None:
        raise outcome.error

    assert outcome.result is not None and outcome.credits_remaining is not None
    body = ExtractionResponse(
        platform=platform,
        operation=operation,
        data=outcome.result.data,
        credits_charged=outcome.credits_charged,
        credits_remaining=outcome.credits_remaining,
        response_time_ms=outcome.latency_ms,
    )
    headers = {"X-Request-ID": gateway_request.request_id}
    if outcome.rate_limit is not None:
        headers.update(outcome.rate_limit.headers)
    return JSONResponse(content=body.model_dump(mode="json"), headers=headers)
