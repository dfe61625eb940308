"""`insight_generation` handler: asks the AI recommendations service for a fresh analysis."""
import httpx

from comms_scheduler.schemas.jobs import InsightGenerationParams, InsightGenerationResult
from comms_scheduler.services.gateway import get_gateway
from comms_scheduler.services.job_runner import JobContext


class InsightGenerationError(Exception):
    pass


async def _request_insights(url: str, payload: dict, timeout: float) -> dict:
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(url, json=payload)
    if response.status_code >= 400:
        raise InsightGenerationError(f"Failed to generate AI insights ({response.status_code})")
    return response.json()


async def execute_insight_generation(ctx: JobContext, params: InsightGenerationParams) -> InsightGenerationResult:
    base_url = ctx.settings.insights_service_url
    if not base_url:
        raise InsightGenerationError("Insights service is not configured (INSIGHTS_SERVICE_URL)")

    payload = {"analysisType": params.analysis_type, "forceRegenerate": params.force_regenerate}
    try:
        data = await get_gateway().execute(
            "insights",
            _request_insights,
            f"{base_url.rstrip('/')}/api/ai-recommendations/generate",
            payload,
            ctx.settings.insights_timeout_seconds,
        )
    except httpx.HTTPError as exc:
        raise InsightGenerationError(f"Insights request failed: {exc}") from exc

    if not isinstance(data, dict):
        data = {"data": data}
    return InsightGenerationResult.model_validate({**data, "analysisType": params.analysis_type})
