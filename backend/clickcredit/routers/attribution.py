"""Attribution endpoints.

WHAT:
    Provides API endpoints for:
    - Click, sale and content-post intake
    - Attribution review (feedback, manual override, review queue)
    - Model status and insight reports
    - Geo link route resolution

WHY:
    Thin HTTP adapter over AttributionService. All matching, scoring and
    learning happens in the core; this module only translates payloads and
    maps core errors onto status codes.

REFERENCES:
    - clickcredit/services/attribution/service.py
    - clickcredit/schemas.py
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.encoders import jsonable_encoder

from ..deps import get_attribution_service
from ..schemas import (
    AggregateQueryIn,
    AttributionOut,
    AttributionPatch,
    ClickIn,
    ContentPostIn,
    CorrelationOut,
    FeedbackIn,
    IngestOut,
    ModelStatusOut,
    RouteResolveIn,
    RouteResolveOut,
    SaleIn,
)
from ..services.attribution import (
    AttributionError,
    AttributionNotFoundError,
    AttributionService,
    DependencyError,
    InvalidEventError,
    InvalidTransitionError,
)
from ..services.attribution.geo_router import resolve_route, router_from_dict, validate_router

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/attribution",
    tags=["Attribution"],
)


def _http_error(e: AttributionError) -> HTTPException:
    """Map a core error onto an HTTP status."""
    if isinstance(e, InvalidEventError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(e, AttributionNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, InvalidTransitionError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, DependencyError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=e.to_user_message())


# =============================================================================
# INTAKE
# =============================================================================

@router.post(
    "/clicks",
    response_model=IngestOut,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Record a link click",
)
async def ingest_click(
    payload: ClickIn,
    service: AttributionService = Depends(get_attribution_service),
):
    """Record a click.

    WHAT: Persists the click, then feeds the cache and insights in the background
    WHY: The redirect path must return fast; matching happens on sale
    """
    try:
        click_id = await service.ingest_click(payload.to_event())
    except AttributionError as e:
        raise _http_error(e)
    return IngestOut(id=click_id)


@router.post(
    "/sales",
    response_model=CorrelationOut,
    summary="Correlate a sale to its click",
    description="""
    Attribute a settled payment to the click (or content post) that most likely
    caused it. `outcome` is "attributed", "no_match" or "error"; the sale is
    accepted in all three cases.
    """,
)
async def correlate_sale(
    payload: SaleIn,
    service: AttributionService = Depends(get_attribution_service),
):
    try:
        result = await service.correlate_sale(payload.to_event())
    except AttributionError as e:
        raise _http_error(e)
    return CorrelationOut.from_result(result)


@router.post(
    "/posts",
    response_model=IngestOut,
    status_code=status.HTTP_201_CREATED,
    summary="Record a content post",
)
async def record_content_post(
    payload: ContentPostIn,
    service: AttributionService = Depends(get_attribution_service),
):
    try:
        post_id = await service.record_content_post(payload.to_event())
    except AttributionError as e:
        raise _http_error(e)
    return IngestOut(id=post_id, status="stored")


# =============================================================================
# REVIEW
# =============================================================================

@router.post(
    "/attributions/{attribution_id}/feedback",
    response_model=AttributionOut,
    summary="Confirm or reject an attribution",
)
async def submit_feedback(
    attribution_id: str,
    payload: FeedbackIn,
    service: AttributionService = Depends(get_attribution_service),
):
    """Confirm or reject a match.

    WHAT: Moves MATCHED/UNCERTAIN to CONFIRMED/REJECTED
    WHY: Verdicts are the training signal for the scoring weights
    """
    try:
        attribution = await service.submit_feedback(attribution_id, payload.confirmed)
    except AttributionError as e:
        raise _http_error(e)
    return AttributionOut.from_domain(attribution)


@router.patch(
    "/attributions/{attribution_id}",
    response_model=AttributionOut,
    summary="Manually override an attribution",
)
async def patch_attribution(
    attribution_id: str,
    payload: AttributionPatch,
    service: AttributionService = Depends(get_attribution_service),
):
    # Reject a bad share before any reassignment is persisted
    if payload.revenue_share is not None and not 0.0 <= payload.revenue_share <= 1.0:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="revenue_share must be between 0 and 1",
        )
    try:
        attribution = None
        if payload.click_id:
            attribution = await service.reassign_attribution(attribution_id, payload.click_id, note=payload.note)
        if payload.revenue_share is not None or (payload.note and not payload.click_id):
            attribution = await service.adjust_attribution(
                attribution_id,
                revenue_share=payload.revenue_share,
                note=None if payload.click_id else payload.note,
            )
    except AttributionError as e:
        raise _http_error(e)

    if attribution is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Provide revenue_share, note or click_id",
        )
    return AttributionOut.from_domain(attribution)


@router.get(
    "/review/{user_id}",
    response_model=List[AttributionOut],
    summary="Uncertain attributions awaiting review",
)
async def list_review_queue(
    user_id: str,
    service: AttributionService = Depends(get_attribution_service),
):
    try:
        pending = await service.list_review_queue(user_id)
    except AttributionError as e:
        raise _http_error(e)
    return [AttributionOut.from_domain(a) for a in pending]


# =============================================================================
# MODEL + INSIGHTS
# =============================================================================

@router.get(
    "/model/status",
    response_model=ModelStatusOut,
    summary="Scoring model health",
)
async def get_model_status(service: AttributionService = Depends(get_attribution_service)):
    return ModelStatusOut.from_domain(service.get_model_status())


@router.get(
    "/reports/creator",
    response_model=Dict[str, Any],
    summary="Posting-time, platform and geo insights",
)
async def get_creator_report(
    niche: Optional[str] = Query(None, description="Creator niche, e.g. TRAVEL"),
    country: Optional[str] = Query(None, description="Creator country code"),
    service: AttributionService = Depends(get_attribution_service),
):
    report = service.get_creator_report(niche=niche, country=country)
    return jsonable_encoder(report)


@router.post(
    "/reports/aggregate",
    response_model=Dict[str, Any],
    summary="Cohort report across creators",
)
async def get_aggregate_report(
    payload: AggregateQueryIn,
    service: AttributionService = Depends(get_attribution_service),
):
    report = service.get_aggregate_report(payload.to_query())
    return jsonable_encoder(report)


# =============================================================================
# LINK ROUTING
# =============================================================================

@router.post(
    "/routes/resolve",
    response_model=RouteResolveOut,
    summary="Resolve a geo link router for a visitor",
)
async def resolve_link_route(payload: RouteResolveIn):
    try:
        link_router = router_from_dict(payload.router)
    except AttributionError as e:
        raise _http_error(e)

    errors = validate_router(link_router)
    if errors:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="; ".join(errors))

    result = resolve_route(link_router, payload.country, payload.region, query_params=payload.query_params)
    return RouteResolveOut(
        url=result.url,
        match_type=result.match_type,
        matched_country=result.matched_country,
        matched_region=result.matched_region,
    )
