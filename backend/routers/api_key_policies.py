"""
API Key Policies Router - JSON endpoints behind the policies admin page.

Each browser tab is bound to one PolicyPageController through the
``policy_page_session`` cookie; every endpoint returns the page snapshot
after applying its action.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from schemas.policy_page import (
    FailoverRuleRequest,
    FormUpdateRequest,
    NotificationItem,
    PageSnapshot,
    ReplacePoliciesRequest,
    RoutingRuleRequest,
    RoutingRuleUpdateRequest,
    SelectKeyRequest,
    ToggleModelRequest,
)
from schemas.api_key_policy import ModelRoutingRule
from services.page_sessions import SESSION_COOKIE, PageSessionRegistry, get_page_sessions
from services.policy_page import PolicyPageController

router = APIRouter()


def get_page(
    request: Request,
    response: Response,
    sessions: PageSessionRegistry = Depends(get_page_sessions),
) -> PolicyPageController:
    """Resolve (or start) the page session for this browser tab."""
    current = request.cookies.get(SESSION_COOKIE)
    session_id, page = sessions.get_or_create(current)
    if session_id != current:
        response.set_cookie(SESSION_COOKIE, session_id, httponly=True, samesite="strict")
    return page


@router.get("/", response_model=PageSnapshot)
async def get_page_state(page: PolicyPageController = Depends(get_page)):
    """Current page state; loads from the management API on first visit."""
    await page.ensure_loaded()
    return page.snapshot()


@router.put("/", response_model=PageSnapshot)
async def replace_policies(
    req: ReplacePoliciesRequest,
    page: PolicyPageController = Depends(get_page),
):
    """Overwrite the whole remote policy collection."""
    await page.replace_all(req.policies)
    return page.snapshot()


@router.post("/refresh", response_model=PageSnapshot)
async def refresh(page: PolicyPageController = Depends(get_page)):
    await page.load_all()
    return page.snapshot()


@router.post("/select", response_model=PageSnapshot)
async def select_key(req: SelectKeyRequest, page: PolicyPageController = Depends(get_page)):
    page.select_key(req.api_key)
    return page.snapshot()


@router.patch("/form", response_model=PageSnapshot)
async def update_form(req: FormUpdateRequest, page: PolicyPageController = Depends(get_page)):
    """Apply a partial edit to the local form; nothing is sent upstream."""
    if req.allow_opus_46 is not None:
        page.set_allow_opus_46(req.allow_opus_46)
    if req.opus_46_daily_limit is not None:
        page.set_opus_46_daily_limit(req.opus_46_daily_limit)
    if req.failover_enabled is not None:
        page.set_failover_enabled(req.failover_enabled)
    if req.failover_target_model is not None:
        page.set_failover_target_model(req.failover_target_model)
    if req.upstream_base_url is not None:
        page.set_upstream_base_url(req.upstream_base_url)
    if req.excluded_custom is not None:
        page.set_excluded_custom(req.excluded_custom)
    return page.snapshot()


@router.post("/form/models/toggle", response_model=PageSnapshot)
async def toggle_model(req: ToggleModelRequest, page: PolicyPageController = Depends(get_page)):
    page.toggle_model_allowed(req.model_id, req.allowed)
    return page.snapshot()


@router.post("/form/failover-rules", response_model=PageSnapshot)
async def add_failover_rule(req: FailoverRuleRequest, page: PolicyPageController = Depends(get_page)):
    page.add_failover_rule(req.from_model, req.target_model)
    return page.snapshot()


@router.delete("/form/failover-rules/{index}", response_model=PageSnapshot)
async def remove_failover_rule(index: int, page: PolicyPageController = Depends(get_page)):
    try:
        page.remove_failover_rule(index)
    except IndexError:
        raise HTTPException(status_code=404, detail="Failover rule not found")
    return page.snapshot()


@router.post("/form/routing-rules", response_model=PageSnapshot)
async def add_routing_rule(req: RoutingRuleRequest, page: PolicyPageController = Depends(get_page)):
    page.add_routing_rule(ModelRoutingRule(**req.model_dump()))
    return page.snapshot()


@router.patch("/form/routing-rules/{index}", response_model=PageSnapshot)
async def update_routing_rule(
    index: int,
    req: RoutingRuleUpdateRequest,
    page: PolicyPageController = Depends(get_page),
):
    try:
        page.update_routing_rule(index, **req.model_dump(exclude_unset=True))
    except IndexError:
        raise HTTPException(status_code=404, detail="Routing rule not found")
    return page.snapshot()


@router.delete("/form/routing-rules/{index}", response_model=PageSnapshot)
async def remove_routing_rule(index: int, page: PolicyPageController = Depends(get_page)):
    try:
        page.remove_routing_rule(index)
    except IndexError:
        raise HTTPException(status_code=404, detail="Routing rule not found")
    return page.snapshot()


@router.post("/save", response_model=PageSnapshot)
async def save_policy(page: PolicyPageController = Depends(get_page)):
    """Upsert the selected key's policy, then reload from the server."""
    await page.save()
    return page.snapshot()


@router.post("/delete", response_model=PageSnapshot)
async def delete_policy(page: PolicyPageController = Depends(get_page)):
    """Remove the selected key's policy, then reload from the server."""
    await page.delete()
    return page.snapshot()


@router.get("/notifications", response_model=list[NotificationItem])
async def drain_notifications(page: PolicyPageController = Depends(get_page)):
    return page.drain_notifications()
